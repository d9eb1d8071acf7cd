"""
Tests for planner context serialization under a character budget
"""
from sequencer.models import Action, ActionKind, HistoryEntry, InteractiveElement, Outcome, PageSnapshot
from sequencer.page_context import (
    TRUNCATION_NOTICE_RESERVE,
    build_history_context,
    build_page_context,
    build_planner_context,
    format_element_line,
    rank_elements,
    render_header_lines,
)


def make_elements(count):
    elements = []
    for i in range(count):
        labeled = i % 2 == 0
        button = i % 3 == 0
        elements.append(InteractiveElement(
            selector=f"#el-{i}",
            type="button" if button else "link",
            label=f"Item {i}" if labeled else "",
            tag_name="button" if button else "a",
        ))
    return elements


def test_rank_prefers_labeled_then_button_or_input():
    elements = [
        InteractiveElement(selector="#plain", type="link"),
        InteractiveElement(selector="#labeled-link", type="link", label="Docs"),
        InteractiveElement(selector="#bare-button", type="button"),
        InteractiveElement(selector="#labeled-input", type="text", label="Search"),
    ]

    ranked = [el.selector for el in rank_elements(elements)]

    assert ranked == ["#labeled-input", "#labeled-link", "#bare-button", "#plain"]


def test_truncates_to_highest_priority_elements_within_budget():
    links = [InteractiveElement(selector=f"#link-{i}", type="link", tag_name="a") for i in range(300)]
    buttons = [
        InteractiveElement(selector=f"#buy-{i}", type="button", label=f"Buy {i}", tag_name="button")
        for i in range(200)
    ]
    elements = links + buttons
    snapshot = PageSnapshot(url="https://shop.test/", title="Shop", interactive_elements=elements)

    assert snapshot.element_total == 500
    assert snapshot.truncated
    assert [el.selector for el in snapshot.interactive_elements] == [el.selector for el in buttons]

    ranked = rank_elements(elements)
    header_cost = sum(len(line) + 1 for line in render_header_lines(snapshot))
    elements_cost = sum(len(format_element_line(el)) + 1 for el in ranked[:120])
    budget = header_cost + elements_cost + TRUNCATION_NOTICE_RESERVE

    context = build_page_context(snapshot, budget)

    assert len(context) <= budget
    shown = [line for line in context.splitlines() if line.startswith("- ")]
    assert len(shown) == 120
    assert shown == [format_element_line(el) for el in buttons[:120]]
    assert "Interactive elements (500 total):" in context
    assert "[TRUNCATED] Showing 120 of 500" in context


def test_reported_total_from_executor_payload():
    payload = {
        "url": "https://shop.test/",
        "title": "Shop",
        "interactiveElements": [el.to_dict() for el in make_elements(200)],
        "totalElements": 640,
        "truncated": True,
    }

    snapshot = PageSnapshot.from_payload(payload)
    context = build_page_context(snapshot, 20000)

    assert snapshot.element_total == 640
    assert "[TRUNCATED] Showing 200 of 640" in context


def test_small_page_is_not_flagged():
    snapshot = PageSnapshot(url="https://a.test/", title="A", interactive_elements=make_elements(5))

    context = build_page_context(snapshot, 20000)

    assert "TRUNCATED" not in context
    assert context.count("\n- ") == 5


def test_executor_side_truncation_is_surfaced():
    snapshot = PageSnapshot(url="https://a.test/", title="A", interactive_elements=make_elements(3), truncated=True)

    context = build_page_context(snapshot, 20000)

    assert "lossy page snapshot" in context


def test_legacy_html_is_clipped():
    snapshot = PageSnapshot(url="https://a.test/", legacy_html="<div>" * 5000)

    context = build_page_context(snapshot, 1000)

    assert len(context) <= 1000
    assert "legacy format" in context
    assert "[TRUNCATED]" in context


def test_history_keeps_most_recent_steps():
    history = [
        HistoryEntry(
            step_id=str(i),
            action=Action(ActionKind.NAVIGATE, {"url": f"https://example.com/page/{i}"}),
            rationale="x" * 150,
            outcome=Outcome.success({"ok": True}),
        )
        for i in range(50)
    ]

    text = build_history_context(history, 1500)

    assert len(text) <= 1500
    assert "page/49" in text
    assert "page/0\n" not in text
    assert "earlier steps omitted" in text


def test_planner_context_respects_total_budget():
    snapshot = PageSnapshot(url="https://shop.test/", title="Shop", interactive_elements=make_elements(200))
    history = [HistoryEntry(step_id="1", action=Action(ActionKind.CLICK, {"selector": "#el-0"}),
                            outcome=Outcome.failure("not found"))]

    context = build_planner_context("buy a laptop", snapshot, history, budget=3000, history_budget=800)

    assert len(context) <= 3000
    assert context.startswith("User's original goal: buy a laptop")
    assert "Error: not found" in context
    assert "[TRUNCATED]" in context
