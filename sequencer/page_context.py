"""
规划器上下文构建 - 在字符预算内序列化页面快照与执行历史

优先级：页面元数据 > 标题 > 交互元素（按 有标签、是按钮/输入框 降序）。
超出预算时先截断元素列表，并在文本中明确标注截断。
"""
import json
from typing import Any, List, Sequence, Tuple

from .models import (
    HistoryEntry,
    InteractiveElement,
    PageSnapshot,
    rank_elements,
)

# 为截断提示预留的字符数
TRUNCATION_NOTICE_RESERVE = 200
MAX_FIELD_CHARS = 100
MAX_RESULT_CHARS = 200


def _clip(text: str, limit: int = MAX_FIELD_CHARS) -> str:
    text = " ".join(str(text).split())
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def format_element_line(element: InteractiveElement) -> str:
    line = f'- {element.type} - Selector: "{_clip(element.selector)}"'
    if element.label:
        line += f' - Label: "{_clip(element.label)}"'
    if element.value:
        line += f' - Value: "{_clip(element.value)}"'
    return line


def render_header_lines(snapshot: PageSnapshot) -> List[str]:
    """页面元数据、标题与元素列表标题行"""
    lines = [
        "Current page information:",
        f"URL: {snapshot.url}",
        f"Title: {_clip(snapshot.title, 200)}",
    ]
    if snapshot.description:
        lines.append(f"Description: {_clip(snapshot.description, 300)}")
    if snapshot.headings:
        lines.append("Headings:")
        lines.extend(f"  {'#' * max(1, h.level)} {_clip(h.text)}" for h in snapshot.headings)
    lines.append(f"Interactive elements ({snapshot.element_total} total):")
    return lines


def truncation_notice(shown: int, total: int) -> str:
    return (
        f"[TRUNCATED] Showing {shown} of {total} interactive elements to fit the planner budget; "
        "page information is incomplete and reasoning may be incomplete."
    )


EXECUTOR_TRUNCATION_NOTICE = (
    "[TRUNCATED] The executor reported a lossy page snapshot; "
    "page information is incomplete and reasoning may be incomplete."
)


class _Budget:
    """按行累计字符数（每行计入一个换行符）"""

    def __init__(self, budget: int, reserve: int):
        self.limit = max(0, budget - reserve)
        self.used = 0
        self.lines: List[str] = []

    def add(self, line: str) -> bool:
        cost = len(line) + 1
        if self.used + cost > self.limit:
            return False
        self.lines.append(line)
        self.used += cost
        return True

    def force(self, line: str) -> None:
        """元数据必须保留：放不下时硬截断"""
        room = self.limit - self.used - 1
        if room <= 0:
            return
        line = line[:room]
        self.lines.append(line)
        self.used += len(line) + 1


def build_page_context(snapshot: PageSnapshot, budget: int) -> str:
    """
    在预算内序列化页面快照

    Args:
        snapshot: 页面快照
        budget: 字符预算

    Returns:
        str: 长度不超过 budget 的上下文文本
    """
    if snapshot.is_legacy:
        return _build_legacy_context(snapshot, budget)

    acc = _Budget(budget, TRUNCATION_NOTICE_RESERVE)
    header = render_header_lines(snapshot)
    metadata_count = 4 if snapshot.description else 3
    truncated = snapshot.truncated

    for index, line in enumerate(header):
        if acc.add(line):
            continue
        if index < metadata_count:
            acc.force(line)
        else:
            truncated = True

    total = snapshot.element_total
    shown = 0
    for element in rank_elements(snapshot.interactive_elements):
        if not acc.add(format_element_line(element)):
            break
        shown += 1

    if shown < total:
        notice = truncation_notice(shown, total)
    elif truncated:
        notice = EXECUTOR_TRUNCATION_NOTICE
    else:
        return "\n".join(acc.lines)

    return "\n".join(acc.lines + [notice])[:budget]


def _build_legacy_context(snapshot: PageSnapshot, budget: int) -> str:
    html = snapshot.legacy_html or ""
    prefix = "Current page HTML (legacy format, truncated):\n"
    room = max(0, budget - len(prefix) - TRUNCATION_NOTICE_RESERVE)
    if len(html) <= room:
        return (prefix + html)[:budget]
    notice = "\n[TRUNCATED] Page HTML was cut to fit the planner budget; reasoning may be incomplete."
    return (prefix + html[:room] + notice)[:budget]


def _format_result(result: Any) -> str:
    try:
        text = json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(result)
    return _clip(text, MAX_RESULT_CHARS)


def format_history_entry(position: int, entry: HistoryEntry) -> str:
    action = entry.action
    target = action.target or _clip(json.dumps(action.parameters, ensure_ascii=False, default=str))
    lines = [f"{position}. {action.kind.value} {target}"]
    if entry.rationale:
        lines.append(f"   Rationale: {_clip(entry.rationale, MAX_RESULT_CHARS)}")
    if entry.outcome is None:
        lines.append("   Result: pending")
    elif entry.outcome.is_error:
        lines.append(f"   Error: {_clip(entry.outcome.error, MAX_RESULT_CHARS)}")
    else:
        lines.append(f"   Result: {_format_result(entry.outcome.result)}")
    if entry.snapshot_summary:
        summary = entry.snapshot_summary
        lines.append(f"   Page after: {summary.url} ({_clip(summary.title)})")
    return "\n".join(lines)


def build_history_context(history: Sequence[HistoryEntry], budget: int) -> str:
    """
    在预算内序列化执行历史（优先保留最近的步骤）
    """
    if not history:
        return "Previous actions: none"

    title = "Previous actions:"
    used = len(title) + 1
    kept: List[Tuple[int, str]] = []
    for position in range(len(history), 0, -1):
        block = format_history_entry(position, history[position - 1])
        if used + len(block) + 1 > budget - 60:
            break
        kept.append((position, block))
        used += len(block) + 1

    kept.reverse()
    lines = [title]
    omitted = len(history) - len(kept)
    if omitted:
        lines.append(f"({omitted} earlier steps omitted)")
    lines.extend(block for _, block in kept)
    return "\n".join(lines)


def build_planner_context(
    goal: str,
    snapshot: PageSnapshot,
    history: Sequence[HistoryEntry],
    budget: int,
    history_budget: int,
) -> str:
    """
    组装发送给规划器的完整上下文（目标 + 历史 + 页面），总长度不超过 budget
    """
    goal_part = f"User's original goal: {_clip(goal, 1000)}"
    history_part = build_history_context(history, min(history_budget, budget // 2))
    remaining = budget - len(goal_part) - len(history_part) - 4
    page_part = build_page_context(snapshot, max(remaining, 0))
    return "\n\n".join([goal_part, history_part, page_part])[:budget]
