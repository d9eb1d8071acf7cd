"""
Tests for the sequencing loop: observe → plan → act → record
"""
import asyncio
from datetime import timedelta

import pytest

from sequencer.engine import (
    INTERRUPTED_STEP_ERROR,
    REPEATED_ACTION_ERROR,
    SequencingEngine,
    is_repeated_action,
    outcome_from_report,
)
from sequencer.errors import ExecutorUnavailable, InvalidState, PlannerContractViolation
from sequencer.models import Action, ActionKind, HistoryEntry, Outcome, PageSnapshot, SessionStatus, SnapshotSummary, utcnow

from conftest import FakePlanner, connect_executor, decision, make_snapshot_payload


def make_engine(planner, registry, db_context, **kwargs):
    options = dict(snapshot_timeout=1, action_timeout=1, post_action_snapshot_delay=0)
    options.update(kwargs)
    return SequencingEngine(planner, registry, db_context, **options)


async def drain(engine):
    while True:
        pending = [task for task in engine._tasks if not task.done()]
        if not pending:
            return
        await asyncio.gather(*pending)


class TestHelpers:

    def test_outcome_from_report(self):
        assert outcome_from_report({"status": "completed", "result": 1}) == Outcome.success(1)
        assert outcome_from_report({"status": "failed", "error": "gone"}).error == "gone"
        assert outcome_from_report({"success": False}).error == "Unknown error"
        assert outcome_from_report({"error": "boom"}).is_error

    def test_repeated_action_needs_same_target_and_url(self):
        previous = HistoryEntry(
            step_id="1",
            action=Action(ActionKind.CLICK, {"selector": "#go"}),
            outcome=Outcome.success(),
            snapshot_summary=SnapshotSummary(url="https://a.test/"),
        )
        same_page = PageSnapshot(url="https://a.test/")
        other_page = PageSnapshot(url="https://a.test/next")

        assert is_repeated_action(previous, Action(ActionKind.CLICK, {"selector": "#go"}), same_page)
        assert not is_repeated_action(previous, Action(ActionKind.CLICK, {"selector": "#go"}), other_page)
        assert not is_repeated_action(previous, Action(ActionKind.CLICK, {"selector": "#stop"}), same_page)
        assert not is_repeated_action(previous, Action(ActionKind.WAIT, {"duration": 5}), same_page)


@pytest.mark.asyncio
async def test_navigate_then_complete(registry, executor, db_context):
    planner = FakePlanner([
        decision("navigate", url="https://example.com/laptops"),
        decision(None, is_complete=True),
    ])
    engine = make_engine(planner, registry, db_context)

    session = await engine.begin("Search for laptops on example.com", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    assert session.status is SessionStatus.COMPLETED
    assert len(session.history) == 1
    step = session.history[0]
    assert step.action.kind is ActionKind.NAVIGATE
    assert step.outcome.result == {"ok": True}
    assert step.snapshot_summary.url == "https://example.com/laptops"
    assert executor.snapshot_requests == 1
    assert len(executor.actions) == 1
    assert planner.calls[1]["url"] == "https://example.com/laptops"


@pytest.mark.asyncio
async def test_begin_starts_in_background(registry, executor, db_context):
    planner = FakePlanner([decision(None, is_complete=True)])
    engine = make_engine(planner, registry, db_context)

    session = await engine.begin("check the homepage", "ext-1")
    await drain(engine)

    assert (await engine.get(session.id)).status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_deferred_session_waits_for_scheduler(registry, executor, db_context):
    planner = FakePlanner([decision(None, is_complete=True)])
    engine = make_engine(planner, registry, db_context)

    session = await engine.begin("check the homepage", "ext-1", due_at=utcnow() + timedelta(minutes=10))

    assert session.is_deferred()
    assert not engine._tasks
    assert planner.calls == []


@pytest.mark.asyncio
async def test_repeated_action_guard(registry, executor, db_context):
    planner = FakePlanner([decision("click", selector="#el-0")])
    engine = make_engine(planner, registry, db_context, max_repeat_replans=2)

    session = await engine.begin("click the first button", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    assert session.status is SessionStatus.ACTIVE
    assert len(executor.actions) == 1
    assert len(planner.calls) == 4
    assert planner.calls[1]["guidance"] is None
    assert planner.calls[2]["guidance"] is not None
    assert len(session.history) == 2
    assert session.history[1].outcome.error == REPEATED_ACTION_ERROR


@pytest.mark.asyncio
async def test_step_limit_fails_session(registry, executor, db_context):
    planner = FakePlanner([decision("wait", duration=10)])
    engine = make_engine(planner, registry, db_context, max_steps=3)

    session = await engine.begin("wait forever", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    assert session.status is SessionStatus.FAILED
    assert session.failure_reason == "StepLimitExceeded"
    assert session.last_error.startswith("StepLimitExceeded")
    assert len(session.history) == 3
    assert len(executor.actions) == 3


@pytest.mark.asyncio
async def test_invalid_action_is_recorded_not_sent(registry, executor, db_context):
    planner = FakePlanner([decision("navigate")])
    engine = make_engine(planner, registry, db_context)

    session = await engine.begin("go somewhere", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    assert executor.actions == []
    assert session.status is SessionStatus.ACTIVE
    assert session.history[0].outcome.error.startswith("ActionValidationError")


@pytest.mark.asyncio
async def test_cancel_is_final(registry, executor, db_context):
    planner = FakePlanner([decision(None, is_complete=True)])
    engine = make_engine(planner, registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)

    cancelled = await engine.cancel(session.id)
    again = await engine.cancel(session.id)

    assert cancelled.status is SessionStatus.CANCELLED
    assert again.status is SessionStatus.CANCELLED
    with pytest.raises(InvalidState):
        await engine.run(session.id)
    assert planner.calls == []


@pytest.mark.asyncio
async def test_cancel_completed_session_rejected(registry, executor, db_context):
    engine = make_engine(FakePlanner([decision(None, is_complete=True)]), registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)
    await engine.run(session.id)

    with pytest.raises(InvalidState):
        await engine.cancel(session.id)


@pytest.mark.asyncio
async def test_disconnected_executor_surfaces_error(registry, db_context):
    engine = make_engine(FakePlanner([decision(None, is_complete=True)]), registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)

    with pytest.raises(ExecutorUnavailable):
        await engine.run(session.id)

    stored = await engine.get(session.id)
    assert stored.status is SessionStatus.ACTIVE
    assert stored.last_error.startswith("ExecutorUnavailable")


@pytest.mark.asyncio
async def test_planner_contract_violation_is_recorded(registry, executor, db_context):
    class BrokenPlanner(FakePlanner):
        async def generate(self, goal, snapshot, history, guidance=None):
            raise PlannerContractViolation("not JSON", raw_response="hello", attempts=5)

    engine = make_engine(BrokenPlanner([]), registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)

    with pytest.raises(PlannerContractViolation):
        await engine.run(session.id)

    stored = await engine.get(session.id)
    assert stored.history == []
    assert stored.last_error == "PlannerContractViolation: not JSON"


@pytest.mark.asyncio
async def test_post_action_snapshot_is_requested(registry, executor, db_context):
    executor.action_snapshot = False
    planner = FakePlanner([decision("click", selector="#el-1"), decision(None, is_complete=True)])
    engine = make_engine(planner, registry, db_context)

    session = await engine.begin("click", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    assert executor.snapshot_requests == 2
    assert session.history[0].snapshot_summary.url == "https://example.com/"
    assert session.status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_timeout_keeps_step_pending_until_late_result(registry, executor, db_context):
    executor.reply_to_actions = False
    planner = FakePlanner([
        decision("navigate", url="https://example.com/slow"),
        decision(None, is_complete=True),
    ])
    engine = make_engine(planner, registry, db_context, action_timeout=0.05)

    session = await engine.begin("open the slow page", "ext-1", auto_start=False)
    session = await engine.run(session.id)

    step = session.history[0]
    assert step.is_pending
    assert session.last_error.startswith("ExecutorUnavailable")

    # a second run does not dispatch over the pending step
    await engine.run(session.id)
    assert len(executor.actions) == 1

    await engine.handle_step_result("ext-1", {
        "type": "step_result",
        "stepId": step.step_id,
        "status": "completed",
        "result": {"late": True},
        "snapshot": make_snapshot_payload("https://example.com/slow"),
    })
    await drain(engine)

    session = await engine.get(session.id)
    assert session.status is SessionStatus.COMPLETED
    assert session.history[0].outcome.result == {"late": True}


@pytest.mark.asyncio
async def test_record_outcome_requires_pending_step(registry, executor, db_context):
    engine = make_engine(FakePlanner([decision(None, is_complete=True)]), registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)

    with pytest.raises(InvalidState):
        await engine.record_outcome(session.id, Outcome.success())


@pytest.mark.asyncio
async def test_retry_interrupted_step_replans(registry, executor, db_context):
    executor.reply_to_actions = False
    planner = FakePlanner([
        decision("click", selector="#el-2"),
        decision(None, is_complete=True),
    ])
    engine = make_engine(planner, registry, db_context, action_timeout=0.05)
    session = await engine.begin("click something", "ext-1", auto_start=False)
    session = await engine.run(session.id)
    step_id = session.history[0].step_id

    session = await engine.retry_interrupted_step(session.id, step_id)

    assert session.history[0].outcome.error == INTERRUPTED_STEP_ERROR
    assert session.status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_locks_are_dropped_after_run_and_cancel(registry, executor, db_context):
    engine = make_engine(FakePlanner([decision(None, is_complete=True)]), registry, db_context)
    done = await engine.begin("check the homepage", "ext-1", auto_start=False)
    cancelled = await engine.begin("check the homepage", "ext-1", auto_start=False)

    await engine.run(done.id)
    await engine.cancel(cancelled.id)
    with pytest.raises(InvalidState):
        await engine.run(cancelled.id)

    assert len(engine._session_locks) == 0
    assert registry.lease_count() == 0


@pytest.mark.asyncio
async def test_retry_after_executor_reconnects(registry, db_context):
    engine = make_engine(FakePlanner([decision(None, is_complete=True)]), registry, db_context)
    session = await engine.begin("check the homepage", "ext-1", auto_start=False)
    with pytest.raises(ExecutorUnavailable):
        await engine.run(session.id)

    await connect_executor(registry)
    session = await engine.retry(session.id, wait=True)

    assert session.status is SessionStatus.COMPLETED
    assert session.last_error is None


@pytest.mark.asyncio
async def test_retry_rejects_pending_step_and_finished_session(registry, executor, db_context):
    executor.reply_to_actions = False
    planner = FakePlanner([decision("click", selector="#el-1")])
    engine = make_engine(planner, registry, db_context, action_timeout=0.05)
    pending = await engine.begin("click something", "ext-1", auto_start=False)
    await engine.run(pending.id)
    finished = await engine.begin("click something", "ext-1", auto_start=False)
    await engine.cancel(finished.id)

    with pytest.raises(InvalidState):
        await engine.retry(pending.id)
    with pytest.raises(InvalidState):
        await engine.retry(finished.id)
    assert len(executor.actions) == 1
