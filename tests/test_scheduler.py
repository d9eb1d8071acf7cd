"""
Tests for the action scheduler: due sessions, due actions and stuck-step recovery
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from maestro.models.database import AutomationSession, BrowserAction
from maestro.services.scheduler import STUCK_STEP_ERROR, ActionScheduler
from maestro.services.session_store import SessionStore
from sequencer.engine import INTERRUPTED_STEP_ERROR, SequencingEngine
from sequencer.errors import ExecutorUnavailable, PlannerUnavailable
from sequencer.models import Action, ActionKind, ActionStatus, SessionStatus, utcnow
from sequencer.session_machine import create_session

from conftest import FakePlanner, connect_executor, decision


@pytest.fixture
def engine(registry, db_context):
    planner = FakePlanner([
        decision("navigate", url="https://example.com/news"),
        decision(None, is_complete=True),
    ])
    return SequencingEngine(planner, registry, db_context, snapshot_timeout=1, action_timeout=0.05,
                            post_action_snapshot_delay=0)


@pytest.fixture
def scheduler(engine, registry, db_context):
    return ActionScheduler(engine, registry, db_context, check_interval=1, stuck_timeout=300,
                           max_stuck_retries=1, action_timeout=1)


async def _age_action(db_context, action_id, started_at):
    async with db_context() as db:
        await db.execute(
            update(BrowserAction)
            .where(BrowserAction.id == action_id)
            .values(started_at=started_at)
            .execution_options(synchronize_session=False)
        )


async def _action(db_context, action_id):
    async with db_context() as db:
        return await SessionStore(db).get_action(action_id)


async def _session_retry_count(db_context, session_id):
    async with db_context() as db:
        result = await db.execute(select(AutomationSession.retry_count).where(AutomationSession.id == session_id))
        return result.scalar_one()


@pytest.mark.asyncio
async def test_due_session_is_released_once(scheduler, executor, engine, db_context):
    now = utcnow()
    session = create_session("check the news", "ext-1", due_at=now - timedelta(seconds=5))
    async with db_context() as db:
        await SessionStore(db).create_session(session)

    tasks = await scheduler.tick(now)
    await asyncio.gather(*tasks)

    assert len(tasks) == 1
    assert (await engine.get(session.id)).status is SessionStatus.COMPLETED
    assert len(executor.actions) == 1
    assert await scheduler.tick(now) == []


@pytest.mark.asyncio
async def test_future_session_is_not_released(scheduler, executor, db_context):
    now = utcnow()
    session = create_session("check the news", "ext-1", due_at=now + timedelta(minutes=10))
    async with db_context() as db:
        await SessionStore(db).create_session(session)

    assert await scheduler.tick(now) == []


@pytest.mark.asyncio
async def test_due_session_with_offline_executor_is_retried_later(scheduler, registry, engine, db_context):
    now = utcnow()
    session = create_session("check the news", "ext-1", due_at=now - timedelta(seconds=1))
    async with db_context() as db:
        await SessionStore(db).create_session(session)

    await asyncio.gather(*await scheduler.tick(now))
    stalled = await engine.get(session.id)
    assert stalled.status is SessionStatus.ACTIVE
    assert stalled.last_error.startswith("ExecutorUnavailable")

    executor = await connect_executor(registry)
    # retry delay has not elapsed yet
    assert await scheduler.tick(now) == []

    tasks = await scheduler.tick(utcnow() + timedelta(seconds=61))
    await asyncio.gather(*tasks)

    assert len(tasks) == 1
    session = await engine.get(session.id)
    assert session.status is SessionStatus.COMPLETED
    assert session.last_error is None
    assert len(executor.actions) == 1


@pytest.mark.asyncio
async def test_offline_executor_does_not_consume_session_retry(scheduler, registry, engine, db_context):
    session = await engine.begin("check the news", "ext-1", auto_start=False)
    with pytest.raises(ExecutorUnavailable):
        await engine.run(session.id)

    later = utcnow() + timedelta(seconds=61)
    assert await scheduler.tick(later) == []
    assert await _session_retry_count(db_context, session.id) == 0

    await connect_executor(registry)
    tasks = await scheduler.tick(later)
    await asyncio.gather(*tasks)

    assert len(tasks) == 1
    assert await _session_retry_count(db_context, session.id) == 1
    assert (await engine.get(session.id)).status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_session_retries_stop_at_limit(registry, executor, db_context):
    class DownPlanner(FakePlanner):
        async def generate(self, goal, snapshot, history, guidance=None):
            self.calls.append({"goal": goal})
            raise PlannerUnavailable("planner is down")

    planner = DownPlanner([])
    engine = SequencingEngine(planner, registry, db_context, snapshot_timeout=1, action_timeout=0.05)
    scheduler = ActionScheduler(engine, registry, db_context, session_retry_delay=60, max_session_retries=1)
    session = await engine.begin("check the news", "ext-1", auto_start=False)
    with pytest.raises(PlannerUnavailable):
        await engine.run(session.id)

    tasks = await scheduler.tick(utcnow() + timedelta(seconds=61))
    await asyncio.gather(*tasks)
    assert len(tasks) == 1

    assert await scheduler.tick(utcnow() + timedelta(minutes=10)) == []
    assert len(planner.calls) == 2
    stored = await engine.get(session.id)
    assert stored.status is SessionStatus.ACTIVE
    assert stored.last_error == "PlannerUnavailable: planner is down"


@pytest.mark.asyncio
async def test_standalone_action_is_dispatched(scheduler, executor, db_context):
    async with db_context() as db:
        await SessionStore(db).create_action("a1", "ext-1", Action(ActionKind.CLICK, {"selector": "#go"}))

    tasks = await scheduler.tick()
    await asyncio.gather(*tasks)

    row = await _action(db_context, "a1")
    assert row.status == ActionStatus.COMPLETED.value
    assert row.result == {"ok": True}
    assert executor.actions[0]["stepId"] == "a1"


@pytest.mark.asyncio
async def test_action_for_disconnected_executor_fails(scheduler, db_context):
    async with db_context() as db:
        await SessionStore(db).create_action("a1", "ghost", Action(ActionKind.WAIT, {"duration": 100}))

    assert await scheduler.tick() == []

    row = await _action(db_context, "a1")
    assert row.status == ActionStatus.FAILED.value
    assert row.error.startswith("ExecutorUnavailable")


@pytest.mark.asyncio
async def test_scheduled_action_waits_until_due(scheduler, executor, db_context):
    now = utcnow()
    async with db_context() as db:
        await SessionStore(db).create_action("a1", "ext-1", Action(ActionKind.WAIT, {"duration": 1}),
                                             scheduled_at=now + timedelta(minutes=5))

    assert await scheduler.tick(now) == []
    tasks = await scheduler.tick(now + timedelta(minutes=6))
    await asyncio.gather(*tasks)

    assert (await _action(db_context, "a1")).status == ActionStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_stuck_action_reset_once_then_failed(scheduler, db_context):
    now = utcnow()
    async with db_context() as db:
        store = SessionStore(db)
        await store.create_action("old", "ghost", Action(ActionKind.WAIT, {"duration": 1}), status=ActionStatus.STARTED)
        await store.create_action("young", "ghost", Action(ActionKind.WAIT, {"duration": 1}), status=ActionStatus.STARTED)
    await _age_action(db_context, "old", now - timedelta(minutes=6))
    await _age_action(db_context, "young", now - timedelta(minutes=2))

    await scheduler.recover_stuck_steps(now)

    old = await _action(db_context, "old")
    young = await _action(db_context, "young")
    assert old.status == ActionStatus.PENDING.value
    assert old.retry_count == 1
    assert young.status == ActionStatus.STARTED.value
    assert young.retry_count == 0

    async with db_context() as db:
        await SessionStore(db).claim_action("old", now)
    await _age_action(db_context, "old", now - timedelta(minutes=6))
    await scheduler.recover_stuck_steps(now)

    old = await _action(db_context, "old")
    assert old.status == ActionStatus.FAILED.value
    assert old.error == STUCK_STEP_ERROR


@pytest.mark.asyncio
async def test_stuck_session_step_is_replanned(scheduler, executor, engine, db_context):
    executor.reply_to_actions = False
    session = await engine.begin("read the news", "ext-1", auto_start=False)
    session = await engine.run(session.id)
    step_id = session.history[0].step_id
    assert session.history[0].is_pending

    now = utcnow()
    await _age_action(db_context, step_id, now - timedelta(minutes=6))
    await scheduler.recover_stuck_steps(now)
    assert (await _action(db_context, step_id)).status == ActionStatus.PENDING.value

    tasks = await scheduler.dispatch_due_actions(now)
    await asyncio.gather(*tasks)

    session = await engine.get(session.id)
    assert session.history[0].outcome.error == INTERRUPTED_STEP_ERROR
    assert session.status is SessionStatus.COMPLETED
    assert (await _action(db_context, step_id)).status == ActionStatus.FAILED.value


@pytest.mark.asyncio
async def test_start_and_stop(scheduler):
    await scheduler.start()
    assert scheduler.running

    await scheduler.stop()
    assert not scheduler.running
