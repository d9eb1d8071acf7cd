"""
Tests for executor channel request correlation and the executor registry
"""
import asyncio

import pytest

from maestro.transport import ExecutorChannel, ExecutorRegistry
from sequencer.errors import ExecutorTimeout, ExecutorUnavailable
from sequencer.models import Action, ActionKind

from conftest import FakeWebSocket, make_snapshot_payload


def click():
    return Action(ActionKind.CLICK, {"selector": "#go"})


@pytest.mark.asyncio
async def test_snapshot_request_is_correlated():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)

    task = asyncio.create_task(channel.request_snapshot(timeout=1))
    await asyncio.sleep(0)
    request = ws.sent[-1]
    assert request["type"] == "request_snapshot"

    assert channel.handle_message({"type": "page_snapshot", "requestId": "other"}) is False
    assert channel.handle_message({
        "type": "page_snapshot",
        "requestId": request["requestId"],
        "snapshot": make_snapshot_payload("https://a.test/"),
    }) is True

    snapshot = await task
    assert snapshot.url == "https://a.test/"


@pytest.mark.asyncio
async def test_snapshot_error_reply():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)

    task = asyncio.create_task(channel.request_snapshot(timeout=1))
    await asyncio.sleep(0)
    channel.handle_message({"type": "page_snapshot", "requestId": ws.sent[-1]["requestId"], "error": "no tab"})

    with pytest.raises(ExecutorUnavailable):
        await task


@pytest.mark.asyncio
async def test_requests_are_serialized_per_channel():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)

    first = asyncio.create_task(channel.execute("step-1", click(), timeout=1))
    second = asyncio.create_task(channel.execute("step-2", click(), timeout=1))
    await asyncio.sleep(0.01)

    assert [m["stepId"] for m in ws.sent] == ["step-1"]
    assert channel.busy

    channel.handle_message({"type": "step_result", "stepId": "step-1", "status": "completed"})
    assert (await first)["stepId"] == "step-1"
    await asyncio.sleep(0.01)
    assert [m["stepId"] for m in ws.sent] == ["step-1", "step-2"]

    channel.handle_message({"type": "step_result", "stepId": "step-2", "status": "completed"})
    await second


@pytest.mark.asyncio
async def test_timeout_raises_executor_timeout_and_late_reply_is_unmatched():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)

    with pytest.raises(ExecutorTimeout):
        await channel.execute("step-1", click(), timeout=0.05)

    assert channel.handle_message({"type": "step_result", "stepId": "step-1"}) is False
    assert not channel.busy


@pytest.mark.asyncio
async def test_close_fails_pending_requests():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)

    task = asyncio.create_task(channel.execute("step-1", click(), timeout=5))
    await asyncio.sleep(0)
    await channel.close("disconnected")

    with pytest.raises(ExecutorUnavailable):
        await task
    assert ws.closed
    with pytest.raises(ExecutorUnavailable):
        await channel.request_snapshot(timeout=1)


@pytest.mark.asyncio
async def test_heartbeat_closes_silent_channel():
    ws = FakeWebSocket()
    channel = ExecutorChannel("ext-1", ws)
    channel.last_pong -= 10

    await asyncio.wait_for(channel.run_heartbeat(ping_interval=0.01, pong_timeout=1), timeout=1)

    assert not channel.is_open


@pytest.mark.asyncio
async def test_registry_replaces_previous_connection():
    registry = ExecutorRegistry()
    old = ExecutorChannel("ext-1", FakeWebSocket())
    new = ExecutorChannel("ext-1", FakeWebSocket())

    await registry.register(old)
    await registry.register(new)

    assert not old.is_open
    assert registry.require("ext-1") is new
    assert registry.remove("ext-1", old) is False
    assert registry.connected_ids() == ["ext-1"]


@pytest.mark.asyncio
async def test_registry_require_unknown_executor():
    registry = ExecutorRegistry()

    with pytest.raises(ExecutorUnavailable):
        registry.require("ghost")
    assert registry.is_connected("ghost") is False


@pytest.mark.asyncio
async def test_lease_serializes_per_executor_and_is_released():
    registry = ExecutorRegistry()
    order = []

    async def hold(name):
        async with registry.lease("ext-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(hold("a"), hold("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert registry.lease_count() == 0


@pytest.mark.asyncio
async def test_lease_for_other_executor_does_not_block():
    registry = ExecutorRegistry()

    async with registry.lease("ext-1"):
        async with registry.lease("ext-2"):
            assert registry.lease_count() == 2

    assert registry.lease_count() == 0
