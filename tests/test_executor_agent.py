"""
Tests for the executor agent message handling (browser replaced by a fake)
"""
import pytest

from executor_agent.client import ExecutorAgent, next_backoff

from conftest import FakeWebSocket, make_snapshot_payload


class FakeBrowser:
    def __init__(self, snapshot_failures=0, outcome=None):
        self.snapshot_failures = snapshot_failures
        self.snapshot_calls = 0
        self.executed = []
        self.outcome = outcome or {"success": True, "result": {"clicked": True}}

    async def execute(self, kind, params):
        self.executed.append((kind, params))
        return self.outcome

    async def snapshot(self):
        self.snapshot_calls += 1
        if self.snapshot_calls <= self.snapshot_failures:
            raise ValueError("page is navigating")
        return make_snapshot_payload("https://example.com/after")


def make_agent(browser):
    return ExecutorAgent("ws://localhost:3001/extension/ws", "laptop 1", browser,
                         settle_delay=0, snapshot_retry_delay=0)


def test_backoff_doubles_up_to_cap():
    delays = [1.0]
    for _ in range(6):
        delays.append(next_backoff(delays[-1], 30.0))

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_ws_url_carries_executor_id():
    agent = make_agent(FakeBrowser())

    assert agent.ws_url == "ws://localhost:3001/extension/ws?executorId=laptop%201"


@pytest.mark.asyncio
async def test_ping_is_answered():
    ws = FakeWebSocket()
    await make_agent(FakeBrowser()).handle_message(ws, {"type": "ping"})

    assert ws.sent == [{"type": "pong"}]


@pytest.mark.asyncio
async def test_snapshot_request():
    ws = FakeWebSocket()
    await make_agent(FakeBrowser()).handle_message(ws, {"type": "request_snapshot", "requestId": "r1"})

    reply = ws.sent[0]
    assert reply["type"] == "page_snapshot"
    assert reply["requestId"] == "r1"
    assert reply["snapshot"]["url"] == "https://example.com/after"


@pytest.mark.asyncio
async def test_snapshot_failure_is_reported():
    ws = FakeWebSocket()
    await make_agent(FakeBrowser(snapshot_failures=1)).handle_message(
        ws, {"type": "request_snapshot", "requestId": "r1"}
    )

    assert ws.sent[0] == {"type": "page_snapshot", "requestId": "r1", "error": "page is navigating"}


@pytest.mark.asyncio
async def test_action_reports_result_with_retried_snapshot():
    ws = FakeWebSocket()
    browser = FakeBrowser(snapshot_failures=2)

    await make_agent(browser).handle_message(ws, {
        "type": "action", "stepId": "s1", "kind": "click", "parameters": {"selector": "#go"},
    })

    assert browser.executed == [("click", {"selector": "#go"})]
    assert browser.snapshot_calls == 3
    result = ws.sent[0]
    assert result["type"] == "step_result"
    assert result["stepId"] == "s1"
    assert result["status"] == "completed"
    assert result["result"] == {"clicked": True}
    assert result["snapshot"]["url"] == "https://example.com/after"


@pytest.mark.asyncio
async def test_failed_action_still_attaches_snapshot():
    ws = FakeWebSocket()
    browser = FakeBrowser(outcome={"success": False, "error": "Element not found: #go"})

    await make_agent(browser).handle_message(ws, {
        "type": "action", "stepId": "s1", "kind": "click", "parameters": {"selector": "#go"},
    })

    result = ws.sent[0]
    assert result["status"] == "failed"
    assert result["error"] == "Element not found: #go"
    assert result["snapshot"] is not None


@pytest.mark.asyncio
async def test_snapshot_gives_up_after_attempts():
    agent = make_agent(FakeBrowser(snapshot_failures=5))

    assert await agent.collect_snapshot(3) is None
