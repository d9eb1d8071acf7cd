"""
Test configuration
"""
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

# Add project root to path
root_path = Path(__file__).parent.parent
sys.path.insert(0, str(root_path))

# Set minimal environment variables for testing
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_maestro.db")
os.environ.setdefault("OPENAI_API_KEY", "test_openai_key")  # Set a dummy key for testing

from maestro.database import create_session_factory, init_async_db, close_async_db, make_db_context  # noqa: E402
from maestro.transport import ExecutorChannel, ExecutorRegistry  # noqa: E402
from sequencer.models import PlannerDecision, ActionKind  # noqa: E402


@pytest_asyncio.fixture
async def db_context(tmp_path):
    """临时 sqlite 数据库上下文"""
    engine, factory = create_session_factory(f"sqlite:///{tmp_path / 'maestro_test.db'}")
    await init_async_db(engine)
    yield make_db_context(factory)
    await close_async_db(engine)


def make_snapshot_payload(url: str = "https://example.com/", title: str = "Example", elements: int = 3) -> Dict[str, Any]:
    return {
        "url": url,
        "title": title,
        "description": "",
        "headings": [{"level": 1, "text": title}],
        "interactiveElements": [
            {"selector": f"#el-{i}", "type": "button", "label": f"Button {i}", "tagName": "button"}
            for i in range(elements)
        ],
    }


class FakeWebSocket:
    """记录发送消息的 WebSocket 替身"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def send_json(self, message):
        if self.closed:
            raise ConnectionResetError("closed")
        self.sent.append(message)

    async def close(self):
        self.closed = True


class ScriptedExecutor:
    """
    模拟执行端：对 request_snapshot 与 action 按脚本自动回复

    responder(message) 返回回复消息；返回 None 表示不回复（模拟超时）
    """

    def __init__(self, channel: ExecutorChannel):
        self.channel = channel
        self.actions: List[Dict[str, Any]] = []
        self.snapshot_requests = 0
        self.url = "https://example.com/"
        self.reply_to_actions = True
        self.action_snapshot = True

    async def send_json(self, message):
        self.channel.ws.sent.append(message)
        asyncio.get_running_loop().call_soon(self._respond, message)

    def _respond(self, message):
        if message["type"] == "request_snapshot":
            self.snapshot_requests += 1
            self.channel.handle_message({
                "type": "page_snapshot",
                "requestId": message["requestId"],
                "snapshot": make_snapshot_payload(self.url),
            })
        elif message["type"] == "action":
            self.actions.append(message)
            if not self.reply_to_actions:
                return
            if message["kind"] == "navigate":
                self.url = message["parameters"]["url"]
            reply = {
                "type": "step_result",
                "stepId": message["stepId"],
                "status": "completed",
                "result": {"ok": True},
            }
            if self.action_snapshot:
                reply["snapshot"] = make_snapshot_payload(self.url)
            self.channel.handle_message(reply)


@pytest.fixture
def registry():
    return ExecutorRegistry()


async def connect_executor(registry: ExecutorRegistry, executor_id: str = "ext-1") -> ScriptedExecutor:
    """注册一个模拟执行端"""
    ws = FakeWebSocket()
    channel = ExecutorChannel(executor_id, ws, request_timeout=1.0)
    scripted = ScriptedExecutor(channel)
    ws.send_json = scripted.send_json
    await registry.register(channel)
    return scripted


@pytest_asyncio.fixture
async def executor(registry):
    """已连接的模拟执行端 ext-1"""
    return await connect_executor(registry)


class FakePlanner:
    """按顺序返回预设决策的规划器"""

    def __init__(self, decisions: List[PlannerDecision]):
        self.decisions = list(decisions)
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, goal, snapshot, history, guidance: Optional[str] = None) -> PlannerDecision:
        self.calls.append({"goal": goal, "url": snapshot.url, "history": len(history), "guidance": guidance})
        if len(self.decisions) > 1:
            return self.decisions.pop(0)
        return self.decisions[0]


def decision(kind: Optional[str], is_complete: bool = False, **parameters) -> PlannerDecision:
    return PlannerDecision(
        kind=ActionKind(kind) if kind else None,
        parameters=parameters,
        rationale=f"{kind} step" if kind else "done",
        is_complete=is_complete,
    )
