"""
执行端 WebSocket 客户端

连接规划服务的 /extension/ws?executorId=...，接收指令并驱动 BrowserController：
- ping            -> pong
- request_snapshot -> page_snapshot {requestId, snapshot}
- action          -> 执行操作，等待页面稳定后采集快照，回传 step_result

断线后按 1s, 2s, 4s ... 最长 30s 指数退避重连，连接成功后退避重置。
"""
import asyncio
import json
from typing import Any, Dict, Optional, Set
from urllib.parse import quote

import aiohttp
from loguru import logger

from .browser import BrowserController


def next_backoff(delay: float, max_delay: float) -> float:
    """下一次重连等待时间"""
    return min(delay * 2, max_delay)


class ExecutorAgent:
    """执行端代理 - 维护到规划服务的长连接"""

    def __init__(
        self,
        backend_url: str,
        executor_id: str,
        browser: BrowserController,
        connect_timeout: float = 10.0,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        settle_delay: float = 1.0,
        snapshot_attempts: int = 3,
        snapshot_retry_delay: float = 0.5,
    ) -> None:
        self.backend_url = backend_url
        self.executor_id = executor_id
        self.browser = browser
        self.connect_timeout = connect_timeout
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.settle_delay = settle_delay
        self.snapshot_attempts = snapshot_attempts
        self.snapshot_retry_delay = snapshot_retry_delay
        self._stopped = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, executor_id: str, browser: BrowserController) -> "ExecutorAgent":
        return cls(
            settings.executor_backend_url,
            executor_id,
            browser,
            connect_timeout=settings.executor_connect_timeout,
            initial_delay=settings.executor_reconnect_initial_delay,
            max_delay=settings.executor_reconnect_max_delay,
        )

    @property
    def ws_url(self) -> str:
        separator = "&" if "?" in self.backend_url else "?"
        return f"{self.backend_url}{separator}executorId={quote(self.executor_id)}"

    def stop(self) -> None:
        self._stopped.set()

    async def run_forever(self) -> None:
        """连接并在断线后重连，直到 stop()"""
        delay = self.initial_delay
        async with aiohttp.ClientSession() as http:
            while not self._stopped.is_set():
                try:
                    logger.info(f"🔌 [Executor] connecting to {self.ws_url}")
                    ws = await asyncio.wait_for(http.ws_connect(self.ws_url), timeout=self.connect_timeout)
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    logger.warning(f"⚠️ [Executor] connect failed: {e}; retrying in {delay:.0f}s")
                    await self._sleep(delay)
                    delay = next_backoff(delay, self.max_delay)
                    continue

                delay = self.initial_delay
                try:
                    await self._session(ws)
                finally:
                    await ws.close()
                if not self._stopped.is_set():
                    logger.warning(f"🔌 [Executor] disconnected; reconnecting in {delay:.0f}s")
                    await self._sleep(delay)
                    delay = next_backoff(delay, self.max_delay)

        for task in list(self._tasks):
            task.cancel()

    async def _sleep(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _session(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        logger.info(f"✅ [Executor] connected as {self.executor_id}")
        await self._send(ws, {"type": "register", "info": {"executorId": self.executor_id, "runtime": "playwright"}})

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("⚠️ [Executor] invalid JSON from server")
                    continue
                if not isinstance(data, dict):
                    continue
                task = asyncio.create_task(self.handle_message(ws, data))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

    async def _send(self, ws, message: Dict[str, Any]) -> None:
        try:
            await ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            logger.warning(f"⚠️ [Executor] send failed ({message.get('type')}): {e}")

    async def handle_message(self, ws, data: Dict[str, Any]) -> None:
        """处理服务端消息"""
        msg_type = data.get("type")

        if msg_type == "ping":
            await self._send(ws, {"type": "pong"})
        elif msg_type == "connected":
            logger.info(f"🤝 [Executor] server acknowledged {data.get('executorId')}")
        elif msg_type == "request_snapshot":
            await self._reply_snapshot(ws, data.get("requestId"))
        elif msg_type == "action":
            await self._run_action(ws, data)
        elif msg_type != "pong":
            logger.debug(f"🔍 [Executor] ignoring message type {msg_type}")

    async def _reply_snapshot(self, ws, request_id: Optional[str]) -> None:
        try:
            snapshot = await self.browser.snapshot()
        except Exception as e:
            logger.error(f"❌ [Executor] snapshot failed: {e}")
            await self._send(ws, {"type": "page_snapshot", "requestId": request_id, "error": str(e)})
            return
        await self._send(ws, {"type": "page_snapshot", "requestId": request_id, "snapshot": snapshot})

    async def _run_action(self, ws, data: Dict[str, Any]) -> None:
        step_id = data.get("stepId")
        kind = data.get("kind")
        logger.info(f"🎯 [Executor] step {step_id}: {kind}")

        outcome = await self.browser.execute(kind, data.get("parameters") or {})
        succeeded = bool(outcome.get("success"))

        if succeeded:
            await asyncio.sleep(self.settle_delay)
            snapshot = await self.collect_snapshot(self.snapshot_attempts)
        else:
            await asyncio.sleep(self.snapshot_retry_delay)
            snapshot = await self.collect_snapshot(1)

        await self._send(ws, {
            "type": "step_result",
            "stepId": step_id,
            "status": "completed" if succeeded else "failed",
            "result": outcome.get("result"),
            "error": outcome.get("error"),
            "snapshot": snapshot,
        })

    async def collect_snapshot(self, attempts: int) -> Optional[Dict[str, Any]]:
        """采集页面快照，失败时间隔重试"""
        for attempt in range(1, attempts + 1):
            try:
                return await self.browser.snapshot()
            except Exception as e:
                logger.warning(f"⚠️ [Executor] snapshot attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.snapshot_retry_delay)
        return None
