"""
执行端通道 - 单个 WebSocket 连接上的请求/响应关联

消息格式（JSON）：
- 服务端 → 执行端：connected, request_snapshot {requestId}, action {stepId, kind, parameters}, ping
- 执行端 → 服务端：register, page_snapshot {requestId, snapshot}, step_result {stepId, status, ...}, pong

同一通道同时最多只有一个请求在途，后续请求在 _request_lock 上排队。
"""
import asyncio
import time
import uuid
from typing import Any, Dict, Optional

from loguru import logger

from sequencer.errors import ExecutorTimeout, ExecutorUnavailable
from sequencer.models import Action, PageSnapshot, utcnow


class ExecutorChannel:
    """
    执行端通道

    Usage:
        channel = ExecutorChannel("ext-1", ws)
        snapshot = await channel.request_snapshot()
        reply = await channel.execute(step_id, action, timeout=60)
    """

    def __init__(self, executor_id: str, ws, request_timeout: float = 10.0):
        self.executor_id = executor_id
        self.ws = ws
        self.request_timeout = request_timeout
        self.connected_at = utcnow()
        self.last_pong = time.monotonic()

        self._pending: Dict[str, asyncio.Future] = {}
        self._request_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and not self.ws.closed

    @property
    def busy(self) -> bool:
        return self._request_lock.locked()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.is_open:
            raise ExecutorUnavailable(f"executor {self.executor_id} channel is closed")
        try:
            await self.ws.send_json(message)
        except (ConnectionError, RuntimeError) as e:
            raise ExecutorUnavailable(f"send to executor {self.executor_id} failed: {e}") from e

    async def _request(self, key: str, message: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        async with self._request_lock:
            if not self.is_open:
                raise ExecutorUnavailable(f"executor {self.executor_id} channel is closed")

            future = asyncio.get_running_loop().create_future()
            self._pending[key] = future
            try:
                await self.send(message)
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError:
                raise ExecutorTimeout(
                    f"no {message['type']} reply from executor {self.executor_id} within {timeout}s"
                )
            finally:
                self._pending.pop(key, None)

    async def request_snapshot(self, timeout: Optional[float] = None) -> PageSnapshot:
        """
        请求当前页面快照

        Raises:
            ExecutorUnavailable: 超时、通道关闭或快照为空
        """
        request_id = str(uuid.uuid4())
        logger.debug(f"📸 [Channel] {self.executor_id} request_snapshot {request_id[:8]}")
        reply = await self._request(
            request_id,
            {"type": "request_snapshot", "requestId": request_id},
            timeout or self.request_timeout,
        )
        if reply.get("error"):
            raise ExecutorUnavailable(f"executor snapshot failed: {reply['error']}")

        payload = reply.get("snapshot") or reply.get("pageInfo")
        if payload is None and "html" in reply:
            payload = {"html": reply.get("html"), "url": reply.get("url"), "title": reply.get("title")}
        snapshot = PageSnapshot.from_payload(payload)
        if snapshot is None:
            raise ExecutorUnavailable(f"executor {self.executor_id} returned an empty snapshot")
        return snapshot

    async def execute(self, step_id: str, action: Action, timeout: float) -> Dict[str, Any]:
        """
        下发操作并等待 step_result

        Returns:
            dict: step_result 消息
        """
        logger.debug(f"🎯 [Channel] {self.executor_id} action {action.kind.value} step={step_id[:8]}")
        return await self._request(
            step_id,
            {"type": "action", "stepId": step_id, "kind": action.kind.value, "parameters": action.parameters},
            timeout,
        )

    def handle_message(self, data: Dict[str, Any]) -> bool:
        """
        将执行端回复与在途请求关联

        Returns:
            bool: 是否命中了在途请求（False 表示迟到或未知的回复）
        """
        msg_type = data.get("type")
        if msg_type == "page_snapshot":
            key = data.get("requestId")
        elif msg_type == "step_result":
            key = data.get("stepId")
        else:
            return False

        future = self._pending.get(key) if key else None
        if future is None or future.done():
            return False
        future.set_result(data)
        return True

    def mark_pong(self) -> None:
        self.last_pong = time.monotonic()

    async def run_heartbeat(self, ping_interval: float = 30.0, pong_timeout: float = 60.0) -> None:
        """定时发送 ping；超过 pong_timeout 未收到 pong 时关闭通道"""
        while self.is_open:
            await asyncio.sleep(ping_interval)
            if not self.is_open:
                break
            if time.monotonic() - self.last_pong > pong_timeout:
                logger.warning(f"💔 [Channel] {self.executor_id} pong timeout, closing")
                await self.close("pong timeout")
                break
            try:
                await self.send({"type": "ping"})
            except ExecutorUnavailable:
                break

    async def close(self, reason: str = "closed") -> None:
        """关闭通道，所有在途请求以 ExecutorUnavailable 失败"""
        if self._closed:
            return
        self._closed = True
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ExecutorUnavailable(f"executor {self.executor_id} disconnected: {reason}"))
        self._pending.clear()
        if not self.ws.closed:
            await self.ws.close()
        logger.info(f"🔌 [Channel] {self.executor_id} closed ({reason})")

    def describe(self) -> Dict[str, Any]:
        return {
            "executorId": self.executor_id,
            "connectedAt": self.connected_at.isoformat(),
            "open": self.is_open,
            "busy": self.busy,
            "secondsSincePong": round(time.monotonic() - self.last_pong, 1),
        }
