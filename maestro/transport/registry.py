"""
执行端注册表 - executor_id → 通道

WebSocket 处理器是唯一的写入方；编排循环和调度器只读取，
并通过 lease() 独占某个执行端。
"""
from typing import AsyncContextManager, Dict, List, Optional

from loguru import logger

from sequencer.errors import ExecutorUnavailable
from sequencer.locks import KeyedLocks
from .channel import ExecutorChannel


class ExecutorRegistry:
    """执行端注册表"""

    def __init__(self):
        self._channels: Dict[str, ExecutorChannel] = {}
        self._leases = KeyedLocks()

    async def register(self, channel: ExecutorChannel) -> None:
        """注册通道；同一 executor_id 的旧连接会被关闭"""
        previous = self._channels.get(channel.executor_id)
        self._channels[channel.executor_id] = channel
        if previous is not None and previous is not channel:
            await previous.close("replaced by a new connection")
        logger.info(f"✅ [Registry] executor connected: {channel.executor_id}")

    def get(self, executor_id: str) -> Optional[ExecutorChannel]:
        channel = self._channels.get(executor_id)
        if channel is None or not channel.is_open:
            return None
        return channel

    def require(self, executor_id: str) -> ExecutorChannel:
        """
        Raises:
            ExecutorUnavailable: 执行端未连接
        """
        channel = self.get(executor_id)
        if channel is None:
            raise ExecutorUnavailable(f"executor {executor_id} is not connected")
        return channel

    def remove(self, executor_id: str, channel: Optional[ExecutorChannel] = None) -> bool:
        """移除通道；指定 channel 时仅当其仍是当前连接才移除"""
        current = self._channels.get(executor_id)
        if current is None or (channel is not None and current is not channel):
            return False
        del self._channels[executor_id]
        logger.info(f"🔌 [Registry] executor disconnected: {executor_id}")
        return True

    def lease(self, executor_id: str) -> AsyncContextManager[None]:
        """执行端独占锁（async with registry.lease(id): ...）"""
        return self._leases.hold(executor_id)

    def lease_count(self) -> int:
        return len(self._leases)

    def is_connected(self, executor_id: str) -> bool:
        return self.get(executor_id) is not None

    def connected_ids(self) -> List[str]:
        return [executor_id for executor_id, channel in self._channels.items() if channel.is_open]

    def describe(self) -> List[dict]:
        return [channel.describe() for channel in self._channels.values() if channel.is_open]

    async def close_all(self) -> None:
        for channel in list(self._channels.values()):
            await channel.close("server shutdown")
        self._channels.clear()
