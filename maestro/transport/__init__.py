"""
Transport - 服务端与执行端之间的 WebSocket 双工通道
"""
from .channel import ExecutorChannel
from .registry import ExecutorRegistry

__all__ = ["ExecutorChannel", "ExecutorRegistry"]
