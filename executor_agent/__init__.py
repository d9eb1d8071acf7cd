"""
执行端代理 - 在本地浏览器中执行规划服务下发的操作
"""
from .browser import BrowserController
from .client import ExecutorAgent, next_backoff

__all__ = ["BrowserController", "ExecutorAgent", "next_backoff"]
