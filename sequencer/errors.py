"""
编排循环错误类型

除 InvalidState 与取消外，所有错误都可通过后续的调度或手动步骤恢复。
"""
from typing import Optional


class SequencerError(Exception):
    """编排循环错误基类"""

    code = "SequencerError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.detail = message

    def as_outcome_error(self) -> str:
        """写入 HistoryEntry.outcome.error 的字符串"""
        if self.detail:
            return f"{self.code}: {self.detail}"
        return self.code


class ExecutorUnavailable(SequencerError):
    """执行端未连接、请求超时或在请求过程中断开"""

    code = "ExecutorUnavailable"


class ExecutorTimeout(ExecutorUnavailable):
    """执行端在超时时间内没有回复（连接仍在，结果可能稍后到达）"""


class PlannerUnavailable(SequencerError):
    """规划器上游不可达或未配置，同一调用内不重试"""

    code = "PlannerUnavailable"


class PlannerContractViolation(SequencerError):
    """规划器多次重试后仍返回无法解析的输出"""

    code = "PlannerContractViolation"

    def __init__(self, message: str = "", raw_response: Optional[str] = None, attempts: int = 0):
        super().__init__(message)
        self.raw_response = raw_response
        self.attempts = attempts


class InvalidState(SequencerError):
    """对终态会话执行操作，直接拒绝且不重试"""

    code = "InvalidState"


class ActionValidationError(SequencerError):
    """操作参数不合法，不会下发到执行端"""

    code = "ActionValidationError"


class StepLimitExceeded(SequencerError):
    """会话步数超过上限"""

    code = "StepLimitExceeded"


class SessionNotFound(SequencerError):
    """会话不存在"""

    code = "SessionNotFound"
