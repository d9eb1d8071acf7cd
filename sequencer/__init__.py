"""
Sequencer - 会话状态机与 观察→规划→执行→记录 循环

编排循环见 sequencer.engine，规划器适配见 sequencer.planner。
"""
from .errors import (
    ActionValidationError,
    ExecutorTimeout,
    ExecutorUnavailable,
    InvalidState,
    PlannerContractViolation,
    PlannerUnavailable,
    SequencerError,
    SessionNotFound,
    StepLimitExceeded,
)
from .models import (
    Action,
    ActionKind,
    ActionStatus,
    HistoryEntry,
    Outcome,
    PageSnapshot,
    PlannerDecision,
    Session,
    SessionStatus,
)

__all__ = [
    "Action",
    "ActionKind",
    "ActionStatus",
    "ActionValidationError",
    "ExecutorTimeout",
    "ExecutorUnavailable",
    "HistoryEntry",
    "InvalidState",
    "Outcome",
    "PageSnapshot",
    "PlannerContractViolation",
    "PlannerDecision",
    "PlannerUnavailable",
    "SequencerError",
    "Session",
    "SessionNotFound",
    "SessionStatus",
    "StepLimitExceeded",
]
