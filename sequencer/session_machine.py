"""
会话状态机

状态转换：
- active → active     （每执行一步）
- active → completed  （规划器判定目标达成）
- active → cancelled  （外部请求停止）
- active → failed     （超过步数上限）

终态不可再转换；complete / cancel 幂等。
"""
import uuid
from datetime import datetime
from typing import Callable, Optional, Tuple

from loguru import logger

from .errors import InvalidState
from .models import (
    Action,
    HistoryEntry,
    Outcome,
    Session,
    SessionStatus,
    SnapshotSummary,
    to_naive_utc,
    utcnow,
)

# (原始目标) -> (剥离调度短语后的目标, 解析出的执行时间)
GoalNormalizer = Callable[[str], Tuple[str, Optional[datetime]]]


def create_session(
    goal: str,
    executor_id: str,
    due_at: Optional[datetime] = None,
    user_id: str = "anonymous",
    normalizer: Optional[GoalNormalizer] = None,
    session_id: Optional[str] = None,
) -> Session:
    """
    创建会话

    Args:
        goal: 自然语言目标
        executor_id: 执行端ID
        due_at: 显式指定的执行时间（优先于从目标中解析的时间）
        user_id: 用户ID
        normalizer: 调度短语解析器
        session_id: 指定会话ID（默认生成 UUID）

    Returns:
        Session: status=active 的新会话
    """
    if not goal or not goal.strip():
        raise ValueError("goal must not be empty")
    if not executor_id:
        raise ValueError("executor_id must not be empty")

    clean_goal = goal.strip()
    parsed_due = None
    if normalizer is not None:
        clean_goal, parsed_due = normalizer(clean_goal)

    return Session(
        id=session_id or str(uuid.uuid4()),
        goal=clean_goal,
        executor_id=executor_id,
        status=SessionStatus.ACTIVE,
        due_at=to_naive_utc(due_at) or to_naive_utc(parsed_due),
        user_id=user_id or "anonymous",
    )


def ensure_active(session: Session) -> None:
    """对非 active 会话执行步骤时抛出 InvalidState"""
    if not session.is_active:
        raise InvalidState(f"session {session.id} is {session.status.value}")


def append_step(
    session: Session,
    action: Action,
    rationale: str = "",
    outcome: Optional[Outcome] = None,
    snapshot_summary: Optional[SnapshotSummary] = None,
    step_id: Optional[str] = None,
) -> Session:
    """
    追加一步执行记录（纯追加，不修改已有记录）

    Returns:
        Session: 同一个会话对象
    """
    entry = HistoryEntry(
        step_id=step_id or str(uuid.uuid4()),
        action=action,
        rationale=rationale or "",
        outcome=outcome,
        snapshot_summary=snapshot_summary,
    )
    session.history.append(entry)
    return session


def resolve_step(
    session: Session,
    step_id: str,
    outcome: Outcome,
    snapshot_summary: Optional[SnapshotSummary] = None,
) -> HistoryEntry:
    """
    为结果待定的步骤写入结果（每步只能写一次）

    Raises:
        InvalidState: 步骤不存在或已有结果
    """
    entry = session.find_step(step_id)
    if entry is None:
        raise InvalidState(f"step {step_id} not found in session {session.id}")
    if not entry.is_pending:
        raise InvalidState(f"step {step_id} already has an outcome")
    entry.outcome = outcome
    if snapshot_summary is not None:
        entry.snapshot_summary = snapshot_summary
    return entry


def _terminate(session: Session, target: SessionStatus, reason: Optional[str] = None) -> Session:
    if session.status is target:
        return session
    if session.status.is_terminal:
        raise InvalidState(
            f"session {session.id} is already {session.status.value}, cannot become {target.value}"
        )
    session.status = target
    if reason:
        session.failure_reason = reason
    logger.info(f"🏁 [Session] {session.id} -> {target.value}")
    return session


def complete(session: Session) -> Session:
    """active → completed（幂等）"""
    return _terminate(session, SessionStatus.COMPLETED)


def cancel(session: Session) -> Session:
    """active → cancelled（幂等）"""
    return _terminate(session, SessionStatus.CANCELLED)


def fail(session: Session, reason: str) -> Session:
    """active → failed（幂等），用于步数上限等终止失败"""
    return _terminate(session, SessionStatus.FAILED, reason)


def release(session: Session, now: Optional[datetime] = None) -> Session:
    """调度器释放延迟会话"""
    if session.released_at is None:
        session.released_at = now or utcnow()
    return session
