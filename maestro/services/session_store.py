"""
会话存储服务 - 会话、执行历史与浏览器操作的持久化

所有状态转换使用条件 UPDATE（WHERE status=...），依赖 rowcount 判断是否抢占成功，
避免调度器与请求处理之间的重复派发。
"""
from datetime import datetime
from typing import Any, List, Optional, Tuple

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from maestro.models.database import AutomationSession, BrowserAction, SessionStep
from sequencer.errors import InvalidState, SessionNotFound
from sequencer.models import (
    Action,
    ActionKind,
    ActionStatus,
    HistoryEntry,
    Outcome,
    Session,
    SessionStatus,
    SnapshotSummary,
    utcnow,
)

TERMINAL_ACTION_STATUSES = {ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.CANCELLED}


def _entry_from_row(row: SessionStep) -> HistoryEntry:
    outcome = None
    if row.has_outcome:
        outcome = Outcome(result=row.outcome_result, error=row.outcome_error)
    summary = None
    if row.snapshot_url is not None:
        summary = SnapshotSummary(
            url=row.snapshot_url,
            title=row.snapshot_title or "",
            element_count=row.snapshot_element_count,
        )
    return HistoryEntry(
        step_id=row.step_id,
        action=Action(kind=ActionKind(row.kind), parameters=dict(row.parameters or {})),
        rationale=row.rationale or "",
        outcome=outcome,
        snapshot_summary=summary,
        created_at=row.created_at,
    )


class SessionStore:
    """会话存储服务"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: Session) -> AutomationSession:
        row = AutomationSession(
            id=session.id,
            goal=session.goal,
            executor_id=session.executor_id,
            user_id=session.user_id,
            status=session.status.value,
            due_at=session.due_at,
            released_at=session.released_at,
            created_at=session.created_at,
        )
        self.db.add(row)
        await self.db.flush()
        logger.debug(f"💾 [SessionStore] created session {session.id} (due_at={session.due_at})")
        return row

    async def _get_row(self, session_id: str) -> AutomationSession:
        row = await self.db.get(AutomationSession, session_id, populate_existing=True)
        if row is None:
            raise SessionNotFound(f"session {session_id} not found")
        return row

    async def get_session(self, session_id: str) -> Session:
        """加载会话及完整历史"""
        row = await self._get_row(session_id)
        result = await self.db.execute(
            select(SessionStep)
            .where(SessionStep.session_id == session_id)
            .order_by(SessionStep.position)
            .execution_options(populate_existing=True)
        )
        history = [_entry_from_row(step) for step in result.scalars().all()]
        return Session(
            id=row.id,
            goal=row.goal,
            executor_id=row.executor_id,
            status=SessionStatus(row.status),
            history=history,
            due_at=row.due_at,
            user_id=row.user_id or "anonymous",
            failure_reason=row.failure_reason,
            last_error=row.last_error,
            created_at=row.created_at,
            released_at=row.released_at,
        )

    async def get_status(self, session_id: str) -> SessionStatus:
        result = await self.db.execute(
            select(AutomationSession.status).where(AutomationSession.id == session_id)
        )
        status = result.scalar_one_or_none()
        if status is None:
            raise SessionNotFound(f"session {session_id} not found")
        return SessionStatus(status)

    async def append_history(self, session_id: str, entry: HistoryEntry) -> int:
        """
        追加一条历史记录

        Returns:
            int: 该记录的位置
        """
        result = await self.db.execute(
            select(func.count(SessionStep.id)).where(SessionStep.session_id == session_id)
        )
        position = result.scalar_one()
        summary = entry.snapshot_summary
        self.db.add(SessionStep(
            session_id=session_id,
            position=position,
            step_id=entry.step_id,
            kind=entry.action.kind.value,
            parameters=dict(entry.action.parameters),
            rationale=entry.rationale,
            has_outcome=entry.outcome is not None,
            outcome_result=entry.outcome.result if entry.outcome else None,
            outcome_error=entry.outcome.error if entry.outcome else None,
            snapshot_url=summary.url if summary else None,
            snapshot_title=summary.title if summary else None,
            snapshot_element_count=summary.element_count if summary else None,
            created_at=entry.created_at,
            resolved_at=utcnow() if entry.outcome is not None else None,
        ))
        await self.db.flush()
        return position

    async def resolve_history(
        self,
        session_id: str,
        step_id: str,
        outcome: Outcome,
        snapshot_summary: Optional[SnapshotSummary] = None,
    ) -> None:
        """
        写入待定步骤的结果（只能写一次）

        Raises:
            InvalidState: 步骤不存在或已有结果
        """
        values = {
            "has_outcome": True,
            "outcome_result": outcome.result,
            "outcome_error": outcome.error,
            "resolved_at": utcnow(),
        }
        if snapshot_summary is not None:
            values.update(
                snapshot_url=snapshot_summary.url,
                snapshot_title=snapshot_summary.title,
                snapshot_element_count=snapshot_summary.element_count,
            )
        result = await self.db.execute(
            update(SessionStep)
            .where(
                SessionStep.session_id == session_id,
                SessionStep.step_id == step_id,
                SessionStep.has_outcome.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidState(f"step {step_id} is not pending in session {session_id}")

    async def update_status(
        self,
        session_id: str,
        status: SessionStatus,
        reason: Optional[str] = None,
    ) -> bool:
        """
        active → 终态（条件更新）

        Returns:
            bool: 是否由本次调用完成转换
        """
        values = {"status": status.value, "updated_at": utcnow()}
        if reason:
            values["failure_reason"] = reason
        result = await self.db.execute(
            update(AutomationSession)
            .where(
                AutomationSession.id == session_id,
                AutomationSession.status == SessionStatus.ACTIVE.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_last_error(self, session_id: str, error: Optional[str]) -> None:
        now = utcnow()
        await self.db.execute(
            update(AutomationSession)
            .where(AutomationSession.id == session_id)
            .values(last_error=error, last_error_at=now if error else None, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    def _stalled_conditions(self, cutoff: datetime, max_retries: int) -> list:
        pending_step = (
            select(SessionStep.id)
            .where(
                SessionStep.session_id == AutomationSession.id,
                SessionStep.has_outcome.is_(False),
            )
            .correlate(AutomationSession)
            .exists()
        )
        return [
            AutomationSession.status == SessionStatus.ACTIVE.value,
            AutomationSession.last_error.is_not(None),
            AutomationSession.last_error_at <= cutoff,
            AutomationSession.retry_count < max_retries,
            ~pending_step,
        ]

    async def find_stalled_sessions(self, cutoff: datetime, max_retries: int) -> List[Tuple[str, str]]:
        """
        Observe / Plan 失败后停滞的 active 会话（没有待定步骤）

        Returns:
            List[Tuple[str, str]]: (session_id, executor_id)
        """
        result = await self.db.execute(
            select(AutomationSession.id, AutomationSession.executor_id)
            .where(*self._stalled_conditions(cutoff, max_retries))
            .order_by(AutomationSession.last_error_at)
        )
        return [(row.id, row.executor_id) for row in result.all()]

    async def claim_stalled_session(self, session_id: str, cutoff: datetime, max_retries: int, now: datetime) -> bool:
        """原子领取停滞会话：重试次数 +1，并把 last_error_at 推到 now 防止重复领取"""
        result = await self.db.execute(
            update(AutomationSession)
            .where(AutomationSession.id == session_id, *self._stalled_conditions(cutoff, max_retries))
            .values(retry_count=AutomationSession.retry_count + 1, last_error_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def find_due_sessions(self, now: datetime) -> List[str]:
        """到期且尚未被领取的 active 会话ID"""
        result = await self.db.execute(
            select(AutomationSession.id)
            .where(
                AutomationSession.status == SessionStatus.ACTIVE.value,
                AutomationSession.due_at.is_not(None),
                AutomationSession.due_at <= now,
                AutomationSession.released_at.is_(None),
            )
            .order_by(AutomationSession.due_at)
        )
        return list(result.scalars().all())

    async def claim_due_session(self, session_id: str, now: datetime) -> bool:
        """原子领取到期会话（重新校验状态，防止重复派发）"""
        result = await self.db.execute(
            update(AutomationSession)
            .where(
                AutomationSession.id == session_id,
                AutomationSession.status == SessionStatus.ACTIVE.value,
                AutomationSession.released_at.is_(None),
            )
            .values(released_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Browser actions
    # ------------------------------------------------------------------

    async def create_action(
        self,
        action_id: str,
        executor_id: str,
        action: Action,
        session_id: Optional[str] = None,
        rationale: Optional[str] = None,
        status: ActionStatus = ActionStatus.PENDING,
        scheduled_at: Optional[datetime] = None,
    ) -> BrowserAction:
        now = utcnow()
        row = BrowserAction(
            id=action_id,
            session_id=session_id,
            executor_id=executor_id,
            kind=action.kind.value,
            parameters=dict(action.parameters),
            rationale=rationale,
            status=status.value,
            scheduled_at=scheduled_at,
            started_at=now if status is ActionStatus.STARTED else None,
            retry_count=0,
            created_at=now,
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def get_action(self, action_id: str) -> Optional[BrowserAction]:
        return await self.db.get(BrowserAction, action_id, populate_existing=True)

    async def find_due_actions(self, now: datetime) -> List[BrowserAction]:
        """到期的 pending 操作（scheduled_at 为空视为立即执行）"""
        result = await self.db.execute(
            select(BrowserAction)
            .where(
                BrowserAction.status == ActionStatus.PENDING.value,
                (BrowserAction.scheduled_at.is_(None)) | (BrowserAction.scheduled_at <= now),
            )
            .order_by(BrowserAction.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def claim_action(self, action_id: str, now: datetime) -> bool:
        """pending → started（原子）"""
        result = await self.db.execute(
            update(BrowserAction)
            .where(BrowserAction.id == action_id, BrowserAction.status == ActionStatus.PENDING.value)
            .values(status=ActionStatus.STARTED.value, started_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_action_status(
        self,
        action_id: str,
        status: ActionStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> bool:
        values = {"status": status.value, "result": result, "error": error}
        if status in TERMINAL_ACTION_STATUSES:
            values["completed_at"] = utcnow()
        res = await self.db.execute(
            update(BrowserAction)
            .where(BrowserAction.id == action_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    async def find_stuck_started(self, cutoff: datetime) -> List[BrowserAction]:
        """started 且 started_at 早于 cutoff 的操作"""
        result = await self.db.execute(
            select(BrowserAction)
            .where(
                BrowserAction.status == ActionStatus.STARTED.value,
                BrowserAction.started_at < cutoff,
            )
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def reset_to_pending(self, action_id: str, now: datetime) -> bool:
        """started → pending，重试次数 +1"""
        result = await self.db.execute(
            update(BrowserAction)
            .where(BrowserAction.id == action_id, BrowserAction.status == ActionStatus.STARTED.value)
            .values(
                status=ActionStatus.PENDING.value,
                retry_count=BrowserAction.retry_count + 1,
                scheduled_at=now,
                started_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel_action(self, action_id: str) -> bool:
        """取消尚未开始的操作"""
        result = await self.db.execute(
            update(BrowserAction)
            .where(BrowserAction.id == action_id, BrowserAction.status == ActionStatus.PENDING.value)
            .values(status=ActionStatus.CANCELLED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel_session_actions(self, session_id: str) -> int:
        """取消会话下所有 pending 操作"""
        result = await self.db.execute(
            update(BrowserAction)
            .where(BrowserAction.session_id == session_id, BrowserAction.status == ActionStatus.PENDING.value)
            .values(status=ActionStatus.CANCELLED.value, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
