"""
编排循环 - Observe → Plan → Decide → Guard → Act → Record → Advance

核心编排器，串联 执行端快照 → 规划器 → 校验 → 执行端下发 → 历史记录。

并发约束：
- 同一会话的步骤严格串行（会话锁）
- 一次运行期间独占执行端（registry.lease）
- Plan 与 Act 之前都会重新检查会话是否已被取消
"""
import asyncio
import uuid
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Coroutine, Dict, Optional, Set

from loguru import logger

from maestro.services.session_store import SessionStore
from .errors import (
    ActionValidationError,
    ExecutorTimeout,
    ExecutorUnavailable,
    InvalidState,
    PlannerContractViolation,
    PlannerUnavailable,
    SequencerError,
    StepLimitExceeded,
)
from .models import (
    Action,
    ActionStatus,
    HistoryEntry,
    Outcome,
    PageSnapshot,
    PlannerDecision,
    Session,
    SessionStatus,
    utcnow,
)
from .locks import KeyedLocks
from .planner import PlannerAdapter
from .session_machine import (
    GoalNormalizer,
    append_step,
    cancel,
    complete,
    create_session,
    ensure_active,
    fail,
    release,
    resolve_step,
)
from .validation import validate_action

DbContext = Callable[[], AbstractAsyncContextManager]

INTERRUPTED_STEP_ERROR = ExecutorUnavailable("step interrupted before an outcome was reported").as_outcome_error()
REPEATED_ACTION_ERROR = ActionValidationError("repeated action").as_outcome_error()


def outcome_from_report(report: Dict[str, Any]) -> Outcome:
    """
    将执行端上报（step_result 消息或 /continue 请求体）转换为 Outcome

    兼容 {status: "error"}、{success: false} 与直接携带 error 的格式
    """
    error = report.get("error")
    status = str(report.get("status") or "").lower()
    if error or status in ("error", "failed") or report.get("success") is False:
        return Outcome.failure(str(error or "Unknown error"))
    return Outcome.success(report.get("result"))


def is_repeated_action(
    previous: Optional[HistoryEntry],
    action: Optional[Action],
    snapshot: PageSnapshot,
) -> bool:
    """提议的操作是否与紧邻的上一个成功步骤相同，且页面 URL 未变"""
    if previous is None or action is None or previous.snapshot_summary is None:
        return False
    if action.target is None:
        return False
    return (
        previous.action.kind is action.kind
        and previous.action.target == action.target
        and previous.snapshot_summary.url == snapshot.url
    )


class SequencingEngine:
    """
    编排循环

    使用方式：
        engine = SequencingEngine(planner, registry, get_async_db_context)
        session = await engine.begin("Search for laptops on example.com", "ext-1")
    """

    def __init__(
        self,
        planner: PlannerAdapter,
        registry,
        db_context: DbContext,
        normalizer: Optional[GoalNormalizer] = None,
        max_steps: int = 50,
        max_repeat_replans: int = 2,
        snapshot_timeout: float = 10.0,
        action_timeout: float = 60.0,
        post_action_snapshot_attempts: int = 3,
        post_action_snapshot_delay: float = 0.5,
    ):
        self.planner = planner
        self.registry = registry
        self.db_context = db_context
        self.normalizer = normalizer
        self.max_steps = max_steps
        self.max_repeat_replans = max_repeat_replans
        self.snapshot_timeout = snapshot_timeout
        self.action_timeout = action_timeout
        self.post_action_snapshot_attempts = max(1, post_action_snapshot_attempts)
        self.post_action_snapshot_delay = post_action_snapshot_delay

        self._session_locks = KeyedLocks()
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings, planner, registry, db_context, normalizer=None) -> "SequencingEngine":
        return cls(
            planner=planner,
            registry=registry,
            db_context=db_context,
            normalizer=normalizer,
            max_steps=settings.max_steps_per_session,
            max_repeat_replans=settings.max_repeat_replans,
            snapshot_timeout=settings.snapshot_timeout,
            action_timeout=settings.action_timeout,
            post_action_snapshot_attempts=settings.post_action_snapshot_attempts,
            post_action_snapshot_delay=settings.post_action_snapshot_delay,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def begin(
        self,
        goal: str,
        executor_id: str,
        due_at=None,
        user_id: str = "anonymous",
        auto_start: bool = True,
    ) -> Session:
        """
        创建会话；未延迟的会话立即在后台开始执行

        Args:
            goal: 自然语言目标（可包含"10分钟后"之类的调度短语）
            executor_id: 执行端ID
            due_at: 显式执行时间
            user_id: 用户ID
            auto_start: 是否立即在后台运行

        Returns:
            Session: 新会话
        """
        session = create_session(goal, executor_id, due_at=due_at, user_id=user_id, normalizer=self.normalizer)
        deferred = session.is_deferred()
        if session.due_at is not None and not deferred:
            # 过去的时间不再交给调度器
            release(session)

        async with self.db_context() as db:
            await SessionStore(db).create_session(session)

        if deferred:
            logger.info(f"⏰ [Sequencer] session {session.id} deferred until {session.due_at.isoformat()}")
        else:
            logger.info(f"🚀 [Sequencer] session {session.id} created for executor {executor_id}: {session.goal}")
            if auto_start:
                self.start_in_background(session.id)
        return session

    async def get(self, session_id: str) -> Session:
        async with self.db_context() as db:
            return await SessionStore(db).get_session(session_id)

    async def cancel(self, session_id: str) -> Session:
        """
        请求取消（不等待会话锁，运行中的循环会在 Plan / Act 之前发现）

        Raises:
            SessionNotFound / InvalidState
        """
        async with self.db_context() as db:
            store = SessionStore(db)
            session = await store.get_session(session_id)
            cancel(session)
            if not await store.update_status(session_id, SessionStatus.CANCELLED):
                current = await store.get_status(session_id)
                if current is not SessionStatus.CANCELLED:
                    raise InvalidState(f"session {session_id} is already {current.value}")
                session.status = current
            await store.cancel_session_actions(session_id)
        logger.info(f"🛑 [Sequencer] session {session_id} cancelled")
        return session

    async def run(self, session_id: str, snapshot: Optional[PageSnapshot] = None) -> Session:
        """
        执行一轮循环，直到完成、终止或无法继续

        Args:
            session_id: 会话ID
            snapshot: 已有的页面快照（为空时先向执行端请求）

        Raises:
            InvalidState: 会话不是 active
            ExecutorUnavailable: Observe 阶段失败
            PlannerUnavailable / PlannerContractViolation: Plan 阶段失败
        """
        async with self._session_locks.hold(session_id):
            session = await self.get(session_id)
            ensure_active(session)
            pending = session.pending_step()
            if pending is not None:
                logger.info(
                    f"⏳ [Sequencer] session {session_id} step {pending.step_id} still awaits its outcome"
                )
                return session

            if session.last_error:
                # 新一轮尝试前清除上一轮的错误
                session.last_error = None
                async with self.db_context() as db:
                    await SessionStore(db).set_last_error(session_id, None)

            async with self.registry.lease(session.executor_id):
                await self._loop(session, snapshot)
        return await self.get(session_id)

    async def retry(self, session_id: str, wait: bool = False) -> Session:
        """
        手动重试停滞的会话（Observe / Plan 失败后仍为 active）

        Raises:
            InvalidState: 会话不是 active，或仍有待定步骤（应通过 /continue 上报结果）
        """
        session = await self.get(session_id)
        ensure_active(session)
        pending = session.pending_step()
        if pending is not None:
            raise InvalidState(
                f"session {session_id} step {pending.step_id} still awaits its outcome; report it instead"
            )
        logger.info(f"🔁 [Sequencer] retrying session {session_id} (last error: {session.last_error})")
        if wait:
            return await self.run(session_id)
        self.start_in_background(session_id)
        return session

    async def record_outcome(
        self,
        session_id: str,
        outcome: Outcome,
        snapshot: Optional[PageSnapshot] = None,
        step_id: Optional[str] = None,
    ) -> Session:
        """
        写入执行端迟到 / 推送的结果（已终止的会话也会记录，但不再继续）

        Raises:
            InvalidState: 没有待定步骤或该步骤已有结果
        """
        async with self._session_locks.hold(session_id):
            session = await self.get(session_id)
            entry = session.find_step(step_id) if step_id else session.pending_step()
            if entry is None:
                raise InvalidState(f"session {session_id} has no pending step {step_id or ''}".rstrip())
            summary = snapshot.summary() if snapshot else None
            resolve_step(session, entry.step_id, outcome, summary)
            await self._persist_resolution(session.id, entry.step_id, outcome, summary)
            logger.info(
                f"📥 [Sequencer] session {session_id} step {entry.step_id} resolved "
                f"({'error' if outcome.is_error else 'ok'})"
            )
        return session

    async def resume(
        self,
        session_id: str,
        outcome: Outcome,
        snapshot: Optional[PageSnapshot] = None,
        step_id: Optional[str] = None,
    ) -> Session:
        """写入结果并用推送的快照重新进入循环"""
        session = await self.record_outcome(session_id, outcome, snapshot, step_id)
        if not session.is_active:
            return session
        return await self.run(session_id, snapshot)

    async def handle_step_result(self, executor_id: str, message: Dict[str, Any]) -> None:
        """处理没有在途请求可关联的 step_result（迟到的推送）"""
        step_id = message.get("stepId")
        if not step_id:
            logger.warning(f"⚠️ [Sequencer] step_result from {executor_id} without stepId")
            return

        async with self.db_context() as db:
            row = await SessionStore(db).get_action(step_id)
            session_id = row.session_id if row else None
        if row is None:
            logger.warning(f"⚠️ [Sequencer] step_result for unknown step {step_id} from {executor_id}")
            return

        outcome = outcome_from_report(message)
        if session_id is None:
            await self._finish_action(step_id, outcome)
            return

        snapshot = PageSnapshot.from_payload(message.get("snapshot"))
        try:
            session = await self.record_outcome(session_id, outcome, snapshot, step_id)
        except InvalidState as e:
            logger.info(f"ℹ️ [Sequencer] late step_result ignored: {e}")
            return
        if session.is_active:
            self.start_in_background(session_id, snapshot)

    async def retry_interrupted_step(self, session_id: str, action_id: str) -> Optional[Session]:
        """
        恢复卡死的会话步骤：将待定步骤标记为中断，然后用新快照重新规划
        """
        outcome = Outcome.failure(INTERRUPTED_STEP_ERROR)
        try:
            session = await self.record_outcome(session_id, outcome, step_id=action_id)
        except InvalidState:
            # 结果已在别处写入，只需关闭操作记录
            await self._finish_action(action_id, outcome)
            session = await self.get(session_id)
        if not session.is_active:
            logger.info(f"ℹ️ [Sequencer] session {session_id} is {session.status.value}, not re-planning")
            return session
        logger.info(f"🔁 [Sequencer] re-planning session {session_id} after interrupted step {action_id}")
        return await self.run(session_id)

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def spawn(self, coro: Coroutine, label: str) -> asyncio.Task:
        """在后台运行并跟踪任务；SequencerError 只记录日志"""
        task = asyncio.create_task(self._guarded(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_in_background(self, session_id: str, snapshot: Optional[PageSnapshot] = None) -> asyncio.Task:
        return self.spawn(self.run(session_id, snapshot), f"session {session_id}")

    async def _guarded(self, coro: Coroutine, label: str):
        try:
            return await coro
        except InvalidState as e:
            logger.info(f"ℹ️ [Sequencer] {label}: {e}")
        except SequencerError as e:
            logger.error(f"❌ [Sequencer] {label} stopped: {e.as_outcome_error()}")
        except Exception:
            logger.exception(f"❌ [Sequencer] {label} crashed")
        return None

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self, session: Session, snapshot: Optional[PageSnapshot]) -> None:
        while True:
            # 0. 步数上限
            if len(session.history) >= self.max_steps:
                await self._fail_step_limit(session)
                return

            # 1. Observe
            if snapshot is None:
                snapshot = await self._observe(session)

            if not await self._still_active(session):
                return

            # 2. Plan（含重复操作保护）
            decision = await self._plan(session, snapshot)
            if decision is None:
                return

            # 3. Decide
            if decision.is_complete:
                await self._complete(session)
                return

            if not await self._still_active(session):
                return

            # 4. Validate
            action = decision.action
            try:
                validate_action(action)
            except ActionValidationError as e:
                logger.warning(f"⚠️ [Sequencer] session {session.id} rejected action: {e}")
                await self._append_resolved(session, action, decision.rationale, Outcome.failure(e.as_outcome_error()))
                return

            # 5-6. Act + Record
            snapshot = await self._act(session, action, decision.rationale)
            if snapshot is None:
                return

    async def _observe(self, session: Session) -> PageSnapshot:
        try:
            channel = self.registry.require(session.executor_id)
            snapshot = await channel.request_snapshot(self.snapshot_timeout)
        except ExecutorUnavailable as e:
            await self._record_last_error(session, e)
            raise
        logger.debug(
            f"📸 [Sequencer] session {session.id} observed {snapshot.url} "
            f"({len(snapshot.interactive_elements)} elements)"
        )
        return snapshot

    async def _plan(self, session: Session, snapshot: PageSnapshot) -> Optional[PlannerDecision]:
        previous = session.last_successful_step()
        guidance = None
        decision = None
        for replan in range(self.max_repeat_replans + 1):
            try:
                decision = await self.planner.generate(session.goal, snapshot, session.history, guidance)
            except (PlannerUnavailable, PlannerContractViolation) as e:
                await self._record_last_error(session, e)
                raise

            if decision.is_complete or not is_repeated_action(previous, decision.action, snapshot):
                return decision

            action = decision.action
            logger.warning(
                f"🔁 [Sequencer] session {session.id} planner repeated {action.kind.value} {action.target} "
                f"on unchanged page (replan {replan + 1}/{self.max_repeat_replans})"
            )
            guidance = (
                f"The proposed action ({action.kind.value} {action.target}) repeats the previous successful "
                f"step while the page is unchanged ({snapshot.url}). Choose a different action or set "
                f"isComplete to true if the goal is achieved."
            )

        await self._append_resolved(
            session,
            decision.action,
            decision.rationale,
            Outcome.failure(REPEATED_ACTION_ERROR),
            snapshot,
        )
        return None

    async def _act(self, session: Session, action: Action, rationale: str) -> Optional[PageSnapshot]:
        step_id = str(uuid.uuid4())
        append_step(session, action, rationale, step_id=step_id)
        entry = session.history[-1]
        async with self.db_context() as db:
            store = SessionStore(db)
            await store.append_history(session.id, entry)
            await store.create_action(
                step_id,
                session.executor_id,
                action,
                session_id=session.id,
                rationale=rationale,
                status=ActionStatus.STARTED,
            )
        logger.info(
            f"⚙️ [Sequencer] session {session.id} step {len(session.history)}: "
            f"{action.kind.value} {action.target or ''}".rstrip()
        )

        try:
            channel = self.registry.require(session.executor_id)
            reply = await channel.execute(step_id, action, self.action_timeout)
        except ExecutorTimeout as e:
            # 结果可能稍后推送；保持待定，由迟到推送或卡死恢复接手
            logger.warning(f"⏳ [Sequencer] session {session.id} step {step_id} timed out: {e}")
            await self._record_last_error(session, e)
            return None
        except ExecutorUnavailable as e:
            logger.warning(f"🔌 [Sequencer] session {session.id} step {step_id} failed: {e}")
            outcome = Outcome.failure(e.as_outcome_error())
            resolve_step(session, step_id, outcome)
            await self._persist_resolution(session.id, step_id, outcome, None)
            return None

        outcome = outcome_from_report(reply)
        snapshot = PageSnapshot.from_payload(reply.get("snapshot"))
        if snapshot is None:
            snapshot = await self._post_action_snapshot(session)

        summary = snapshot.summary() if snapshot else None
        resolve_step(session, step_id, outcome, summary)
        await self._persist_resolution(session.id, step_id, outcome, summary)
        logger.debug(
            f"📝 [Sequencer] session {session.id} step {step_id} recorded "
            f"({'error: ' + outcome.error if outcome.is_error else 'ok'})"
        )

        if snapshot is None:
            await self._record_last_error(
                session, ExecutorUnavailable("post-action snapshot unavailable")
            )
        return snapshot

    async def _post_action_snapshot(self, session: Session) -> Optional[PageSnapshot]:
        """执行后主动拉取快照（指数退避重试）"""
        for attempt in range(1, self.post_action_snapshot_attempts + 1):
            try:
                channel = self.registry.require(session.executor_id)
                return await channel.request_snapshot(self.snapshot_timeout)
            except ExecutorUnavailable as e:
                logger.warning(
                    f"⚠️ [Sequencer] post-action snapshot attempt {attempt}/"
                    f"{self.post_action_snapshot_attempts} failed: {e}"
                )
            if attempt < self.post_action_snapshot_attempts:
                await asyncio.sleep(self.post_action_snapshot_delay * (2 ** (attempt - 1)))
        return None

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _still_active(self, session: Session) -> bool:
        async with self.db_context() as db:
            status = await SessionStore(db).get_status(session.id)
        if status is not SessionStatus.ACTIVE:
            session.status = status
            logger.info(f"🛑 [Sequencer] session {session.id} is {status.value}, stopping")
            return False
        return True

    async def _append_resolved(
        self,
        session: Session,
        action: Action,
        rationale: str,
        outcome: Outcome,
        snapshot: Optional[PageSnapshot] = None,
    ) -> None:
        append_step(
            session,
            action,
            rationale,
            outcome=outcome,
            snapshot_summary=snapshot.summary() if snapshot else None,
        )
        async with self.db_context() as db:
            await SessionStore(db).append_history(session.id, session.history[-1])

    async def _persist_resolution(self, session_id: str, step_id: str, outcome: Outcome, summary) -> None:
        async with self.db_context() as db:
            store = SessionStore(db)
            await store.resolve_history(session_id, step_id, outcome, summary)
            await store.update_action_status(
                step_id,
                ActionStatus.FAILED if outcome.is_error else ActionStatus.COMPLETED,
                result=outcome.result,
                error=outcome.error,
            )

    async def _finish_action(self, action_id: str, outcome: Outcome) -> None:
        async with self.db_context() as db:
            await SessionStore(db).update_action_status(
                action_id,
                ActionStatus.FAILED if outcome.is_error else ActionStatus.COMPLETED,
                result=outcome.result,
                error=outcome.error,
            )

    async def _record_last_error(self, session: Session, error: SequencerError) -> None:
        session.last_error = error.as_outcome_error()
        logger.error(f"❌ [Sequencer] session {session.id}: {session.last_error}")
        async with self.db_context() as db:
            await SessionStore(db).set_last_error(session.id, session.last_error)

    async def _transition(self, session: Session, target: SessionStatus, reason: Optional[str] = None) -> None:
        async with self.db_context() as db:
            store = SessionStore(db)
            if not await store.update_status(session.id, target, reason):
                current = await store.get_status(session.id)
                logger.info(
                    f"ℹ️ [Sequencer] session {session.id} is already {current.value}, "
                    f"skipping {target.value}"
                )
                session.status = current

    async def _complete(self, session: Session) -> None:
        complete(session)
        await self._transition(session, SessionStatus.COMPLETED)
        logger.info(f"🏁 [Sequencer] session {session.id} completed after {len(session.history)} steps")

    async def _fail_step_limit(self, session: Session) -> None:
        error = StepLimitExceeded(f"session reached {self.max_steps} steps")
        fail(session, error.code)
        session.last_error = error.as_outcome_error()
        await self._transition(session, SessionStatus.FAILED, error.code)
        async with self.db_context() as db:
            await SessionStore(db).set_last_error(session.id, session.last_error)
        logger.warning(f"🧱 [Sequencer] session {session.id} failed: {session.last_error}")
