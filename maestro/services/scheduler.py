"""
Action Scheduler - 会话与操作调度器

负责定期：
1. 释放到期的延迟会话，交给编排循环从 Observe 开始执行
   以及重试 Observe / Plan 失败后停滞的会话
2. 派发到期的 pending 操作（会话步骤重新规划，独立操作直接下发）
3. 将 started 超过 5 分钟的操作重置为 pending（仅重试一次）

使用方法：
1. 在服务启动时调用 scheduler.start()
2. 调度器每 30 秒执行一次 tick()
3. 在服务关闭时调用 scheduler.stop()
"""
import asyncio
from datetime import datetime, timedelta
from typing import List, Optional

from loguru import logger

from maestro.services.session_store import SessionStore
from sequencer.engine import SequencingEngine, outcome_from_report
from sequencer.errors import ActionValidationError, ExecutorTimeout, ExecutorUnavailable
from sequencer.models import Action, ActionKind, ActionStatus, Outcome, utcnow
from sequencer.validation import validate_action

STUCK_STEP_ERROR = ExecutorUnavailable("step stuck in started state").as_outcome_error()


class ActionScheduler:
    """
    调度器 - 管理延迟会话与定时操作
    """

    def __init__(
        self,
        engine: SequencingEngine,
        registry,
        db_context,
        check_interval: int = 30,
        stuck_timeout: int = 300,
        max_stuck_retries: int = 1,
        action_timeout: float = 60.0,
        session_retry_delay: int = 60,
        max_session_retries: int = 3,
    ):
        """
        初始化调度器

        Args:
            engine: 编排循环
            registry: 执行端注册表
            db_context: 数据库上下文工厂
            check_interval: 检查间隔（秒），默认30秒
            stuck_timeout: started 状态超时（秒），默认5分钟
            max_stuck_retries: 卡死操作最多重置次数
            action_timeout: 独立操作等待结果的超时（秒）
            session_retry_delay: 停滞会话自动重试前的等待（秒）
            max_session_retries: 每个会话的自动重试次数上限
        """
        self.engine = engine
        self.registry = registry
        self.db_context = db_context
        self.check_interval = check_interval
        self.stuck_timeout = stuck_timeout
        self.max_stuck_retries = max_stuck_retries
        self.action_timeout = action_timeout
        self.session_retry_delay = session_retry_delay
        self.max_session_retries = max_session_retries
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, engine, registry, db_context) -> "ActionScheduler":
        return cls(
            engine=engine,
            registry=registry,
            db_context=db_context,
            check_interval=settings.scheduler_interval,
            stuck_timeout=settings.stuck_step_timeout,
            max_stuck_retries=settings.stuck_step_max_retries,
            action_timeout=settings.action_timeout,
            session_retry_delay=settings.session_retry_delay,
            max_session_retries=settings.session_max_retries,
        )

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """启动调度器"""
        if self._running:
            logger.warning("Action scheduler is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"⏰ [Scheduler] started (interval={self.check_interval}s)")

    async def stop(self) -> None:
        """停止调度器"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("⏰ [Scheduler] stopped")

    async def _run_loop(self) -> None:
        """调度器主循环"""
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"❌ [Scheduler] tick failed: {e}")
                logger.exception(e)

            await asyncio.sleep(self.check_interval)

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        执行一次调度

        卡死恢复放在最后，被重置的操作在下一次 tick 才会被重新派发

        Returns:
            List[asyncio.Task]: 本次启动的后台任务
        """
        now = now or utcnow()
        tasks: List[asyncio.Task] = []
        tasks.extend(await self.release_due_sessions(now))
        tasks.extend(await self.retry_stalled_sessions(now))
        tasks.extend(await self.dispatch_due_actions(now))
        tasks.extend(await self.recover_stuck_steps(now))
        return tasks

    async def release_due_sessions(self, now: datetime) -> List[asyncio.Task]:
        """领取到期会话并启动编排循环"""
        tasks = []
        async with self.db_context() as db:
            store = SessionStore(db)
            due_ids = await store.find_due_sessions(now)
            claimed = [session_id for session_id in due_ids if await store.claim_due_session(session_id, now)]

        if due_ids:
            logger.info(f"📅 [Scheduler] {len(due_ids)} due sessions, {len(claimed)} claimed")
        for session_id in claimed:
            tasks.append(self.engine.start_in_background(session_id))
        return tasks

    async def retry_stalled_sessions(self, now: datetime) -> List[asyncio.Task]:
        """
        重试 Observe / Plan 失败后停滞的会话

        执行端未连接时跳过，不消耗重试次数
        """
        cutoff = now - timedelta(seconds=self.session_retry_delay)
        tasks = []
        async with self.db_context() as db:
            store = SessionStore(db)
            stalled = await store.find_stalled_sessions(cutoff, self.max_session_retries)
            claimed = []
            for session_id, executor_id in stalled:
                if not self.registry.is_connected(executor_id):
                    continue
                if await store.claim_stalled_session(session_id, cutoff, self.max_session_retries, now):
                    claimed.append(session_id)

        if stalled:
            logger.info(f"🔁 [Scheduler] {len(stalled)} stalled sessions, {len(claimed)} retried")
        for session_id in claimed:
            tasks.append(self.engine.start_in_background(session_id))
        return tasks

    async def dispatch_due_actions(self, now: datetime) -> List[asyncio.Task]:
        """派发到期的 pending 操作"""
        tasks = []
        async with self.db_context() as db:
            store = SessionStore(db)
            due = await store.find_due_actions(now)
            claimed = []
            for row in due:
                if not await store.claim_action(row.id, now):
                    continue
                claimed.append((row.id, row.session_id, row.executor_id, row.kind, dict(row.parameters or {})))

        if due:
            logger.info(f"📅 [Scheduler] {len(due)} due actions, {len(claimed)} claimed")

        for action_id, session_id, executor_id, kind, parameters in claimed:
            if session_id is not None:
                tasks.append(self.engine.spawn(
                    self.engine.retry_interrupted_step(session_id, action_id),
                    f"retry of step {action_id}",
                ))
                continue

            action = Action(kind=ActionKind(kind), parameters=parameters)
            try:
                validate_action(action)
            except ActionValidationError as e:
                await self._finish(action_id, Outcome.failure(e.as_outcome_error()))
                continue

            if not self.registry.is_connected(executor_id):
                logger.warning(f"🔌 [Scheduler] executor {executor_id} not connected, action {action_id} failed")
                error = ExecutorUnavailable(f"executor {executor_id} is not connected")
                await self._finish(action_id, Outcome.failure(error.as_outcome_error()))
                continue

            tasks.append(self.engine.spawn(
                self._dispatch_standalone(action_id, executor_id, action),
                f"action {action_id}",
            ))
        return tasks

    async def _dispatch_standalone(self, action_id: str, executor_id: str, action: Action) -> None:
        """在执行端租约内下发独立操作"""
        async with self.registry.lease(executor_id):
            try:
                channel = self.registry.require(executor_id)
                reply = await channel.execute(action_id, action, self.action_timeout)
            except ExecutorTimeout as e:
                # 保持 started，结果可能稍后推送，否则由卡死恢复处理
                logger.warning(f"⏳ [Scheduler] action {action_id} timed out: {e}")
                return
            except ExecutorUnavailable as e:
                await self._finish(action_id, Outcome.failure(e.as_outcome_error()))
                return

        outcome = outcome_from_report(reply)
        await self._finish(action_id, outcome)
        logger.info(
            f"✅ [Scheduler] action {action_id} ({action.kind.value}) "
            f"{'failed: ' + outcome.error if outcome.is_error else 'completed'}"
        )

    async def recover_stuck_steps(self, now: datetime) -> List[asyncio.Task]:
        """
        将 started 超时的操作重置为 pending（仅一次），再次超时则标记失败
        """
        cutoff = now - timedelta(seconds=self.stuck_timeout)
        tasks = []
        async with self.db_context() as db:
            store = SessionStore(db)
            stuck = await store.find_stuck_started(cutoff)
            exhausted = []
            for row in stuck:
                if row.retry_count < self.max_stuck_retries:
                    if await store.reset_to_pending(row.id, now):
                        logger.warning(f"🔁 [Scheduler] action {row.id} stuck since {row.started_at}, reset to pending")
                else:
                    exhausted.append((row.id, row.session_id))

        for action_id, session_id in exhausted:
            logger.error(f"❌ [Scheduler] action {action_id} stuck after retry, marking failed")
            outcome = Outcome.failure(STUCK_STEP_ERROR)
            await self._finish(action_id, outcome)
            if session_id is not None:
                tasks.append(self.engine.spawn(
                    self.engine.record_outcome(session_id, outcome, step_id=action_id),
                    f"stuck step {action_id}",
                ))
        return tasks

    async def _finish(self, action_id: str, outcome: Outcome) -> None:
        async with self.db_context() as db:
            await SessionStore(db).update_action_status(
                action_id,
                ActionStatus.FAILED if outcome.is_error else ActionStatus.COMPLETED,
                result=outcome.result,
                error=outcome.error,
            )
