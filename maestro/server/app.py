"""
应用初始化 - 组装编排循环、执行端注册表、调度器与路由
"""
from typing import Optional

from aiohttp import web
from loguru import logger

from config import settings as default_settings
from maestro.database import close_async_db, get_async_db_context, init_async_db
from maestro.llm_gateway import get_llm_gateway
from maestro.services.scheduler import ActionScheduler
from maestro.services.scheduling import SchedulingParser
from maestro.transport.registry import ExecutorRegistry
from sequencer.engine import SequencingEngine
from sequencer.planner import PlannerAdapter
from . import handlers
from .keys import DB_CONTEXT_KEY, ENGINE_KEY, REGISTRY_KEY, SCHEDULER_KEY, SETTINGS_KEY
from .ws import executor_ws_handler


def create_app(
    settings=None,
    registry: Optional[ExecutorRegistry] = None,
    engine: Optional[SequencingEngine] = None,
    scheduler: Optional[ActionScheduler] = None,
    db_context=None,
    planner: Optional[PlannerAdapter] = None,
    start_background: bool = True,
) -> web.Application:
    """
    创建 aiohttp 应用

    Args:
        settings: 配置（默认全局配置）
        registry / engine / scheduler / db_context / planner: 可注入的依赖（测试使用）
        start_background: 启动时是否初始化数据库并启动调度器
    """
    settings = settings or default_settings
    registry = registry or ExecutorRegistry()
    db_context = db_context or get_async_db_context
    if engine is None:
        planner = planner or PlannerAdapter.from_settings(settings, get_llm_gateway())
        engine = SequencingEngine.from_settings(
            settings,
            planner,
            registry,
            db_context,
            normalizer=SchedulingParser(settings.schedule_utc_offset_minutes),
        )
    scheduler = scheduler or ActionScheduler.from_settings(settings, engine, registry, db_context)

    app = web.Application(middlewares=[handlers.error_middleware])
    app[SETTINGS_KEY] = settings
    app[REGISTRY_KEY] = registry
    app[ENGINE_KEY] = engine
    app[SCHEDULER_KEY] = scheduler
    app[DB_CONTEXT_KEY] = db_context

    # 注册路由
    app.router.add_get("/", handlers.health_handler)
    app.router.add_get("/health", handlers.health_handler)
    app.router.add_get("/api/extension/connections", handlers.connections_handler)
    app.router.add_get("/extension/ws", executor_ws_handler)

    app.router.add_post("/api/ai/start", handlers.start_handler)
    app.router.add_post("/api/ai/continue", handlers.continue_handler)
    app.router.add_get("/api/ai/session/{session_id}", handlers.session_handler)
    app.router.add_post("/api/ai/session/{session_id}/cancel", handlers.cancel_handler)
    app.router.add_post("/api/ai/session/{session_id}/retry", handlers.retry_handler)

    app.router.add_post("/api/actions", handlers.create_action_handler)
    app.router.add_get("/api/actions/{action_id}", handlers.get_action_handler)
    app.router.add_delete("/api/actions/{action_id}", handlers.delete_action_handler)

    if start_background:
        app.on_startup.append(startup_background)
        app.on_cleanup.append(cleanup_background)
    app.on_shutdown.append(shutdown_connections)
    return app


async def startup_background(app: web.Application) -> None:
    """初始化数据库并启动调度器"""
    await init_async_db()
    await app[SCHEDULER_KEY].start()


async def shutdown_connections(app: web.Application) -> None:
    """关闭执行端连接与后台任务"""
    await app[REGISTRY_KEY].close_all()
    await app[ENGINE_KEY].shutdown()


async def cleanup_background(app: web.Application) -> None:
    """应用关闭时清理资源"""
    await app[SCHEDULER_KEY].stop()
    await close_async_db()
    logger.info("👋 [Server] background services stopped")
