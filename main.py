"""
Maestro Planner - 服务启动器
==========================================

启动规划服务：HTTP API + 执行端 WebSocket + 调度器。

使用方法:
  python main.py                    # 使用 .env / 环境变量中的配置启动
  python main.py --port 3001        # 指定端口
  python main.py --init-db          # 只创建数据库表
"""
import argparse
import asyncio
import sys

from aiohttp import web
from loguru import logger

from config import settings
from maestro.database import close_async_db, init_async_db
from maestro.server import create_app


def configure_logging(level: str) -> None:
    """配置日志"""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=level,
    )
    logger.add(
        "logs/maestro_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="INFO",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} - {message}"
    )


async def init_db_only() -> None:
    await init_async_db()
    await close_async_db()
    logger.info("✅ Database tables created")


def main() -> None:
    """主入口"""
    parser = argparse.ArgumentParser(description="Maestro Planner - 浏览器自动化规划服务")
    parser.add_argument("--host", type=str, default=settings.host, help="监听地址")
    parser.add_argument("--port", type=int, default=settings.port, help="监听端口")
    parser.add_argument("--init-db", action="store_true", help="只创建数据库表")
    args = parser.parse_args()

    configure_logging(settings.log_level)

    if args.init_db:
        asyncio.run(init_db_only())
        return

    app = create_app(settings)

    logger.info(f"🚀 Maestro Planner starting on http://{args.host}:{args.port}")
    logger.info(f"📖 API Documentation:")
    logger.info(f"   - POST /api/ai/start               - 创建会话")
    logger.info(f"   - POST /api/ai/continue            - 上报结果并继续")
    logger.info(f"   - GET  /api/ai/session/{{id}}        - 查询会话")
    logger.info(f"   - POST /api/ai/session/{{id}}/cancel - 取消会话")
    logger.info(f"   - POST /api/ai/session/{{id}}/retry  - 重试停滞的会话")
    logger.info(f"   - POST /api/actions                - 创建独立操作")
    logger.info(f"   - WS   /extension/ws?executorId=   - 执行端连接")
    logger.info(f"   - GET  /health                     - 健康检查")

    web.run_app(app, host=args.host, port=args.port, access_log=None)


if __name__ == "__main__":
    main()
