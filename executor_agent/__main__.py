"""
执行端启动器

使用方法:
  python -m executor_agent --executor-id laptop-1
  python -m executor_agent --executor-id laptop-1 --url ws://planner:3001/extension/ws --headless
"""
import argparse
import asyncio
import sys
import uuid

from loguru import logger

from config import settings
from .browser import BrowserController
from .client import ExecutorAgent


async def run(executor_id: str, url: str, headless: bool) -> None:
    browser = BrowserController(headless=headless)
    started = await browser.start_browser()
    if not started["success"]:
        logger.error(f"❌ 浏览器启动失败: {started['error']}")
        return

    agent = ExecutorAgent.from_settings(settings, executor_id, browser)
    agent.backend_url = url
    try:
        await agent.run_forever()
    finally:
        agent.stop()
        await browser.close_browser()


def main() -> None:
    parser = argparse.ArgumentParser(description="Maestro Executor - 浏览器执行端")
    parser.add_argument("--executor-id", type=str, default=f"executor-{uuid.uuid4().hex[:8]}", help="执行端 ID")
    parser.add_argument("--url", type=str, default=settings.executor_backend_url, help="规划服务 WebSocket 地址")
    parser.add_argument("--headless", action="store_true", default=settings.executor_headless, help="无头模式")
    args = parser.parse_args()

    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <level>{message}</level>",
        level=settings.log_level,
    )

    try:
        asyncio.run(run(args.executor_id, args.url, args.headless))
    except KeyboardInterrupt:
        logger.info("👋 执行端已停止")


if __name__ == "__main__":
    main()
