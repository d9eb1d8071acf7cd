"""
执行端 WebSocket 端点 - /extension/ws?executorId=...

连接建立后：
1. 注册通道（同一 executorId 的旧连接被关闭）
2. 发送 connected
3. 启动心跳（每 30 秒 ping，60 秒无 pong 则断开）
4. 将 page_snapshot / step_result 关联到在途请求；迟到的 step_result 交给编排循环
"""
import asyncio
import json
from typing import Any, Dict

import aiohttp
from aiohttp import web
from loguru import logger

from maestro.transport.channel import ExecutorChannel
from .handlers import safe_json_response
from .keys import ENGINE_KEY, REGISTRY_KEY, SETTINGS_KEY


async def _dispatch(channel: ExecutorChannel, engine, data: Dict[str, Any]) -> None:
    msg_type = data.get("type")

    if msg_type == "pong":
        channel.mark_pong()
    elif msg_type == "ping":
        channel.mark_pong()
        await channel.send({"type": "pong"})
    elif msg_type == "register":
        channel.mark_pong()
        logger.info(f"📝 [WS] executor {channel.executor_id} registered: {data.get('info') or {}}")
    elif msg_type in ("page_snapshot", "step_result"):
        if channel.handle_message(data):
            return
        if msg_type == "step_result":
            logger.info(f"📥 [WS] late step_result {data.get('stepId')} from {channel.executor_id}")
            engine.spawn(
                engine.handle_step_result(channel.executor_id, data),
                f"late result {data.get('stepId')}",
            )
        else:
            logger.debug(f"🔍 [WS] unmatched page_snapshot {data.get('requestId')} from {channel.executor_id}")
    else:
        logger.warning(f"⚠️ [WS] unknown message type from {channel.executor_id}: {msg_type}")


async def executor_ws_handler(request: web.Request) -> web.StreamResponse:
    """执行端 WebSocket 连接"""
    executor_id = request.query.get("executorId") or request.query.get("extensionId")
    if not executor_id:
        return safe_json_response({"success": False, "error": "Missing 'executorId'"}, status=400)

    settings = request.app[SETTINGS_KEY]
    registry = request.app[REGISTRY_KEY]
    engine = request.app[ENGINE_KEY]

    ws = web.WebSocketResponse()
    await ws.prepare(request)

    channel = ExecutorChannel(executor_id, ws, request_timeout=settings.snapshot_timeout)
    await registry.register(channel)
    await channel.send({"type": "connected", "executorId": executor_id})
    heartbeat = asyncio.create_task(channel.run_heartbeat(settings.ping_interval, settings.pong_timeout))

    try:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning(f"⚠️ [WS] invalid JSON from {executor_id}")
                    continue
                if isinstance(data, dict):
                    await _dispatch(channel, engine, data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"⚠️ [WS] connection error from {executor_id}: {ws.exception()}")
                break
    finally:
        heartbeat.cancel()
        registry.remove(executor_id, channel)
        await channel.close("disconnected")

    return ws
