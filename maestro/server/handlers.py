"""
HTTP 路由处理器

POST /api/ai/start                - 创建会话并开始执行
POST /api/ai/continue             - 上报步骤结果与页面快照，继续执行
GET  /api/ai/session/{id}         - 查询会话状态与历史
POST /api/ai/session/{id}/cancel  - 取消会话
POST /api/actions                 - 创建独立操作（可定时）
GET  /api/actions/{id}            - 查询独立操作
DELETE /api/actions/{id}          - 取消尚未开始的操作
GET  /health                      - 健康检查
GET  /api/extension/connections   - 已连接的执行端
"""
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from aiohttp import web
from loguru import logger

from maestro.services.session_store import SessionStore
from sequencer.engine import outcome_from_report
from sequencer.errors import (
    ActionValidationError,
    ExecutorUnavailable,
    InvalidState,
    PlannerContractViolation,
    PlannerUnavailable,
    SequencerError,
    SessionNotFound,
    StepLimitExceeded,
)
from sequencer.models import Action, ActionKind, PageSnapshot, to_naive_utc, utcnow
from sequencer.validation import validate_action
from .keys import DB_CONTEXT_KEY, ENGINE_KEY, REGISTRY_KEY, SCHEDULER_KEY

ERROR_STATUS = {
    SessionNotFound: 404,
    InvalidState: 409,
    ActionValidationError: 400,
    ExecutorUnavailable: 503,
    PlannerUnavailable: 502,
    PlannerContractViolation: 502,
    StepLimitExceeded: 409,
}


class BadRequest(Exception):
    """请求参数错误"""


def safe_json_response(data, status=200):
    return web.json_response(
        data,
        status=status,
        dumps=lambda x: json.dumps(x, ensure_ascii=False, default=str)
    )


def error_status(error: SequencerError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler):
    """将领域错误映射为 JSON 错误响应"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BadRequest as e:
        return safe_json_response({"success": False, "error": str(e)}, status=400)
    except SequencerError as e:
        status = error_status(e)
        logger.warning(f"⚠️ [API] {request.method} {request.path} -> {status} {e.as_outcome_error()}")
        return safe_json_response(
            {"success": False, "error": e.as_outcome_error(), "code": e.code},
            status=status,
        )
    except Exception as e:
        logger.exception(f"❌ [API] {request.method} {request.path} failed")
        return safe_json_response({"success": False, "error": str(e)}, status=500)


async def _read_json(request: web.Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def _parse_datetime(value: Any, field: str) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise BadRequest(f"'{field}' must be an ISO 8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise BadRequest(f"'{field}' must be an ISO 8601 string")
    return to_naive_utc(parsed)


def _snapshot_from_body(data: Dict[str, Any]) -> Optional[PageSnapshot]:
    """兼容 pageInfo / snapshot（结构化）与 pageHtml（旧版 HTML）"""
    payload = data.get("pageInfo") or data.get("snapshot")
    if payload is None and data.get("pageHtml") is not None:
        payload = {"html": data.get("pageHtml"), "url": data.get("url"), "title": data.get("title")}
    return PageSnapshot.from_payload(payload)


# ==================== 会话 ====================

async def start_handler(request: web.Request) -> web.Response:
    """创建会话"""
    data = await _read_json(request)
    goal = data.get("goal") or data.get("prompt")
    executor_id = data.get("executorId") or data.get("extensionId")
    if not isinstance(goal, str) or not goal.strip():
        raise BadRequest("Missing 'goal'")
    if not isinstance(executor_id, str) or not executor_id:
        raise BadRequest("Missing 'executorId'")
    due_at = _parse_datetime(data.get("dueAt") or data.get("scheduledAt"), "dueAt")
    wait = bool(data.get("wait"))

    engine = request.app[ENGINE_KEY]
    session = await engine.begin(
        goal,
        executor_id,
        due_at=due_at,
        user_id=data.get("userId") or "anonymous",
        auto_start=not wait,
    )
    if wait and not session.is_deferred():
        session = await engine.run(session.id)

    return safe_json_response({
        "success": True,
        "scheduled": session.is_deferred(),
        "session": session.to_dict(),
    }, status=201)


async def continue_handler(request: web.Request) -> web.Response:
    """上报步骤结果并继续执行"""
    data = await _read_json(request)
    session_id = data.get("sessionId")
    if not session_id:
        raise BadRequest("Missing 'sessionId'")

    report = data.get("taskResult") if isinstance(data.get("taskResult"), dict) else data
    outcome = outcome_from_report(report)
    snapshot = _snapshot_from_body(data)
    wait = bool(data.get("wait"))

    engine = request.app[ENGINE_KEY]
    session = await engine.record_outcome(session_id, outcome, snapshot, step_id=data.get("stepId"))
    if session.is_active:
        if wait:
            session = await engine.run(session_id, snapshot)
        else:
            engine.start_in_background(session_id, snapshot)

    return safe_json_response({"success": True, "session": session.to_dict()})


async def session_handler(request: web.Request) -> web.Response:
    """查询会话状态与历史"""
    session = await request.app[ENGINE_KEY].get(request.match_info["session_id"])
    return safe_json_response({"success": True, "session": session.to_dict()})


async def retry_handler(request: web.Request) -> web.Response:
    """重试停滞的会话（Observe / Plan 失败后仍为 active）"""
    data = await _read_json(request) if request.can_read_body else {}
    session = await request.app[ENGINE_KEY].retry(
        request.match_info["session_id"],
        wait=bool(data.get("wait")),
    )
    return safe_json_response({"success": True, "session": session.to_dict()})


async def cancel_handler(request: web.Request) -> web.Response:
    """取消会话"""
    session = await request.app[ENGINE_KEY].cancel(request.match_info["session_id"])
    return safe_json_response({"success": True, "session": session.to_dict()})


# ==================== 独立操作 ====================

async def create_action_handler(request: web.Request) -> web.Response:
    """创建独立操作"""
    data = await _read_json(request)
    executor_id = data.get("executorId") or data.get("extensionId")
    if not isinstance(executor_id, str) or not executor_id:
        raise BadRequest("Missing 'executorId'")

    kind = ActionKind.parse(data.get("kind") or data.get("type"))
    if kind is None:
        raise ActionValidationError(f"Unknown action kind: {data.get('kind') or data.get('type')!r}")
    action = validate_action(Action(kind=kind, parameters=data.get("parameters", data.get("params", {}))))
    scheduled_at = _parse_datetime(data.get("scheduledAt"), "scheduledAt")

    async with request.app[DB_CONTEXT_KEY]() as db:
        row = await SessionStore(db).create_action(
            str(uuid.uuid4()),
            executor_id,
            action,
            rationale=data.get("note"),
            scheduled_at=scheduled_at,
        )
        body = row.to_dict()

    logger.info(f"📝 [API] action {body['actionId']} ({kind.value}) created for {executor_id}")
    if scheduled_at is None or scheduled_at <= utcnow():
        await request.app[SCHEDULER_KEY].dispatch_due_actions(utcnow())

    return safe_json_response({"success": True, "action": body}, status=201)


async def get_action_handler(request: web.Request) -> web.Response:
    """查询独立操作"""
    action_id = request.match_info["action_id"]
    async with request.app[DB_CONTEXT_KEY]() as db:
        row = await SessionStore(db).get_action(action_id)
        if row is None:
            raise SessionNotFound(f"action {action_id} not found")
        body = row.to_dict()
    return safe_json_response({"success": True, "action": body})


async def delete_action_handler(request: web.Request) -> web.Response:
    """取消尚未开始的操作"""
    action_id = request.match_info["action_id"]
    async with request.app[DB_CONTEXT_KEY]() as db:
        store = SessionStore(db)
        row = await store.get_action(action_id)
        if row is None:
            raise SessionNotFound(f"action {action_id} not found")
        if not await store.cancel_action(action_id):
            raise InvalidState(f"action {action_id} is {row.status}, only pending actions can be cancelled")
        row = await store.get_action(action_id)
        body = row.to_dict()
    return safe_json_response({"success": True, "action": body})


# ==================== 状态 ====================

async def health_handler(request: web.Request) -> web.Response:
    """健康检查端点"""
    registry = request.app[REGISTRY_KEY]
    return safe_json_response({
        "status": "ok",
        "connectedExecutors": len(registry.connected_ids()),
        "schedulerRunning": request.app[SCHEDULER_KEY].running,
    })


async def connections_handler(request: web.Request) -> web.Response:
    """已连接的执行端"""
    registry = request.app[REGISTRY_KEY]
    return safe_json_response({"success": True, "connections": registry.describe()})
