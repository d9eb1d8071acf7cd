"""
操作参数校验 - 下发前按类型检查 parameters 结构
"""
from numbers import Number
from typing import Any, Dict

from .errors import ActionValidationError
from .models import Action, ActionKind

MAX_WAIT_MS = 120000


def _require_str(params: Dict[str, Any], key: str, kind: ActionKind) -> None:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ActionValidationError(f"{kind.value} requires a non-empty '{key}' string")


def _optional_type(params: Dict[str, Any], key: str, expected, kind: ActionKind) -> None:
    if key in params and params[key] is not None and not isinstance(params[key], expected):
        raise ActionValidationError(f"{kind.value} parameter '{key}' has invalid type")


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def validate_action(action: Action) -> Action:
    """
    校验操作参数

    Args:
        action: 待下发的操作

    Returns:
        Action: 校验通过的原操作

    Raises:
        ActionValidationError: 参数缺失或类型错误
    """
    kind = ActionKind.parse(action.kind)
    if kind is None:
        raise ActionValidationError(f"Unknown action kind: {action.kind!r}")

    params = action.parameters
    if not isinstance(params, dict):
        raise ActionValidationError("parameters must be an object")

    if kind is ActionKind.NAVIGATE:
        _require_str(params, "url", kind)

    elif kind is ActionKind.CLICK:
        _require_str(params, "selector", kind)
        _optional_type(params, "waitForSelector", str, kind)
        timeout = params.get("timeout")
        if timeout is not None and (not _is_number(timeout) or timeout < 0):
            raise ActionValidationError("click parameter 'timeout' must be a non-negative number")

    elif kind is ActionKind.FILL:
        _require_str(params, "selector", kind)
        value = params.get("value")
        if not isinstance(value, str) and not _is_number(value):
            raise ActionValidationError("fill requires a 'value' string")
        _optional_type(params, "clearFirst", bool, kind)

    elif kind is ActionKind.EXTRACT:
        _require_str(params, "selector", kind)
        _optional_type(params, "attribute", str, kind)
        _optional_type(params, "extractText", bool, kind)

    elif kind is ActionKind.WAIT:
        duration = params.get("duration")
        if not _is_number(duration) or not 0 <= duration <= MAX_WAIT_MS:
            raise ActionValidationError(f"wait requires a 'duration' between 0 and {MAX_WAIT_MS} ms")

    elif kind is ActionKind.CUSTOM:
        _require_str(params, "script", kind)
        tab_id = params.get("tabId")
        if tab_id is not None and (not isinstance(tab_id, int) or isinstance(tab_id, bool)):
            raise ActionValidationError("custom parameter 'tabId' must be an integer")

    return action
