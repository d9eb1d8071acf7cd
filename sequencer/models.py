"""
Session / HistoryEntry / Action / PageSnapshot 数据模型

定义任务编排循环的核心数据结构，包括：
- ActionKind：浏览器操作类型枚举
- SessionStatus：会话状态枚举
- Action：单个浏览器操作
- Outcome：操作结果（result 或 error，二选一）
- SnapshotSummary：历史中保留的页面摘要
- HistoryEntry：一步执行记录
- Session：一个自然语言目标及其执行历史
- PageSnapshot：执行端上报的页面结构化快照
- PlannerDecision：规划器输出
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

MAX_HEADINGS = 10
MAX_INTERACTIVE_ELEMENTS = 200

BUTTON_OR_INPUT_TYPES = {
    "button", "submit", "reset", "input", "text", "email", "password", "search",
    "tel", "url", "number", "checkbox", "radio", "textarea", "select", "date",
}
BUTTON_OR_INPUT_TAGS = {"button", "input", "textarea", "select"}


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与数据库存储保持一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """将带时区的时间统一转换为 naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ActionKind(str, Enum):
    """浏览器操作类型"""
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    EXTRACT = "extract"
    WAIT = "wait"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> Optional["ActionKind"]:
        """宽松解析，未知类型返回 None"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class SessionStatus(str, Enum):
    """会话状态"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.ACTIVE


class ActionStatus(str, Enum):
    """已下发 / 待调度操作的状态"""
    PENDING = "pending"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Action:
    """
    单个浏览器操作

    Attributes:
        kind: 操作类型
        parameters: 与类型相关的参数（如 navigate 的 url）
    """
    kind: ActionKind
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> Optional[str]:
        """操作目标：selector 或 url，用于重复操作检测"""
        for key in ("selector", "url"):
            value = self.parameters.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "parameters": dict(self.parameters)}


@dataclass(frozen=True)
class Outcome:
    """
    操作结果：result 与 error 二选一

    Attributes:
        result: 执行端返回的任意 JSON 结果
        error: 错误描述
    """
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, result: Any = None) -> "Outcome":
        return cls(result=result)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(error=error or "Unknown error")

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        if self.is_error:
            return {"error": self.error}
        return {"result": self.result}


@dataclass(frozen=True)
class SnapshotSummary:
    """历史中保留的页面摘要（不保存完整快照）"""
    url: str = ""
    title: str = ""
    element_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"url": self.url, "title": self.title}
        if self.element_count is not None:
            data["elementCount"] = self.element_count
        return data


@dataclass
class HistoryEntry:
    """
    一步执行记录

    action / rationale 写入后不可变；outcome 为 None 表示结果待定，
    只能被 resolve 一次。
    """
    step_id: str
    action: Action
    rationale: str = ""
    outcome: Optional[Outcome] = None
    snapshot_summary: Optional[SnapshotSummary] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_pending(self) -> bool:
        return self.outcome is None

    @property
    def succeeded(self) -> bool:
        return self.outcome is not None and not self.outcome.is_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stepId": self.step_id,
            "action": self.action.to_dict(),
            "rationale": self.rationale,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "snapshotSummary": self.snapshot_summary.to_dict() if self.snapshot_summary else None,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """
    一个自然语言目标及其执行历史

    Attributes:
        id: 会话唯一ID
        goal: 目标文本（已剥离调度短语，不可变）
        executor_id: 绑定的执行端ID
        status: 会话状态
        history: 只追加的执行历史
        due_at: 延迟执行时间（存在时首步推迟到调度器释放）
        user_id: 用户ID
        failure_reason: 终止失败原因（如 StepLimitExceeded）
        last_error: 最近一次未能写入历史的错误（Observe / Plan 阶段）
    """
    id: str
    goal: str
    executor_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    history: List[HistoryEntry] = field(default_factory=list)
    due_at: Optional[datetime] = None
    user_id: str = "anonymous"
    failure_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    released_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE

    def is_deferred(self, now: Optional[datetime] = None) -> bool:
        """首步是否仍处于延迟状态"""
        if self.due_at is None or self.released_at is not None:
            return False
        return self.due_at > (now or utcnow())

    def find_step(self, step_id: str) -> Optional[HistoryEntry]:
        for entry in self.history:
            if entry.step_id == step_id:
                return entry
        return None

    def pending_step(self) -> Optional[HistoryEntry]:
        """最近一个结果待定的步骤"""
        for entry in reversed(self.history):
            if entry.is_pending:
                return entry
        return None

    def last_successful_step(self) -> Optional[HistoryEntry]:
        """紧邻的上一步（仅当其成功时返回）"""
        if self.history and self.history[-1].succeeded:
            return self.history[-1]
        return None

    def to_dict(self) -> Dict[str, Any]:
        latest = self.history[-1] if self.history else None
        return {
            "sessionId": self.id,
            "goal": self.goal,
            "executorId": self.executor_id,
            "userId": self.user_id,
            "status": self.status.value,
            "isComplete": self.status is SessionStatus.COMPLETED,
            "dueAt": self.due_at.isoformat() if self.due_at else None,
            "failureReason": self.failure_reason,
            "lastError": self.last_error,
            "history": [entry.to_dict() for entry in self.history],
            "latestStep": latest.to_dict() if latest else None,
        }


@dataclass(frozen=True)
class Heading:
    level: int
    text: str


@dataclass(frozen=True)
class InteractiveElement:
    """页面可交互元素"""
    selector: str
    type: str = "interactive"
    label: str = ""
    value: str = ""
    tag_name: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InteractiveElement":
        return cls(
            selector=str(data.get("selector") or ""),
            type=str(data.get("type") or "interactive"),
            label=str(data.get("label") or ""),
            value=str(data.get("value") or ""),
            tag_name=str(data.get("tagName") or data.get("tag_name") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selector": self.selector,
            "type": self.type,
            "label": self.label,
            "value": self.value,
            "tagName": self.tag_name,
        }


def is_button_or_input(element: InteractiveElement) -> bool:
    return (
        element.type.lower() in BUTTON_OR_INPUT_TYPES
        or element.tag_name.lower() in BUTTON_OR_INPUT_TAGS
    )


def rank_elements(elements: List[InteractiveElement]) -> List[InteractiveElement]:
    """按 (有标签, 是按钮/输入框) 降序排序，同级保持页面顺序"""
    indexed = list(enumerate(elements))
    indexed.sort(key=lambda pair: (not pair[1].label, not is_button_or_input(pair[1]), pair[0]))
    return [element for _, element in indexed]


def _int_or_zero(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


@dataclass
class PageSnapshot:
    """
    执行端上报的页面结构化快照

    Attributes:
        url: 当前页面URL
        title: 页面标题
        description: meta description
        headings: 最多 10 个标题
        interactive_elements: 最多 200 个可见交互元素（超出时保留优先级最高的）
        element_total: 截断前页面上的交互元素总数
        truncated: 是否发生过有损截断
        legacy_html: 旧版执行端只上报 HTML 时的兼容载荷
    """
    url: str = ""
    title: str = ""
    description: str = ""
    headings: List[Heading] = field(default_factory=list)
    interactive_elements: List[InteractiveElement] = field(default_factory=list)
    truncated: bool = False
    legacy_html: Optional[str] = None
    element_total: int = 0

    def __post_init__(self) -> None:
        if len(self.headings) > MAX_HEADINGS:
            self.headings = self.headings[:MAX_HEADINGS]
            self.truncated = True
        self.element_total = max(self.element_total, len(self.interactive_elements))
        if len(self.interactive_elements) > MAX_INTERACTIVE_ELEMENTS:
            self.interactive_elements = rank_elements(self.interactive_elements)[:MAX_INTERACTIVE_ELEMENTS]
            self.truncated = True

    @property
    def is_legacy(self) -> bool:
        return self.legacy_html is not None

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> Optional["PageSnapshot"]:
        """
        从执行端载荷构造快照

        兼容两种格式：
        - 结构化格式（含 interactiveElements）
        - 旧版 HTML 格式（{"html": "..."}），标记为 legacy-html
        """
        if not isinstance(data, dict):
            return None

        if "interactiveElements" not in data and "html" in data:
            return cls(
                url=str(data.get("url") or ""),
                title=str(data.get("title") or ""),
                legacy_html=str(data.get("html") or ""),
            )

        headings = []
        for item in data.get("headings") or []:
            if isinstance(item, dict) and item.get("text"):
                try:
                    level = int(item.get("level") or 1)
                except (TypeError, ValueError):
                    level = 1
                headings.append(Heading(level=level, text=str(item["text"])))

        elements = [
            InteractiveElement.from_dict(item)
            for item in data.get("interactiveElements") or []
            if isinstance(item, dict) and item.get("selector")
        ]

        return cls(
            url=str(data.get("url") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            headings=headings,
            interactive_elements=elements,
            truncated=bool(data.get("truncated", False)),
            element_total=_int_or_zero(data.get("totalElements")),
        )

    def summary(self) -> SnapshotSummary:
        return SnapshotSummary(
            url=self.url,
            title=self.title,
            element_count=None if self.is_legacy else len(self.interactive_elements),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.is_legacy:
            return {"url": self.url, "title": self.title, "html": self.legacy_html}
        return {
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "headings": [{"level": h.level, "text": h.text} for h in self.headings],
            "interactiveElements": [el.to_dict() for el in self.interactive_elements],
            "totalElements": self.element_total,
            "truncated": self.truncated,
        }


@dataclass
class PlannerDecision:
    """
    规划器输出

    Attributes:
        kind: 操作类型（is_complete 为 True 时可为空）
        parameters: 操作参数
        rationale: 规划器给出的理由（仅供参考，不解析）
        is_complete: 目标是否已达成
        raw: 原始响应文本
    """
    kind: Optional[ActionKind]
    parameters: Dict[str, Any] = field(default_factory=dict)
    rationale: str = ""
    is_complete: bool = False
    raw: str = ""

    @property
    def action(self) -> Optional[Action]:
        if self.kind is None:
            return None
        return Action(kind=self.kind, parameters=dict(self.parameters))
