"""
Database models for Maestro Planner
数据库模型 - 会话、执行步骤与浏览器操作

设计原则：
1. 每个字段都有中文备注说明
2. 状态字段使用 String 存储枚举值（避免数据库 Enum 类型问题）
3. 会话与操作通过显式 session_id 关联，不依赖时间戳匹配
"""
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
import uuid

from sequencer.models import ActionStatus, SessionStatus, utcnow


Base = declarative_base()


def generate_uuid() -> str:
    """生成UUID字符串，用于外部引用标识"""
    return str(uuid.uuid4())


class AutomationSession(Base):
    """
    自动化会话 - 一个自然语言目标及其生命周期
    """
    __tablename__ = "automation_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid, comment="会话UUID")
    goal = Column(Text, nullable=False, comment="目标文本（已剥离调度短语）")
    executor_id = Column(String(255), nullable=False, index=True, comment="绑定的执行端ID")
    user_id = Column(String(255), default="anonymous", comment="用户ID")

    status = Column(String(20), default=SessionStatus.ACTIVE.value, nullable=False, index=True,
                    comment="会话状态：active/completed/cancelled/failed")
    failure_reason = Column(String(100), nullable=True, comment="终止失败原因，如 StepLimitExceeded")
    last_error = Column(Text, nullable=True, comment="最近一次 Observe/Plan 阶段错误")
    last_error_at = Column(DateTime, nullable=True, comment="last_error 写入时间，用于自动重试")
    retry_count = Column(Integer, default=0, nullable=False, comment="调度器自动重试次数")

    due_at = Column(DateTime, nullable=True, index=True, comment="延迟执行时间（UTC）")
    released_at = Column(DateTime, nullable=True, comment="调度器释放时间，非空表示已被领取")

    created_at = Column(DateTime, default=utcnow, comment="创建时间")
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, comment="最后更新时间")

    steps = relationship(
        "SessionStep",
        back_populates="session",
        order_by="SessionStep.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_session_status_due", "status", "due_at"),
    )

    def __repr__(self):
        return f"<AutomationSession(id={self.id}, status={self.status}, executor={self.executor_id})>"


class SessionStep(Base):
    """
    执行步骤 - 每条历史记录一行，只追加
    """
    __tablename__ = "session_steps"

    id = Column(Integer, primary_key=True, index=True, comment="内部自增主键")
    session_id = Column(String(36), ForeignKey("automation_sessions.id"), nullable=False, index=True,
                        comment="所属会话")
    position = Column(Integer, nullable=False, comment="在历史中的位置（从 0 开始）")
    step_id = Column(String(36), unique=True, nullable=False, index=True, comment="步骤UUID")

    kind = Column(String(20), nullable=False, comment="操作类型")
    parameters = Column(JSON, default=dict, comment="操作参数")
    rationale = Column(Text, default="", comment="规划器给出的理由")

    has_outcome = Column(Boolean, default=False, nullable=False, comment="结果是否已写入")
    outcome_result = Column(JSON, nullable=True, comment="成功结果")
    outcome_error = Column(Text, nullable=True, comment="错误描述")

    snapshot_url = Column(Text, nullable=True, comment="执行后页面URL")
    snapshot_title = Column(Text, nullable=True, comment="执行后页面标题")
    snapshot_element_count = Column(Integer, nullable=True, comment="执行后交互元素数量")

    created_at = Column(DateTime, default=utcnow, comment="创建时间")
    resolved_at = Column(DateTime, nullable=True, comment="结果写入时间")

    session = relationship("AutomationSession", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("session_id", "position", name="uq_session_step_position"),
    )

    def __repr__(self):
        return f"<SessionStep(session={self.session_id}, position={self.position}, kind={self.kind})>"


class BrowserAction(Base):
    """
    浏览器操作记录 - 已下发的会话步骤或独立的定时操作

    session_id 为空表示独立操作
    """
    __tablename__ = "browser_actions"

    id = Column(String(36), primary_key=True, default=generate_uuid, comment="操作UUID（会话步骤时等于 step_id）")
    session_id = Column(String(36), ForeignKey("automation_sessions.id"), nullable=True, index=True,
                        comment="关联会话，独立操作为空")
    executor_id = Column(String(255), nullable=False, index=True, comment="执行端ID")

    kind = Column(String(20), nullable=False, comment="操作类型")
    parameters = Column(JSON, default=dict, comment="操作参数")
    rationale = Column(Text, nullable=True, comment="理由或备注")

    status = Column(String(20), default=ActionStatus.PENDING.value, nullable=False, index=True,
                    comment="状态：pending/started/completed/failed/cancelled")
    result = Column(JSON, nullable=True, comment="执行结果")
    error = Column(Text, nullable=True, comment="错误信息")

    scheduled_at = Column(DateTime, nullable=True, index=True, comment="计划执行时间（UTC）")
    started_at = Column(DateTime, nullable=True, comment="开始执行时间")
    completed_at = Column(DateTime, nullable=True, comment="完成时间")
    retry_count = Column(Integer, default=0, nullable=False, comment="卡死重置次数")

    created_at = Column(DateTime, default=utcnow, comment="创建时间")

    __table_args__ = (
        Index("idx_action_status_scheduled", "status", "scheduled_at"),
    )

    def to_dict(self) -> dict:
        return {
            "actionId": self.id,
            "sessionId": self.session_id,
            "executorId": self.executor_id,
            "kind": self.kind,
            "parameters": self.parameters or {},
            "rationale": self.rationale,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "scheduledAt": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "retryCount": self.retry_count,
        }

    def __repr__(self):
        return f"<BrowserAction(id={self.id}, kind={self.kind}, status={self.status})>"
