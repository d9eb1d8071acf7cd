"""
Configuration settings for Maestro Planner
"""
from pydantic_settings import BaseSettings
from typing import Optional
from enum import Enum


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    # AI Provider Configuration
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-sonnet-20240620"
    vllm_api_url: Optional[str] = None
    vllm_api_token: Optional[str] = None
    vllm_model: str = "default"
    planner_provider: Optional[str] = None  # 为空时按 vllm > openai > anthropic 自动选择

    # Database Configuration
    database_url: str = "sqlite:///./maestro.db"

    # Application Configuration
    app_env: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: str = "INFO"
    sql_echo: bool = False  # Enable to show SQLAlchemy SQL statements in logs
    host: str = "0.0.0.0"
    port: int = 3001

    # Planner Configuration
    planner_max_attempts: int = 5  # 含首次调用在内的总尝试次数
    planner_retry_base_delay: float = 1.0  # 指数退避基数（秒）：1s, 2s, 4s...
    planner_context_budget: int = 20000  # 页面上下文字符预算
    planner_history_budget: int = 4000  # 历史步骤字符预算
    planner_temperature: float = 0.2
    planner_max_tokens: int = 1000
    planner_timeout: int = 60

    # Sequencing Loop
    max_steps_per_session: int = 50
    max_repeat_replans: int = 2
    snapshot_timeout: float = 10.0
    action_timeout: float = 60.0
    post_action_snapshot_attempts: int = 3
    post_action_snapshot_delay: float = 0.5

    # Scheduler
    scheduler_interval: int = 30
    stuck_step_timeout: int = 300  # started 超过 5 分钟视为卡死
    stuck_step_max_retries: int = 1
    session_retry_delay: int = 60  # Observe/Plan 失败后等待多久由调度器自动重试（秒）
    session_max_retries: int = 3  # 每个会话的自动重试次数上限
    schedule_utc_offset_minutes: int = 0  # "tomorrow at 9am" 等墙上时间所在时区相对 UTC 的偏移

    # Transport (WebSocket heartbeat)
    ping_interval: float = 30.0
    pong_timeout: float = 60.0

    # Executor Agent
    executor_backend_url: str = "ws://localhost:3001/extension/ws"
    executor_connect_timeout: float = 10.0
    executor_reconnect_initial_delay: float = 1.0
    executor_reconnect_max_delay: float = 30.0
    executor_headless: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
