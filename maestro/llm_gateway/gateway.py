"""
LLM Gateway - 规划器的模型调用入口

- 按名称路由到已注册的Provider
- 只尝试一次，失败由规划器转换为 PlannerUnavailable（不重试）
- 失败不抛异常，返回 success=False 的 LLMResponse
"""
import time
import uuid
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from loguru import logger

from .providers import (
    AnthropicProvider,
    Completion,
    LLMProvider,
    OpenAIProvider,
    ProviderConfig,
    VLLMProvider,
)


@dataclass
class LLMRequest:
    """
    LLM请求对象

    Attributes:
        messages: 对话消息列表
        model: 模型名称（可选，使用Provider默认）
        provider: Provider名称（可选，使用网关默认）
        max_tokens: 最大输出token数
        temperature: 温度参数
        json_mode: 要求只输出 JSON 对象
        request_id: 请求ID（用于追踪）
        metadata: 额外元数据（如 session_id）
    """
    messages: List[Dict[str, str]]
    model: Optional[str] = None
    provider: Optional[str] = None
    max_tokens: int = 1000
    temperature: float = 0.2
    json_mode: bool = False
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LLMResponse:
    """LLM响应对象；success=False 时 error 说明原因"""
    content: str
    model: str
    provider: str
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"
    request_id: str = ""
    latency_ms: float = 0.0
    success: bool = True
    error: Optional[str] = None

    @classmethod
    def from_completion(cls, request: LLMRequest, provider: str, completion: Completion, latency_ms: float):
        return cls(
            content=completion.content,
            model=completion.model,
            provider=provider,
            usage={
                "prompt_tokens": completion.prompt_tokens,
                "completion_tokens": completion.completion_tokens,
                "total_tokens": completion.total_tokens,
            },
            finish_reason=completion.finish_reason,
            request_id=request.request_id,
            latency_ms=latency_ms,
        )

    @classmethod
    def failure(cls, request: LLMRequest, provider: str, error: str, latency_ms: float = 0.0):
        return cls(
            content="",
            model=request.model or "",
            provider=provider,
            request_id=request.request_id,
            latency_ms=latency_ms,
            success=False,
            error=error,
        )


class LLMGateway:
    """
    LLM调用网关

    Usage:
        gateway = LLMGateway(default_provider="openai")
        gateway.register_provider("openai", OpenAIProvider(config))

        response = await gateway.generate(LLMRequest(messages=[...], json_mode=True))
        if not response.success:
            ...
    """

    def __init__(self, default_provider: str = "openai"):
        self.default_provider = default_provider
        self._providers: Dict[str, LLMProvider] = {}

    def register_provider(self, name: str, provider: LLMProvider) -> None:
        """注册LLM Provider"""
        self._providers[name] = provider
        logger.info(f"🔌 [LLM] registered provider: {name}")

    def get_provider(self, name: Optional[str] = None) -> LLMProvider:
        """
        Raises:
            ValueError: Provider未注册
        """
        provider_name = name or self.default_provider
        if provider_name not in self._providers:
            raise ValueError(f"Provider not found: {provider_name}")
        return self._providers[provider_name]

    def list_providers(self) -> List[str]:
        return list(self._providers.keys())

    async def generate(self, request: LLMRequest) -> LLMResponse:
        """发送请求（只尝试一次）；所有失败都以 success=False 返回"""
        name = request.provider or self.default_provider
        try:
            provider = self.get_provider(name)
        except ValueError as e:
            return LLMResponse.failure(request, name, str(e))

        start_time = time.perf_counter()
        try:
            completion = await provider.generate(
                request.messages,
                model=request.model,
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                json_mode=request.json_mode,
            )
        except Exception as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.warning(f"⚠️ [LLM] {name} request failed (request_id={request.request_id}): {e}")
            return LLMResponse.failure(request, name, f"{type(e).__name__}: {e}", latency_ms)

        latency_ms = (time.perf_counter() - start_time) * 1000
        return LLMResponse.from_completion(request, name, completion, latency_ms)


def _provider_candidates(settings) -> List[tuple]:
    """按优先级 vllm > openai > anthropic 列出已配置的Provider"""
    candidates = []
    if settings.vllm_api_url:
        candidates.append(("vllm", VLLMProvider, ProviderConfig(
            api_url=settings.vllm_api_url,
            api_key=settings.vllm_api_token,
            model=settings.vllm_model,
        )))
    if settings.openai_api_key:
        candidates.append(("openai", OpenAIProvider, ProviderConfig(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
        )))
    if settings.anthropic_api_key:
        candidates.append(("anthropic", AnthropicProvider, ProviderConfig(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
        )))
    return candidates


def build_llm_gateway(settings) -> LLMGateway:
    """根据配置注册可用的Provider；planner_provider 显式指定时优先"""
    gateway = LLMGateway()
    for name, provider_cls, config in _provider_candidates(settings):
        config.timeout = settings.planner_timeout
        config.max_tokens = settings.planner_max_tokens
        config.temperature = settings.planner_temperature
        try:
            gateway.register_provider(name, provider_cls(config))
        except ValueError as e:
            logger.warning(f"⚠️ [LLM] failed to register {name}: {e}")

    providers = gateway.list_providers()
    if settings.planner_provider:
        gateway.default_provider = settings.planner_provider
    elif providers:
        gateway.default_provider = providers[0]
    else:
        logger.warning("⚠️ [LLM] no planner provider configured, planning will fail with PlannerUnavailable")
    return gateway


_gateway_instance: Optional[LLMGateway] = None


def get_llm_gateway() -> LLMGateway:
    """获取全局LLM Gateway实例"""
    global _gateway_instance
    if _gateway_instance is None:
        from config import settings
        _gateway_instance = build_llm_gateway(settings)
    return _gateway_instance
