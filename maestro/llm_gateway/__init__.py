"""
LLM Gateway - 规划器使用的大语言模型调用层

提供：
- 统一的LLM调用接口
- 多Provider支持（OpenAI, Anthropic, vLLM）
"""

from .gateway import LLMGateway, LLMRequest, LLMResponse, build_llm_gateway, get_llm_gateway
from .providers import (
    Completion,
    LLMProvider,
    OpenAIProvider,
    AnthropicProvider,
    VLLMProvider,
    ProviderConfig,
    ProviderUnavailableError,
)

__all__ = [
    'LLMGateway',
    'LLMRequest',
    'LLMResponse',
    'build_llm_gateway',
    'get_llm_gateway',
    'Completion',
    'LLMProvider',
    'OpenAIProvider',
    'AnthropicProvider',
    'VLLMProvider',
    'ProviderConfig',
    'ProviderUnavailableError',
]
