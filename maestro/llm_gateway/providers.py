"""
LLM Providers - 规划器可用的大模型服务实现

支持的Provider:
- OpenAI (GPT-4o 系列)
- Anthropic (Claude)
- vLLM / 任意 OpenAI 兼容接口 (自托管模型)

每个 Provider 只实现 _complete()，并把各自 SDK 的连接 / 鉴权 / 状态码错误
统一转换为 ProviderUnavailableError。
"""
from abc import ABC, abstractmethod
from typing import List, Dict, Optional
from dataclasses import dataclass
import asyncio
import time
import uuid
import openai
import anthropic
import aiohttp
from loguru import logger


@dataclass
class ProviderConfig:
    """Provider配置"""
    api_key: Optional[str] = None
    api_url: Optional[str] = None
    model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    temperature: float = 0.2
    timeout: int = 60


@dataclass
class Completion:
    """一次补全调用的结果"""
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    finish_reason: str = "stop"

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class ProviderUnavailableError(Exception):
    """上游服务不可达、鉴权失败或返回非 2xx"""


class LLMProvider(ABC):
    """LLM Provider抽象基类"""

    name = "base"

    def __init__(self, config: ProviderConfig):
        self.config = config

    async def generate(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> Completion:
        """
        调用上游模型

        Args:
            messages: 对话消息
            model: 模型（为空时使用配置）
            max_tokens: 最大输出token数
            temperature: 温度
            json_mode: 要求上游只输出 JSON 对象（上游支持时）

        Raises:
            ProviderUnavailableError: 上游失败
        """
        model = model or self.config.model
        call_id = uuid.uuid4().hex[:8]
        chars = sum(len(msg.get("content", "")) for msg in messages)
        logger.info(
            f"🚀 [LLM-REQ][{call_id}] provider={self.name} | model={model} | "
            f"messages={len(messages)} | chars={chars} | json={json_mode}"
        )

        start_time = time.perf_counter()
        try:
            completion = await self._complete(
                messages,
                model,
                max_tokens or self.config.max_tokens,
                self.config.temperature if temperature is None else temperature,
                json_mode,
            )
        except ProviderUnavailableError as e:
            logger.error(
                f"❌ [LLM-ERR][{call_id}] provider={self.name} | "
                f"latency={(time.perf_counter() - start_time) * 1000:.0f}ms | error={e}"
            )
            raise

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"✅ [LLM-RES][{call_id}] provider={self.name} | latency={latency_ms:.0f}ms | "
            f"tokens(prompt={completion.prompt_tokens}, completion={completion.completion_tokens})"
        )
        preview = completion.content[:150].replace("\n", " ")
        logger.debug(f"📤 [LLM-RES][{call_id}] {preview}")
        return completion

    @abstractmethod
    async def _complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        max_tokens: int,
        temperature: float,
        json_mode: bool,
    ) -> Completion:
        pass


class OpenAIProvider(LLMProvider):
    """OpenAI GPT Provider"""

    name = "openai"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        if not config.api_key:
            raise ValueError("OpenAI API key is required")
        self.client = openai.AsyncOpenAI(api_key=config.api_key, timeout=config.timeout)

    async def _complete(self, messages, model, max_tokens, temperature, json_mode) -> Completion:
        extra = {"response_format": {"type": "json_object"}} if json_mode else {}
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **extra,
            )
        except (openai.APIConnectionError, openai.AuthenticationError, openai.APIStatusError) as e:
            raise ProviderUnavailableError(str(e)) from e

        choice = response.choices[0]
        return Completion(
            content=choice.message.content or "",
            model=response.model,
            prompt_tokens=response.usage.prompt_tokens if response.usage else 0,
            completion_tokens=response.usage.completion_tokens if response.usage else 0,
            finish_reason=choice.finish_reason or "stop",
        )


class AnthropicProvider(LLMProvider):
    """Anthropic Claude Provider（system 消息单独传递）"""

    name = "anthropic"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        if not config.api_key:
            raise ValueError("Anthropic API key is required")
        self.client = anthropic.AsyncAnthropic(api_key=config.api_key, timeout=config.timeout)

    @staticmethod
    def split_system(messages: List[Dict[str, str]]):
        """拆出 system 提示词，其余消息映射为 user / assistant"""
        system_parts = []
        chat = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                role = "user" if msg["role"] == "user" else "assistant"
                chat.append({"role": role, "content": msg["content"]})
        return "\n\n".join(system_parts), chat

    async def _complete(self, messages, model, max_tokens, temperature, json_mode) -> Completion:
        system_prompt, chat = self.split_system(messages)
        try:
            response = await self.client.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system_prompt,
                messages=chat,
            )
        except (anthropic.APIConnectionError, anthropic.AuthenticationError, anthropic.APIStatusError) as e:
            raise ProviderUnavailableError(str(e)) from e

        return Completion(
            content="".join(block.text for block in response.content if getattr(block, "type", "") == "text"),
            model=response.model,
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
            finish_reason=response.stop_reason or "stop",
        )


class VLLMProvider(LLMProvider):
    """vLLM 自托管模型 Provider（OpenAI 兼容 /v1/chat/completions）"""

    name = "vllm"

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        if not config.api_url:
            raise ValueError("vLLM API URL is required")
        base = config.api_url.rstrip("/")
        if base.endswith("/v1"):
            base = base[:-3]
        self.endpoint = f"{base}/v1/chat/completions"

    async def _complete(self, messages, model, max_tokens, temperature, json_mode) -> Completion:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    json=payload,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise ProviderUnavailableError(f"vLLM API error: {response.status} - {error_text}")
                    body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailableError(str(e)) from e

        usage = body.get("usage") or {}
        choice = body["choices"][0]
        return Completion(
            content=choice["message"].get("content") or "",
            model=body.get("model", model),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            finish_reason=choice.get("finish_reason") or "stop",
        )
