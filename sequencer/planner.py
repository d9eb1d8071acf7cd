"""
规划器适配层 - 将 (目标, 页面快照, 执行历史) 翻译为下一步浏览器操作

设计理念：
- 规划器是无状态的外部 oracle，每次只返回 1 个操作和完成标志
- 输出必须是严格 JSON；格式错误时指数退避重试，并逐级加强"必须输出 JSON"的指令
- 上游不可达时快速失败（PlannerUnavailable），不在同一调用内重试
- 避免重复操作的策略通过历史交给 oracle 判断
"""
import asyncio
import json
from typing import List, Optional, Sequence

from loguru import logger

from maestro.llm_gateway import LLMGateway, LLMRequest
from .errors import PlannerContractViolation, PlannerUnavailable
from .models import ActionKind, HistoryEntry, PageSnapshot, PlannerDecision
from .page_context import build_planner_context

SYSTEM_PROMPT = """You are a browser automation planner. You receive a user's goal, the history of actions already performed, and a structured description of the current page. You choose exactly ONE next browser action.

Available action kinds:
1. navigate - Navigate to a URL
   parameters: { "url": string }
2. click - Click an element
   parameters: { "selector": string, "waitForSelector"?: string, "timeout"?: number }
3. fill - Fill an input field
   parameters: { "selector": string, "value": string, "clearFirst"?: boolean }
4. extract - Extract data from elements
   parameters: { "selector": string, "attribute"?: string, "extractText"?: boolean }
5. wait - Wait for a duration in milliseconds
   parameters: { "duration": number }
6. custom - Execute custom JavaScript
   parameters: { "script": string, "tabId"?: number }

Return your response as a single JSON object with this exact format:
{
  "kind": "navigate|click|fill|extract|wait|custom",
  "parameters": { ... },
  "rationale": "Brief explanation of why you chose this action",
  "isComplete": false
}

Rules:
- Set "isComplete": true only when the user's goal has been fully achieved according to the page information and history.
- Use the selectors provided in the interactive elements list; prefer stable selectors (ids, data attributes).
- Match elements by their labels when possible.
- Do NOT repeat an action with the same kind and the same selector or URL when the page has not changed since it last succeeded; choose a different action or finish.
- If the page information is marked as truncated, reason carefully about elements that may be missing.
- Output JSON only. No markdown fences, no commentary."""

STRICT_JSON_REMINDERS = [
    "Your previous reply could not be parsed. Respond with a single valid JSON object "
    "containing \"kind\", \"parameters\", \"rationale\" and \"isComplete\".",
    "IMPORTANT: Your reply MUST be valid JSON. Return exactly one JSON object with the keys "
    "\"kind\", \"parameters\", \"rationale\" and \"isComplete\". Do not add any other text.",
    "CRITICAL: Your reply MUST be ONE valid JSON object and NOTHING else. No markdown fences, "
    "no explanations, no trailing text. \"kind\" MUST be one of navigate, click, fill, extract, "
    "wait, custom and \"parameters\" MUST be an object.",
    "FINAL ATTEMPT - STRICT JSON ONLY: Your ENTIRE reply MUST be a single valid JSON object. "
    "It MUST start with '{' and end with '}'. It MUST contain \"kind\" (one of navigate, click, "
    "fill, extract, wait, custom), \"parameters\" (object), \"rationale\" (string) and "
    "\"isComplete\" (boolean). ANY other output is rejected.",
]


def strict_json_instruction(retry_index: int) -> str:
    """第 retry_index 次重试（从 1 开始）使用的加强指令"""
    if retry_index <= len(STRICT_JSON_REMINDERS):
        return STRICT_JSON_REMINDERS[retry_index - 1]
    return f"{STRICT_JSON_REMINDERS[-1]} (retry {retry_index})"


class MalformedPlannerOutput(ValueError):
    """规划器输出不符合约定"""


def _extract_json(text: str) -> str:
    """提取 JSON（处理可能的 markdown 代码块包裹和前后说明文字）"""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise MalformedPlannerOutput("no JSON object found in planner response")
    return text[start:end + 1]


def parse_planner_output(text: str) -> PlannerDecision:
    """
    解析规划器返回的 JSON

    兼容旧字段名：type / params / reasoning

    Raises:
        MalformedPlannerOutput: 非 JSON、缺少 kind/parameters 或 kind 未知
    """
    if not text or not text.strip():
        raise MalformedPlannerOutput("empty planner response")

    try:
        data = json.loads(_extract_json(text))
    except json.JSONDecodeError as e:
        raise MalformedPlannerOutput(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPlannerOutput("planner response is not a JSON object")

    is_complete = data.get("isComplete", data.get("is_complete", False)) is True
    raw_kind = data.get("kind", data.get("type"))
    parameters = data.get("parameters", data.get("params"))
    rationale = data.get("rationale", data.get("reasoning")) or ""
    if not isinstance(rationale, str):
        rationale = json.dumps(rationale, ensure_ascii=False)

    # 目标已完成时允许不带操作
    if is_complete and raw_kind is None:
        return PlannerDecision(kind=None, rationale=rationale, is_complete=True, raw=text)

    if raw_kind is None:
        raise MalformedPlannerOutput("missing 'kind'")
    if parameters is None:
        raise MalformedPlannerOutput("missing 'parameters'")
    if not isinstance(parameters, dict):
        raise MalformedPlannerOutput("'parameters' must be an object")

    kind = ActionKind.parse(raw_kind)
    if kind is None:
        raise MalformedPlannerOutput(f"unknown kind: {raw_kind!r}")

    return PlannerDecision(
        kind=kind,
        parameters=parameters,
        rationale=rationale,
        is_complete=is_complete,
        raw=text,
    )


class PlannerAdapter:
    """
    规划器适配器

    使用方式：
        planner = PlannerAdapter(get_llm_gateway())
        decision = await planner.generate(goal, snapshot, history)
    """

    def __init__(
        self,
        gateway: Optional[LLMGateway],
        provider: Optional[str] = None,
        max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        context_budget: int = 20000,
        history_budget: int = 4000,
        temperature: float = 0.2,
        max_tokens: int = 1000,
    ):
        self.gateway = gateway
        self.provider = provider
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.context_budget = context_budget
        self.history_budget = history_budget
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings, gateway: Optional[LLMGateway]) -> "PlannerAdapter":
        return cls(
            gateway=gateway,
            provider=settings.planner_provider,
            max_attempts=settings.planner_max_attempts,
            retry_base_delay=settings.planner_retry_base_delay,
            context_budget=settings.planner_context_budget,
            history_budget=settings.planner_history_budget,
            temperature=settings.planner_temperature,
            max_tokens=settings.planner_max_tokens,
        )

    def build_messages(
        self,
        goal: str,
        snapshot: PageSnapshot,
        history: Sequence[HistoryEntry],
        guidance: Optional[str] = None,
    ) -> List[dict]:
        context = build_planner_context(
            goal, snapshot, history, self.context_budget, self.history_budget
        )
        user_content = f"{context}\n\nGenerate the next action as JSON:"
        if guidance:
            user_content += f"\n\nNote: {guidance}"
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ]

    async def _call(self, messages: List[dict]) -> str:
        if self.gateway is None:
            raise PlannerUnavailable("no planner gateway configured")

        response = await self.gateway.generate(LLMRequest(
            messages=messages,
            provider=self.provider,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            json_mode=True,
            metadata={"purpose": "plan"},
        ))
        if not response.success:
            raise PlannerUnavailable(response.error or "planner upstream failed")
        return response.content or ""

    async def generate(
        self,
        goal: str,
        snapshot: PageSnapshot,
        history: Sequence[HistoryEntry],
        guidance: Optional[str] = None,
    ) -> PlannerDecision:
        """
        生成下一步操作

        Args:
            goal: 用户目标
            snapshot: 当前页面快照
            history: 执行历史
            guidance: 额外提示（如重复操作被拒绝的说明）

        Returns:
            PlannerDecision: 规划结果

        Raises:
            PlannerUnavailable: 上游不可达或未配置
            PlannerContractViolation: 重试耗尽仍无法解析
        """
        base_messages = self.build_messages(goal, snapshot, history, guidance)
        messages = base_messages
        last_raw: Optional[str] = None
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            raw = await self._call(messages)
            try:
                decision = parse_planner_output(raw)
                logger.debug(
                    f"🧭 [Planner] attempt {attempt}: kind={decision.kind.value if decision.kind else None}, "
                    f"isComplete={decision.is_complete}"
                )
                return decision
            except MalformedPlannerOutput as e:
                last_raw, last_error = raw, e
                logger.warning(f"⚠️ [Planner] 输出格式错误 (attempt {attempt}/{self.max_attempts}): {e}")

            if attempt < self.max_attempts:
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                if delay > 0:
                    await asyncio.sleep(delay)
                messages = base_messages + [
                    {"role": "assistant", "content": (raw or "(empty response)")[:2000]},
                    {"role": "user", "content": strict_json_instruction(attempt)},
                ]

        logger.error(
            f"❌ [Planner] contract violation after {self.max_attempts} attempts: {last_error}; "
            f"raw last response: {last_raw!r}"
        )
        raise PlannerContractViolation(
            str(last_error), raw_response=last_raw, attempts=self.max_attempts
        )
