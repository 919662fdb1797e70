from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence, Tuple

from agents.errors import ProviderChainExhausted
from intents.types import ActionResult, ExtractedIntent
from llm.client import LLMClient, LLMRequestOptions
from llm.prompts import build_extraction_prompt, build_response_prompt
from llm.schemas import parse_extracted_intent


class TextService:
    """
    抽取 / 回复两种能力，背后是一串按顺序尝试的 LLM 供应商。

    - 某家失败（网络、配额、输出解析不了）就换下一家
    - 全部失败才抛 ProviderChainExhausted，里面带着每一家的错误
    """

    def __init__(
        self,
        providers: Sequence[LLMClient],
        *,
        extraction_options: Optional[LLMRequestOptions] = None,
        response_options: Optional[LLMRequestOptions] = None,
        timezone: str = "Asia/Jakarta",
    ):
        self.providers = list(providers)
        self.extraction_options = extraction_options or LLMRequestOptions(temperature=0.1)
        self.response_options = response_options
        self.timezone = timezone

    @property
    def provider_names(self) -> List[str]:
        return [getattr(p, "name", type(p).__name__) for p in self.providers]

    async def extract(self, message: str, context: Optional[Dict[str, Any]] = None) -> ExtractedIntent:
        messages = build_extraction_prompt(message, context, timezone=self.timezone)
        errors: List[Tuple[str, Exception]] = []
        for provider in self.providers:
            name = getattr(provider, "name", type(provider).__name__)
            try:
                content = await provider.acomplete(messages, options=self.extraction_options)
                intent = parse_extracted_intent(content)
            except Exception as exc:  # noqa: BLE001 - 换下一家供应商
                print(
                    f"[llm/text_service.py] ⚠️ {name} 抽取失败：{type(exc).__name__}: {exc}，尝试下一家。"
                )
                errors.append((name, exc))
                continue
            print(
                f"[llm/text_service.py] 🧾 {name} 抽取完成：type={intent.kind} confidence={intent.confidence:.2f}。"
            )
            return intent
        raise ProviderChainExhausted(errors)

    async def respond(self, intent: ExtractedIntent, result: ActionResult, original_message: str) -> str:
        messages = build_response_prompt(intent.to_dict(), result.to_dict(), original_message)
        errors: List[Tuple[str, Exception]] = []
        for provider in self.providers:
            name = getattr(provider, "name", type(provider).__name__)
            try:
                text = (await provider.acomplete(messages, options=self.response_options)).strip()
                if not text:
                    raise ValueError("empty response text")
            except Exception as exc:  # noqa: BLE001 - 换下一家供应商
                print(
                    f"[llm/text_service.py] ⚠️ {name} 生成回复失败：{type(exc).__name__}: {exc}，尝试下一家。"
                )
                errors.append((name, exc))
                continue
            return text
        raise ProviderChainExhausted(errors)
