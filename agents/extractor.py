# agents/extractor.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from agents.errors import ExtractionFailure
from intents.types import ExtractedIntent, KnowledgePayload
from llm.text_service import TextService
from services.entities import EntityTracker

KNOWLEDGE_TITLE_CHARS = 60


class IntentExtractor:
    """
    一条消息 -> 一个 ExtractedIntent。

    - 先从 people / projects 登记簿拼出 prompt 上下文（登记簿挂了就用空列表）
    - 再交给 TextService，最后补齐 LLM 常漏的字段
    """

    def __init__(
        self,
        text_service: TextService,
        *,
        people: Optional[EntityTracker] = None,
        projects: Optional[EntityTracker] = None,
    ):
        self.text_service = text_service
        self.people = people
        self.projects = projects

    async def extract(self, message: str, *, source: str = "text") -> ExtractedIntent:
        context = {
            "source": source,
            "known_people": await self._known(self.people),
            "known_projects": await self._known(self.projects),
        }
        try:
            intent = await self.text_service.extract(message, context)
            intent = self._fill_defaults(intent, message)
        except Exception as exc:
            print(f"[agents/extractor.py] ❌ 抽取失败：{type(exc).__name__}: {exc}")
            raise ExtractionFailure(f"could not extract intent: {exc}") from exc

        print(
            f"[agents/extractor.py] 🧭 {source} 消息分类为 {intent.kind}"
            f"（confidence={intent.confidence:.2f}, needs_confirmation={intent.needs_confirmation}）"
        )
        return intent

    @staticmethod
    async def _known(tracker: Optional[EntityTracker]) -> List[Dict[str, Any]]:
        if tracker is None:
            return []
        try:
            return list(await tracker.known_for_prompt())
        except Exception as exc:  # noqa: BLE001 - 上下文缺了也能继续抽取
            print(f"[agents/extractor.py] ⚠️ 读取 {tracker.kind} 列表失败，按空列表处理：{exc}")
            return []

    @staticmethod
    def _fill_defaults(intent: ExtractedIntent, message: str) -> ExtractedIntent:
        if intent.kind == "question" and not intent.query:
            return replace(intent, query=message.strip())
        if intent.kind == "knowledge":
            knowledge = intent.knowledge or KnowledgePayload(title="", content=message)
            if not knowledge.content:
                knowledge = replace(knowledge, content=message)
            if not knowledge.title:
                prefix = " ".join(knowledge.content.split())[:KNOWLEDGE_TITLE_CHARS].strip()
                knowledge = replace(knowledge, title=prefix or "Untitled")
            return replace(intent, knowledge=knowledge)
        return intent
