from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from llm.schemas import EXTRACTION_SCHEMA


def _now(timezone: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(timezone))
    except ZoneInfoNotFoundError:
        return datetime.now()


def _format_known(entities: List[Dict[str, Any]] | None) -> str:
    parts = [f"{e.get('name')} (id: {e.get('id')})" for e in entities or [] if e.get("name")]
    return ", ".join(parts) or "None"


def build_extraction_prompt(
    message: str,
    context: Optional[Dict[str, Any]] = None,
    *,
    timezone: str = "Asia/Jakarta",
    now: Optional[datetime] = None,
) -> List[Dict[str, str]]:
    """第一阶段：严格 JSON 抽取，不生成对话回复。"""

    ctx = context or {}
    current = now or _now(timezone)
    system = (
        "You are a strict JSON extraction engine for a personal task assistant. "
        "Your ONLY job is to classify the user's message and extract structured data; "
        "never write a conversational reply.\n"
        "\n## USER CONTEXT"
        "\n- Timezone: {timezone}"
        "\n- Current date: {date}"
        "\n- Current time: {time}"
        "\n- Message source: {source}"
        "\n- Known people: {people}"
        "\n- Known projects: {projects}"
        "\n\n## RULES"
        "\n1. Output ONLY valid JSON that follows the schema."
        "\n2. Dates are YYYY-MM-DD, times are HH:MM (24h). Use null when unsure, never guess."
        "\n3. Classify into exactly ONE type: greeting (hello/halo/selamat pagi), "
        "chitchat (venting, small talk), story (context that MAY contain tasks, common in voice notes), "
        "task (clear actionable items), knowledge (information to keep), question (a query)."
        "\n4. Understand Indonesian and English date words: besok/tomorrow, lusa, minggu depan/next week, "
        "jam 3 sore = 15:00."
        "\n5. Match people and projects against the known lists; anything else has is_known=false and id=null."
        "\n6. Set needs_confirmation=true with a short confirmation_reason when the extraction is uncertain."
        "\n7. For knowledge that implies a follow-up, set actionable=true and describe it in action_task."
        "\n\nschema:\n{schema_json}"
    ).format(
        timezone=timezone,
        date=current.strftime("%Y-%m-%d"),
        time=current.strftime("%H:%M"),
        source=ctx.get("source", "text"),
        people=_format_known(ctx.get("known_people")),
        projects=_format_known(ctx.get("known_projects")),
        schema_json=json.dumps(EXTRACTION_SCHEMA, ensure_ascii=False),
    )
    user = f'Extract structured data from this message:\n\n"{message}"\n\nRespond with JSON only.'
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def build_response_prompt(
    intent: Dict[str, Any],
    action_result: Dict[str, Any],
    original_message: str,
) -> List[Dict[str, str]]:
    """第二阶段：根据抽取结果 + 执行结果写一条自然语言回复。"""

    system = (
        "You are the friendly voice of a personal assistant for people with ADHD. "
        "Write a warm, concise reply that acknowledges what happened. "
        "Mix Indonesian and English naturally, follow the user's language, use emojis sparingly.\n"
        "- greeting: short and warm, offer help.\n"
        "- chitchat: empathise first, gently offer help.\n"
        "- task: confirm what was created (and mention anything that failed).\n"
        "- knowledge: confirm what was saved and where, plus the follow-up task if one was created.\n"
        "- question: present the found results clearly, or apologise briefly and suggest alternatives.\n"
        "Never claim an action that action_taken does not report."
    )
    context = json.dumps(
        {
            "extracted_type": intent.get("kind"),
            "extracted_data": intent,
            "action_taken": action_result,
            "user_original_message": original_message,
        },
        ensure_ascii=False,
        indent=2,
    )
    user = (
        f"Generate a friendly response for this situation:\n\n{context}\n\n"
        "Respond with just the message text, no JSON."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]
