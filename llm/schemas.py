from __future__ import annotations

import json
import re
from typing import Any, Dict

from intents.types import INTENT_KINDS, PRIORITIES, ExtractedIntent

_MENTION_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["name", "is_known"],
        "properties": {
            "name": {"type": "string"},
            "is_known": {"type": "boolean"},
            "id": {"type": ["string", "null"], "description": "已知实体的 id，未知为 null"},
        },
    },
}

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "title": "extracted intent",
    "type": "object",
    "required": ["type", "confidence", "needs_confirmation"],
    "properties": {
        "type": {"type": "string", "enum": list(INTENT_KINDS)},
        "confidence": {"type": "number", "description": "0~1, advisory only"},
        "needs_confirmation": {"type": "boolean"},
        "confirmation_reason": {"type": ["string", "null"]},
        "summary": {"type": "string", "description": "story only"},
        "potential_tasks": {
            "type": "array",
            "description": "story only",
            "items": {
                "type": "object",
                "required": ["title"],
                "properties": {
                    "title": {"type": "string"},
                    "due_date": {"type": ["string", "null"], "description": "YYYY-MM-DD"},
                    "due_time": {"type": ["string", "null"], "description": "HH:MM"},
                    "priority": {"type": "string", "enum": list(PRIORITIES)},
                    "sequence_order": {"type": "integer"},
                    "context": {"type": "string"},
                },
            },
        },
        "tasks": {
            "type": "array",
            "description": "task only",
            "items": {
                "type": "object",
                "required": ["title"],
                "properties": {
                    "title": {"type": "string"},
                    "due_date": {"type": ["string", "null"]},
                    "due_time": {"type": ["string", "null"]},
                    "time_estimate": {"type": ["integer", "null"], "description": "minutes"},
                    "energy_level": {"type": ["string", "null"], "enum": ["HIGH", "MEDIUM", "LOW", None]},
                    "priority": {"type": "string", "enum": list(PRIORITIES)},
                    "project": {"type": ["string", "null"]},
                    "notes": {"type": "string"},
                },
            },
        },
        "title": {"type": "string", "description": "knowledge only"},
        "content": {"type": "string", "description": "knowledge only"},
        "category": {"type": "string", "description": "knowledge only"},
        "tags": {"type": "array", "items": {"type": "string"}, "description": "knowledge only"},
        "actionable": {"type": "boolean", "description": "knowledge only"},
        "action_task": {
            "type": ["object", "null"],
            "description": "knowledge only, when actionable; same fields as a tasks item",
        },
        "query": {"type": "string", "description": "question only"},
        "people_mentioned": _MENTION_SCHEMA,
        "projects_mentioned": _MENTION_SCHEMA,
    },
}

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


def parse_extracted_intent(payload: str) -> ExtractedIntent:
    """从 LLM 输出里解析 ExtractedIntent。"""

    data = _extract_json(payload)
    if not isinstance(data, dict):
        raise ValueError(f"extraction output is not a JSON object: {type(data).__name__}")
    return ExtractedIntent.from_dict(data)


def _extract_json(payload: str) -> Any:
    payload = (payload or "").strip()
    fenced = _FENCE_RE.search(payload)
    if fenced:
        payload = fenced.group(1).strip()
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        start = payload.find("{")
        end = payload.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise
        snippet = payload[start : end + 1]
        return json.loads(snippet)
