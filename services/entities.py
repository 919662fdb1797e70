# services/entities.py
from __future__ import annotations

import asyncio
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

MAX_PENDING_CONTEXTS = 5


class EntityTracker:
    """人 / 项目的登记簿：已知的计数，未知的先挂到 pending 等以后再问。"""

    kind = "entity"

    async def increment_usage(self, entity_id: str) -> bool:
        raise NotImplementedError

    async def mark_pending(self, name: str, context: str = "") -> None:
        raise NotImplementedError

    async def exists(self, name: str) -> bool:
        raise NotImplementedError

    async def resolve_id(self, name: str) -> Optional[str]:
        raise NotImplementedError

    async def known_for_prompt(self) -> List[Dict[str, Any]]:
        raise NotImplementedError


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonEntityTracker(EntityTracker):
    """
    单个 JSON 文件：{"items": [...], "pending": [...]}。

    items:   {id, name, aliases, usage_count, last_used}
    pending: {name, mentions, contexts(最多 5 条), first_mentioned, last_mentioned}
    """

    def __init__(self, path: str | Path, *, kind: str = "people"):
        self.path = Path(path)
        self.kind = kind
        self._lock = threading.Lock()

    # ===== 文件读写 =====
    def _load(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {"items": [], "pending": []}
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        return {
            "items": list(raw.get("items", []) or []),
            "pending": list(raw.get("pending", []) or []),
        }

    def _save(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")

    # ===== 同步 API（异步接口用 to_thread 包一层）=====
    def add(self, name: str, *, entity_id: Optional[str] = None, aliases: Optional[List[str]] = None) -> Dict[str, Any]:
        with self._lock:
            data = self._load()
            item = {
                "id": entity_id or str(uuid4()),
                "name": name,
                "aliases": list(aliases or []),
                "usage_count": 0,
                "last_used": None,
            }
            data["items"].append(item)
            data["pending"] = [p for p in data["pending"] if p.get("name", "").lower() != name.lower()]
            self._save(data)
        print(f"[services/entities.py] ➕ 新登记 {self.kind}：{name}（id={item['id']}）")
        return item

    def find(self, name: str) -> Optional[Dict[str, Any]]:
        needle = (name or "").strip().lower()
        for item in self._load()["items"]:
            names = [item.get("name", "")] + list(item.get("aliases") or [])
            if needle in (n.lower() for n in names):
                return item
        return None

    def pending(self) -> List[Dict[str, Any]]:
        return self._load()["pending"]

    def _increment_usage_sync(self, entity_id: str) -> bool:
        with self._lock:
            data = self._load()
            for item in data["items"]:
                if item.get("id") == entity_id:
                    item["usage_count"] = int(item.get("usage_count", 0) or 0) + 1
                    item["last_used"] = _utc_now()
                    self._save(data)
                    return True
        print(f"[services/entities.py] ⚠️ {self.kind} 中没有 id={entity_id}，计数跳过。")
        return False

    def _mark_pending_sync(self, name: str, context: str) -> None:
        name = name.strip()
        if not name:
            return
        with self._lock:
            data = self._load()
            now = _utc_now()
            existing = next(
                (p for p in data["pending"] if p.get("name", "").lower() == name.lower()), None
            )
            if existing is not None:
                existing["mentions"] = int(existing.get("mentions", 1) or 1) + 1
                existing["last_mentioned"] = now
                if context:
                    existing["contexts"] = (list(existing.get("contexts") or []) + [context])[-MAX_PENDING_CONTEXTS:]
            else:
                data["pending"].append(
                    {
                        "name": name,
                        "mentions": 1,
                        "contexts": [context] if context else [],
                        "first_mentioned": now,
                        "last_mentioned": now,
                    }
                )
            self._save(data)
        print(f"[services/entities.py] ❔ 未知 {self.kind} 挂起待问：{name}")

    # ===== EntityTracker =====
    async def increment_usage(self, entity_id: str) -> bool:
        return await asyncio.to_thread(self._increment_usage_sync, entity_id)

    async def mark_pending(self, name: str, context: str = "") -> None:
        await asyncio.to_thread(self._mark_pending_sync, name, context)

    async def exists(self, name: str) -> bool:
        return await asyncio.to_thread(self.find, name) is not None

    async def resolve_id(self, name: str) -> Optional[str]:
        item = await asyncio.to_thread(self.find, name)
        return item.get("id") if item else None

    async def known_for_prompt(self) -> List[Dict[str, Any]]:
        items = await asyncio.to_thread(lambda: self._load()["items"])
        return [{"id": item.get("id"), "name": item.get("name")} for item in items if item.get("name")]
