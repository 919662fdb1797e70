# services/task_store.py
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional
from urllib import parse, request


class TaskStore:
    """外部任务系统的最小接口；返回的 dict 至少带一个 id。"""

    async def create_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    async def get_tasks(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError


class TududiClient(TaskStore):
    """Tududi REST API：POST /api/task，PATCH /api/task/{id}，GET /api/tasks。"""

    def __init__(self, *, api_url: str, api_token: str, timeout: float = 15.0):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout

    async def create_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Task name is required and cannot be empty")
        body = {**payload, "name": name}
        data = await asyncio.to_thread(self._request, "POST", "/api/task", body)
        print(f"[services/task_store.py] ✅ Tududi 已创建任务 {name!r}（id={data.get('id')}）。")
        return data

    async def update_task(self, task_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._request, "PATCH", f"/api/task/{task_id}", updates)

    async def get_tasks(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        path = "/api/tasks"
        if filters:
            path += "?" + parse.urlencode(filters)
        data = await asyncio.to_thread(self._request, "GET", path, None)
        return self._as_task_list(data)

    @staticmethod
    def _as_task_list(data: Any) -> List[Dict[str, Any]]:
        if isinstance(data, dict):
            data = data.get("tasks")
        if not isinstance(data, list):
            print("[services/task_store.py] ⚠️ Tududi 返回的任务列表格式不对，按空列表处理。")
            return []
        return [t for t in data if isinstance(t, dict)]

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]]) -> Any:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = request.Request(f"{self.api_url}{path}", data=data, method=method)
        req.add_header("Authorization", f"Bearer {self.api_token}")
        req.add_header("Content-Type", "application/json")
        with request.urlopen(req, timeout=self.timeout) as resp:
            body = resp.read().decode("utf-8")
        return json.loads(body) if body.strip() else {}
