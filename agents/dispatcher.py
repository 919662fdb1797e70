# agents/dispatcher.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional, Set

from intents.types import ActionResult, EntityMention, ExtractedIntent, TaskItem
from services.entities import EntityTracker
from services.knowledge_search import KnowledgeSearch
from services.note_store import NoteStore
from services.task_store import TaskStore


class ActionDispatcher:
    """
    ExtractedIntent -> 外部副作用。

    只做执行，不决定要不要执行：确认流程由 orchestrator 负责。
    单个 item 的失败记在 ActionResult.failed 里，不打断整批。
    """

    def __init__(
        self,
        *,
        task_store: TaskStore,
        note_store: NoteStore,
        knowledge_search: KnowledgeSearch,
        people: Optional[EntityTracker] = None,
        projects: Optional[EntityTracker] = None,
    ):
        self.task_store = task_store
        self.note_store = note_store
        self.knowledge_search = knowledge_search
        self.people = people
        self.projects = projects
        self._tracking: Set[asyncio.Task] = set()

    async def dispatch(self, intent: ExtractedIntent, *, context: str = "") -> ActionResult:
        if intent.kind == "task":
            result = await self._create_tasks(intent)
        elif intent.kind == "knowledge":
            result = await self._save_knowledge(intent)
        elif intent.kind == "question":
            result = await self._answer_question(intent)
        else:
            result = ActionResult(action_taken="none")

        self.track_entities(intent, context=context)
        print(
            f"[agents/dispatcher.py] 🚚 {intent.kind} 执行完毕：{result.action_taken}"
            f"（成功 {len(result.created)}，失败 {len(result.failed)}）"
        )
        return result

    # ===== task =====
    async def _create_tasks(self, intent: ExtractedIntent) -> ActionResult:
        result = ActionResult(action_taken="no_tasks")
        for task in intent.tasks:
            await self._create_one(task, result)
        if result.created:
            result.action_taken = "created_tasks"
        return result

    async def _create_one(self, task: TaskItem, result: ActionResult) -> bool:
        """建一条任务并同步到每日笔记；成败都记进 result，不抛异常。"""

        title = task.title.strip()
        if not title:
            result.failed.append({"title": task.title, "error": "task title is empty"})
            print("[agents/dispatcher.py] ⚠️ 跳过一个标题为空的任务。")
            return False
        try:
            created = await self.task_store.create_task(self._task_payload(task))
        except Exception as exc:  # noqa: BLE001 - 单条失败不影响整批
            result.failed.append({"title": title, "error": str(exc)})
            print(f"[agents/dispatcher.py] ⚠️ 创建任务 {title!r} 失败：{type(exc).__name__}: {exc}")
            return False

        task_id = (created or {}).get("id")
        result.created.append({"title": title, "id": task_id})
        await self._mirror_task(task, task_id)
        return True

    @staticmethod
    def _task_payload(task: TaskItem) -> Dict[str, Any]:
        due = task.due_date
        if due and task.due_time:
            due = f"{due}T{task.due_time}"
        return {
            "name": task.title.strip(),
            "description": task.notes,
            "due_date": due,
            "priority": task.priority,
        }

    async def _mirror_task(self, task: TaskItem, task_id: Any) -> None:
        note = {**task.to_dict(), "id": task_id}
        try:
            await self.note_store.append_task(note)
        except Exception as exc:  # noqa: BLE001 - 任务已经建好，笔记失败只告警
            print(f"[agents/dispatcher.py] ⚠️ 任务 {task.title!r} 已创建，但写入每日笔记失败：{exc}")

    # ===== knowledge =====
    async def _save_knowledge(self, intent: ExtractedIntent) -> ActionResult:
        result = ActionResult(action_taken="saved_knowledge")
        knowledge = intent.knowledge
        if knowledge is None:
            result.failed.append({"title": "", "error": "knowledge payload missing"})
            return result
        try:
            path = await self.note_store.create_knowledge_note(knowledge.to_dict())
        except Exception as exc:  # noqa: BLE001
            result.failed.append({"title": knowledge.title, "error": str(exc)})
            print(f"[agents/dispatcher.py] ⚠️ 保存知识笔记 {knowledge.title!r} 失败：{exc}")
            return result
        result.created.append(
            {"title": knowledge.title, "category": knowledge.category, "path": str(path)}
        )
        if knowledge.actionable and knowledge.action_task is not None:
            # 笔记已经落盘，跟进任务失败只记在 failed 里
            if await self._create_one(knowledge.action_task, result):
                result.details["action_task"] = result.created[-1]
        return result

    # ===== question =====
    async def _answer_question(self, intent: ExtractedIntent) -> ActionResult:
        query = intent.query or ""
        try:
            search = await self.knowledge_search.query(query)
        except Exception as exc:  # noqa: BLE001
            print(f"[agents/dispatcher.py] ⚠️ 知识库检索失败：{exc}")
            return ActionResult(action_taken="no_results", failed=[{"title": query, "error": str(exc)}])
        found = bool(search.get("found"))
        return ActionResult(
            action_taken="answered_question" if found else "no_results",
            details={"search": search},
        )

    # ===== entity tracking =====
    def track_entities(self, intent: ExtractedIntent, *, context: str = "") -> None:
        """为提到的人 / 项目各起一个后台任务；没有事件循环时直接跳过。"""

        jobs = [
            (self.people, m) for m in intent.people_mentioned
        ] + [(self.projects, m) for m in intent.projects_mentioned]
        jobs = [(tracker, m) for tracker, m in jobs if tracker is not None]
        if not jobs:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            print("[agents/dispatcher.py] ⚠️ 没有运行中的事件循环，跳过实体登记。")
            return
        context = context or intent.summary or ", ".join(t.title for t in intent.tasks)
        for tracker, mention in jobs:
            task = loop.create_task(self._track_one(tracker, mention, context))
            self._tracking.add(task)
            task.add_done_callback(self._tracking.discard)

    @staticmethod
    async def _track_one(tracker: EntityTracker, mention: EntityMention, context: str) -> None:
        try:
            entity_id = mention.id
            if mention.is_known and not entity_id:
                entity_id = await tracker.resolve_id(mention.name)
            if mention.is_known and entity_id:
                await tracker.increment_usage(entity_id)
                return
            if mention.is_known:
                print(f"[agents/dispatcher.py] ⚠️ {tracker.kind} {mention.name!r} 标记为已知但查不到 id，按未知登记。")
            await tracker.mark_pending(mention.name, context)
        except Exception as exc:  # noqa: BLE001 - 登记失败只记日志
            print(f"[agents/dispatcher.py] ⚠️ 登记 {tracker.kind} {mention.name!r} 失败：{exc}")

    async def drain(self) -> None:
        if self._tracking:
            await asyncio.gather(*list(self._tracking), return_exceptions=True)

    @property
    def pending_tracking(self) -> int:
        return len(self._tracking)
