"""
Intent data model shared by the extraction, dispatch and response stages.

All records are plain dataclasses with ``from_dict`` / ``to_dict`` so that they
can be persisted inside a pending interaction and unit-tested without an LLM.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

INTENT_KINDS = ("greeting", "chitchat", "story", "task", "knowledge", "question")
PRIORITIES = ("urgent", "high", "medium", "low")


def _clamp_unit(value: Any) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, value))


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none"}:
        return None
    return text


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    """LLM 偶尔把布尔值写成字符串，"false" / "no" / "0" 都按 False 处理。"""

    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "y", "1"}
    return bool(value)


def _priority(value: Any) -> str:
    text = (_opt_str(value) or "medium").lower()
    return text if text in PRIORITIES else "medium"


@dataclass
class EntityMention:
    name: str
    is_known: bool = False
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EntityMention":
        return cls(
            name=str(raw.get("name", "")).strip(),
            is_known=_as_bool(raw.get("is_known", False)),
            id=_opt_str(raw.get("id") or raw.get("person_id") or raw.get("project_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "is_known": self.is_known, "id": self.id}


@dataclass
class PotentialTask:
    """从 story 中识别出来、尚未创建的候选任务。"""

    title: str
    due_date: Optional[str] = None
    due_time: Optional[str] = None
    priority: str = "medium"
    sequence_order: int = 0
    context: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PotentialTask":
        return cls(
            title=str(raw.get("title", "")).strip(),
            due_date=_opt_str(raw.get("due_date")),
            due_time=_opt_str(raw.get("due_time")),
            priority=_priority(raw.get("priority")),
            sequence_order=_opt_int(raw.get("sequence_order")) or 0,
            context=str(raw.get("context") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "due_date": self.due_date,
            "due_time": self.due_time,
            "priority": self.priority,
            "sequence_order": self.sequence_order,
            "context": self.context,
        }


@dataclass
class TaskItem:
    title: str
    due_date: Optional[str] = None
    due_time: Optional[str] = None
    time_estimate: Optional[int] = None  # 分钟
    energy_level: Optional[str] = None
    project: Optional[str] = None
    priority: str = "medium"
    notes: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TaskItem":
        energy = _opt_str(raw.get("energy_level"))
        return cls(
            title=str(raw.get("title", "")).strip(),
            due_date=_opt_str(raw.get("due_date")),
            due_time=_opt_str(raw.get("due_time")),
            time_estimate=_opt_int(raw.get("time_estimate", raw.get("estimated_minutes"))),
            energy_level=energy.upper() if energy else None,
            project=_opt_str(raw.get("project")),
            priority=_priority(raw.get("priority")),
            notes=str(raw.get("notes") or ""),
        )

    @classmethod
    def from_potential(cls, potential: PotentialTask) -> "TaskItem":
        return cls(
            title=potential.title,
            due_date=potential.due_date,
            due_time=potential.due_time,
            priority=potential.priority,
            notes=potential.context,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "due_date": self.due_date,
            "due_time": self.due_time,
            "time_estimate": self.time_estimate,
            "energy_level": self.energy_level,
            "project": self.project,
            "priority": self.priority,
            "notes": self.notes,
        }


@dataclass
class KnowledgePayload:
    title: str
    content: str
    category: str = "Uncategorized"
    tags: List[str] = field(default_factory=list)
    # 知识里带着一件要做的事：存笔记之后顺手建任务
    actionable: bool = False
    action_task: Optional[TaskItem] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "KnowledgePayload":
        tags = raw.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",")]
        action_task = raw.get("action_task", raw.get("actionTask"))
        return cls(
            title=str(raw.get("title") or "").strip(),
            content=str(raw.get("content") or ""),
            category=_opt_str(raw.get("category")) or "Uncategorized",
            tags=[str(t).lstrip("#") for t in tags if str(t).strip()],
            actionable=_as_bool(raw.get("actionable", False)),
            action_task=TaskItem.from_dict(action_task) if isinstance(action_task, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "tags": list(self.tags),
            "actionable": self.actionable,
            "action_task": self.action_task.to_dict() if self.action_task else None,
        }


@dataclass
class ExtractedIntent:
    """一条消息的结构化分类结果。

    只保留与 ``kind`` 匹配的那一份 payload，其余字段在构造时清空。
    """

    kind: str
    confidence: float = 0.0
    needs_confirmation: bool = False
    confirmation_reason: Optional[str] = None

    # story
    summary: str = ""
    potential_tasks: List[PotentialTask] = field(default_factory=list)
    # task
    tasks: List[TaskItem] = field(default_factory=list)
    # knowledge
    knowledge: Optional[KnowledgePayload] = None
    # question
    query: Optional[str] = None

    people_mentioned: List[EntityMention] = field(default_factory=list)
    projects_mentioned: List[EntityMention] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.kind = str(self.kind or "").strip().lower()
        if self.kind not in INTENT_KINDS:
            raise ValueError(f"unknown intent kind: {self.kind!r}")
        self.confidence = _clamp_unit(self.confidence)
        self.potential_tasks = [
            p if isinstance(p, PotentialTask) else PotentialTask.from_dict(p)
            for p in self.potential_tasks
        ]
        self.tasks = [t if isinstance(t, TaskItem) else TaskItem.from_dict(t) for t in self.tasks]
        if isinstance(self.knowledge, dict):
            self.knowledge = KnowledgePayload.from_dict(self.knowledge)
        self.people_mentioned = self._mentions(self.people_mentioned)
        self.projects_mentioned = self._mentions(self.projects_mentioned)
        if not self.needs_confirmation:
            self.confirmation_reason = None

        if self.kind != "story":
            self.summary = ""
            self.potential_tasks = []
        if self.kind != "task":
            self.tasks = []
        if self.kind != "knowledge":
            self.knowledge = None
        if self.kind != "question":
            self.query = None

    @staticmethod
    def _mentions(items: List[Any]) -> List[EntityMention]:
        mentions = []
        for item in items or []:
            mention = item if isinstance(item, EntityMention) else EntityMention.from_dict(item)
            if mention.name:
                mentions.append(mention)
        return mentions

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ExtractedIntent":
        kind = raw.get("kind", raw.get("type"))
        knowledge = None
        if str(kind).lower() == "knowledge":
            knowledge = KnowledgePayload.from_dict(raw.get("knowledge") or raw)
        return cls(
            kind=kind,
            confidence=raw.get("confidence", 0.0),
            needs_confirmation=_as_bool(raw.get("needs_confirmation", False)),
            confirmation_reason=_opt_str(raw.get("confirmation_reason")),
            summary=str(raw.get("summary") or ""),
            potential_tasks=list(raw.get("potential_tasks") or []),
            tasks=list(raw.get("tasks") or []),
            knowledge=knowledge,
            query=_opt_str(raw.get("query")),
            people_mentioned=list(raw.get("people_mentioned") or []),
            projects_mentioned=list(raw.get("projects_mentioned") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind,
            "confidence": self.confidence,
            "needs_confirmation": self.needs_confirmation,
            "confirmation_reason": self.confirmation_reason,
            "people_mentioned": [m.to_dict() for m in self.people_mentioned],
            "projects_mentioned": [m.to_dict() for m in self.projects_mentioned],
        }
        if self.kind == "story":
            data["summary"] = self.summary
            data["potential_tasks"] = [p.to_dict() for p in self.potential_tasks]
        elif self.kind == "task":
            data["tasks"] = [t.to_dict() for t in self.tasks]
        elif self.kind == "knowledge" and self.knowledge is not None:
            data["knowledge"] = self.knowledge.to_dict()
        elif self.kind == "question":
            data["query"] = self.query
        return data

    def confirmed(self) -> "ExtractedIntent":
        """返回一份 needs_confirmation=False 的副本。"""

        return replace(self, needs_confirmation=False, confirmation_reason=None)


@dataclass
class ActionResult:
    action_taken: str
    created: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.created) and bool(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_taken": self.action_taken,
            "created": list(self.created),
            "failed": list(self.failed),
            "details": dict(self.details),
        }
