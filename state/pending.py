from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from intents.types import EntityMention, ExtractedIntent, PotentialTask

STORY_CONFIRMATION = "story_confirmation"
TENTATIVE = "tentative"
PENDING_TYPES = (STORY_CONFIRMATION, TENTATIVE)


@dataclass
class PendingInteraction:
    """某个用户尚未回答的那一条澄清请求（每个用户最多一条）。"""

    type: str
    created_at: float = 0.0

    # story_confirmation
    summary: str = ""
    potential_tasks: List[PotentialTask] = field(default_factory=list)
    people_mentioned: List[EntityMention] = field(default_factory=list)

    # tentative
    extracted: Optional[ExtractedIntent] = None
    reason: Optional[str] = None
    original_message: str = ""
    correction_round: int = 0

    def __post_init__(self) -> None:
        if self.type not in PENDING_TYPES:
            raise ValueError(f"unknown pending interaction type: {self.type!r}")
        if self.type == TENTATIVE and self.extracted is None:
            raise ValueError("tentative interaction requires the extracted intent")

    @classmethod
    def story(
        cls,
        *,
        summary: str,
        potential_tasks: List[PotentialTask],
        people_mentioned: List[EntityMention] | None = None,
    ) -> "PendingInteraction":
        return cls(
            type=STORY_CONFIRMATION,
            summary=summary,
            potential_tasks=list(potential_tasks),
            people_mentioned=list(people_mentioned or []),
        )

    @classmethod
    def tentative(
        cls,
        *,
        extracted: ExtractedIntent,
        reason: Optional[str],
        original_message: str,
        correction_round: int = 0,
    ) -> "PendingInteraction":
        return cls(
            type=TENTATIVE,
            extracted=extracted,
            reason=reason,
            original_message=original_message,
            correction_round=correction_round,
        )

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "PendingInteraction":
        extracted = raw.get("extracted")
        return cls(
            type=raw["type"],
            created_at=float(raw.get("created_at", 0.0) or 0.0),
            summary=str(raw.get("summary") or ""),
            potential_tasks=[PotentialTask.from_dict(p) for p in raw.get("potential_tasks") or []],
            people_mentioned=[EntityMention.from_dict(m) for m in raw.get("people_mentioned") or []],
            extracted=ExtractedIntent.from_dict(extracted) if extracted else None,
            reason=raw.get("reason"),
            original_message=str(raw.get("original_message") or ""),
            correction_round=int(raw.get("correction_round", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "created_at": self.created_at}
        if self.type == STORY_CONFIRMATION:
            data["summary"] = self.summary
            data["potential_tasks"] = [p.to_dict() for p in self.potential_tasks]
            data["people_mentioned"] = [m.to_dict() for m in self.people_mentioned]
        else:
            data["extracted"] = self.extracted.to_dict() if self.extracted else None
            data["reason"] = self.reason
            data["original_message"] = self.original_message
            data["correction_round"] = self.correction_round
        return data
