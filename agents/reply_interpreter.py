# agents/reply_interpreter.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

DEFAULT_VOCABULARY_PATH = Path(__file__).resolve().parent.parent / "policies" / "reply_vocabulary.yaml"
VOCABULARY_KEYS = ("affirmative", "negative", "skip", "all")

_SPACES_RE = re.compile(r"\s+")
_SELECTION_SPLIT_RE = re.compile(r"[,;\s]+")
_EDGE_PUNCT = ".!?,;:~\"'`*"


def normalize_reply(text: str) -> str:
    cleaned = _SPACES_RE.sub(" ", (text or "").strip().lower())
    return cleaned.strip(_EDGE_PUNCT + " ")


@dataclass(frozen=True)
class StoryReply:
    action: str  # skip / select / invalid
    indices: List[int] = field(default_factory=list)


class ReplyInterpreter:
    """
    把「对上一条提问的回复」翻译成状态机能用的判定。
    词表来自 reply_vocabulary.yaml（affirmative / negative / skip / all），
    只做整句匹配，不做模糊 NLP。
    """

    def __init__(
        self,
        vocabulary_path: str | Path | None = None,
        *,
        vocabulary: Optional[Dict[str, Any]] = None,
    ):
        if vocabulary is None:
            path = Path(vocabulary_path) if vocabulary_path else DEFAULT_VOCABULARY_PATH
            with open(path, "r", encoding="utf-8") as f:
                vocabulary = yaml.safe_load(f) or {}
            source = str(path)
        else:
            source = "<inline>"

        self.vocabulary: Dict[str, FrozenSet[str]] = {
            key: frozenset(normalize_reply(str(w)) for w in (vocabulary.get(key) or []))
            for key in VOCABULARY_KEYS
        }
        overlap = self.vocabulary["affirmative"] & self.vocabulary["negative"]
        if overlap:
            raise ValueError(f"affirmative/negative 词表存在交集：{sorted(overlap)}")
        print(
            f"[agents/reply_interpreter.py] 📖 装载回复词表 {source} 完成："
            + ", ".join(f"{k}={len(v)}" for k, v in self.vocabulary.items())
        )

    # ===== 确认类回复 =====
    def classify_confirmation(self, text: str) -> Optional[str]:
        """返回 "yes" / "no"，无法判定时返回 None（交给调用方当作更正处理）。"""

        normalized = normalize_reply(text)
        if normalized in self.vocabulary["affirmative"]:
            return "yes"
        if normalized in self.vocabulary["negative"]:
            return "no"
        return None

    # ===== story 选择类回复 =====
    def parse_story_reply(self, text: str, candidate_count: int) -> StoryReply:
        normalized = normalize_reply(text)
        if normalized in self.vocabulary["skip"] or normalized in self.vocabulary["negative"]:
            return StoryReply(action="skip")
        if normalized in self.vocabulary["all"] or normalized in self.vocabulary["affirmative"]:
            return StoryReply(action="select", indices=list(range(1, candidate_count + 1)))

        indices = parse_selection(normalized, candidate_count)
        if not indices:
            return StoryReply(action="invalid")
        return StoryReply(action="select", indices=indices)


def parse_selection(text: str, candidate_count: int) -> List[int]:
    """解析 "1,3" / "1 3" / "#2" 这类 1-based 序号；越界和非数字 token 直接丢弃。"""

    picked = set()
    for token in _SELECTION_SPLIT_RE.split(text or ""):
        token = token.strip("#.()[]")
        if not (token.isascii() and token.isdigit()):
            continue
        index = int(token)
        if 1 <= index <= candidate_count:
            picked.add(index)
    return sorted(picked)
