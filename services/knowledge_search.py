# services/knowledge_search.py
from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Any, Dict, List

_TAG_RE = re.compile(r"#(\w+)")


class KnowledgeSearch:
    async def query(self, text: str) -> Dict[str, Any]:
        """返回 {found, results, formatted}。"""
        raise NotImplementedError


class FullTextKnowledgeSearch(KnowledgeSearch):
    """在 vault 的所有 .md 文件里做朴素全文打分，取前 max_results 条。"""

    def __init__(self, vault_path: str | Path, *, max_results: int = 5):
        self.vault_path = Path(vault_path)
        self.max_results = max_results

    async def query(self, text: str) -> Dict[str, Any]:
        results = await asyncio.to_thread(self.search, text)
        return {
            "found": bool(results),
            "results": results,
            "formatted": self.format_results(text, results),
        }

    def search(self, text: str) -> List[Dict[str, Any]]:
        tokens = [t for t in (text or "").lower().split() if t]
        if not tokens or not self.vault_path.exists():
            return []

        results: List[Dict[str, Any]] = []
        for path in sorted(self.vault_path.rglob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                print(f"[services/knowledge_search.py] ⚠️ 读取 {path} 失败，跳过：{exc}")
                continue
            score = self.score(content, tokens)
            if score <= 0:
                continue
            results.append(
                {
                    "path": str(path.relative_to(self.vault_path)),
                    "filename": path.name,
                    "snippet": self.snippet(content, tokens),
                    "score": score,
                    "tags": self.tags(content),
                }
            )
        results.sort(key=lambda r: r["score"], reverse=True)
        return results[: self.max_results]

    @staticmethod
    def score(content: str, tokens: List[str]) -> float:
        lowered = content.lower()
        score = 0.0
        if " ".join(tokens) in lowered:
            score += 10
        if all(t in lowered for t in tokens):
            score += 5
        for token in tokens:
            score += lowered.count(token) * 0.5
        return score

    @staticmethod
    def snippet(content: str, tokens: List[str], *, before: int = 50, after: int = 150) -> str:
        flat = " ".join(content.splitlines())
        idx = flat.lower().find(tokens[0]) if tokens else -1
        if idx == -1:
            return flat[:after]
        start = max(0, idx - before)
        end = min(len(flat), idx + after)
        text = flat[start:end]
        if start > 0:
            text = "..." + text
        if end < len(flat):
            text += "..."
        return text

    @staticmethod
    def tags(content: str) -> List[str]:
        return list(dict.fromkeys(_TAG_RE.findall(content)))

    @staticmethod
    def format_results(topic: str, results: List[Dict[str, Any]]) -> str:
        if not results:
            return f'❌ No results found for "{topic}"'
        lines = [f'📚 Search results for "{topic}" ({len(results)} found)', ""]
        for i, result in enumerate(results, start=1):
            lines.append(f"{i}. {result['filename'][:-3]}")
            lines.append(f"   📄 {result['snippet'][:100]}")
            if result["tags"]:
                lines.append(f"   🏷️ {', '.join(result['tags'][:3])}")
        return "\n".join(lines)
