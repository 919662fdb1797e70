# services/note_store.py
from __future__ import annotations

import asyncio
import re
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Optional

TASKS_HEADER = "## Tasks"
DAILY_TEMPLATE = "# {day}\n\n## Tasks\n\n## Notes\n\n## Journal\n\n"


def slugify(title: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", (title or "").lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or "note"


class NoteStore:
    async def append_task(self, task: Dict[str, Any]) -> Path:
        raise NotImplementedError

    async def create_knowledge_note(self, note: Dict[str, Any]) -> Path:
        raise NotImplementedError


class ObsidianNoteStore(NoteStore):
    """
    Obsidian vault 的文件读写：
    - 每日笔记：<vault>/<daily_notes>/<YYYY-MM-DD>.md，任务插到 ## Tasks 下面
    - 知识笔记：<vault>/Knowledge/<category>/<slug>-<YYYY-MM-DD>.md
    """

    def __init__(
        self,
        vault_path: str | Path,
        *,
        daily_notes_path: str = "Daily Notes",
        today: Optional[Callable[[], date]] = None,
    ):
        self.vault_path = Path(vault_path)
        self.daily_notes_dir = self.vault_path / daily_notes_path
        self.knowledge_dir = self.vault_path / "Knowledge"
        self._today = today or date.today

    async def append_task(self, task: Dict[str, Any]) -> Path:
        return await asyncio.to_thread(self._append_task_sync, task)

    async def create_knowledge_note(self, note: Dict[str, Any]) -> Path:
        return await asyncio.to_thread(self._create_knowledge_note_sync, note)

    # ===== 同步实现 =====
    def ensure_daily_note(self, day: str) -> Path:
        self.daily_notes_dir.mkdir(parents=True, exist_ok=True)
        path = self.daily_notes_dir / f"{day}.md"
        if not path.exists():
            path.write_text(DAILY_TEMPLATE.format(day=day), encoding="utf-8")
            print(f"[services/note_store.py] 📝 新建每日笔记 {path.name}")
        return path

    @staticmethod
    def format_task_line(task: Dict[str, Any]) -> str:
        line = f"- [ ] {task.get('title', '')} (due: {task.get('due_date') or 'today'})"
        if task.get("time_estimate"):
            line += f" ⏱️{task['time_estimate']}m"
        if task.get("energy_level"):
            line += f" ⚡{task['energy_level']}"
        line += f" #{task.get('project') or 'inbox'}"
        if task.get("id") is not None:
            line += f" [[Tududi-{task['id']}]]"
        return line

    def _append_task_sync(self, task: Dict[str, Any]) -> Path:
        day = task.get("due_date") or self._today().isoformat()
        path = self.ensure_daily_note(day)
        content = path.read_text(encoding="utf-8")
        line = self.format_task_line(task)

        idx = content.find(TASKS_HEADER)
        if idx == -1:
            content = content.rstrip("\n") + f"\n\n{TASKS_HEADER}\n{line}\n"
        else:
            insert_at = content.find("\n", idx)
            insert_at = len(content) if insert_at == -1 else insert_at + 1
            content = content[:insert_at] + line + "\n" + content[insert_at:]
        path.write_text(content, encoding="utf-8")
        print(f"[services/note_store.py] 🗒️ 已写入每日笔记 {path.name}：{task.get('title')}")
        return path

    def _create_knowledge_note_sync(self, note: Dict[str, Any]) -> Path:
        title = str(note.get("title") or "Untitled")
        category = str(note.get("category") or "Uncategorized")
        tags = [str(t) for t in note.get("tags") or []]
        day = self._today().isoformat()

        folder = self.knowledge_dir / category
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{slugify(title)}-{day}.md"
        body = (
            f"# {title}\n\n"
            f"**Created:** {day}\n"
            f"**Tags:** {' '.join('#' + t for t in tags)}\n"
            f"**Category:** {category}\n\n"
            f"---\n\n{note.get('content', '')}\n\n---\n"
        )
        path.write_text(body, encoding="utf-8")
        print(f"[services/note_store.py] 📚 已保存知识笔记 {path.relative_to(self.vault_path)}")
        return path
