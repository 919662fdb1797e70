import asyncio
import json
from datetime import date

from services.channel import ConsoleChannel
from services.entities import JsonEntityTracker
from services.knowledge_search import FullTextKnowledgeSearch
from services.note_store import ObsidianNoteStore, slugify
from services.task_store import TududiClient


def _fixed_day():
    return date(2026, 10, 18)


class TestObsidianNoteStore:
    def test_task_goes_under_tasks_section(self, tmp_path):
        store = ObsidianNoteStore(tmp_path, today=_fixed_day)
        task = {
            "title": "Kirim invoice",
            "due_date": None,
            "time_estimate": 30,
            "energy_level": "LOW",
            "project": "kantor",
            "id": 17,
        }
        path = asyncio.run(store.append_task(task))

        assert path == tmp_path / "Daily Notes" / "2026-10-18.md"
        content = path.read_text(encoding="utf-8")
        header, rest = content.split("## Tasks\n", 1)
        assert rest.startswith("- [ ] Kirim invoice (due: today) ⏱️30m ⚡LOW #kantor [[Tududi-17]]\n")
        assert "## Notes" in rest

    def test_daily_note_without_tasks_section(self, tmp_path):
        store = ObsidianNoteStore(tmp_path, today=_fixed_day)
        note = tmp_path / "Daily Notes" / "2026-10-19.md"
        note.parent.mkdir(parents=True)
        note.write_text("# 2026-10-19\n\nfree text\n", encoding="utf-8")

        asyncio.run(store.append_task({"title": "Bayar listrik", "due_date": "2026-10-19"}))
        content = note.read_text(encoding="utf-8")
        assert content.startswith("# 2026-10-19\n\nfree text\n")
        assert content.rstrip().endswith("## Tasks\n- [ ] Bayar listrik (due: 2026-10-19) #inbox")

    def test_knowledge_note_path_and_body(self, tmp_path):
        store = ObsidianNoteStore(tmp_path, today=_fixed_day)
        path = asyncio.run(
            store.create_knowledge_note(
                {"title": "Tips Tidur!", "content": "Matikan layar.", "category": "Health", "tags": ["sleep"]}
            )
        )
        assert path == tmp_path / "Knowledge" / "Health" / "tips-tidur-2026-10-18.md"
        body = path.read_text(encoding="utf-8")
        assert body.startswith("# Tips Tidur!\n")
        assert "**Tags:** #sleep" in body
        assert "Matikan layar." in body

    def test_slugify(self):
        assert slugify("  Hello,  World -- 2 ") == "hello-world-2"
        assert slugify("???") == "note"


class TestFullTextKnowledgeSearch:
    def _vault(self, tmp_path):
        (tmp_path / "Knowledge").mkdir()
        (tmp_path / "Knowledge" / "rendang.md").write_text(
            "# Resep rendang\nrendang daging sapi #masak #padang\n", encoding="utf-8"
        )
        (tmp_path / "Knowledge" / "sapi.md").write_text("sapi perah\n", encoding="utf-8")
        (tmp_path / "other.txt").write_text("resep rendang", encoding="utf-8")
        return tmp_path

    def test_scoring_orders_results(self, tmp_path):
        search = FullTextKnowledgeSearch(self._vault(tmp_path))
        result = asyncio.run(search.query("rendang sapi"))

        assert result["found"] is True
        names = [r["filename"] for r in result["results"]]
        assert names == ["rendang.md", "sapi.md"]
        assert result["results"][0]["tags"] == ["masak", "padang"]
        assert "rendang" in result["formatted"]

    def test_score_formula(self):
        score = FullTextKnowledgeSearch.score("a b a b", ["a", "b"])
        # phrase 10 + all tokens 5 + 4 hits * 0.5
        assert score == 17.0

    def test_no_results(self, tmp_path):
        search = FullTextKnowledgeSearch(self._vault(tmp_path))
        result = asyncio.run(search.query("kubernetes"))
        assert result == {
            "found": False,
            "results": [],
            "formatted": '❌ No results found for "kubernetes"',
        }

    def test_top_five_only(self, tmp_path):
        for i in range(8):
            (tmp_path / f"n{i}.md").write_text("kopi " * (i + 1), encoding="utf-8")
        results = FullTextKnowledgeSearch(tmp_path).search("kopi")
        assert len(results) == 5
        assert results[0]["filename"] == "n7.md"


class TestJsonEntityTracker:
    def test_pending_mentions_accumulate(self, tmp_path):
        tracker = JsonEntityTracker(tmp_path / "people.json", kind="people")
        for i in range(7):
            asyncio.run(tracker.mark_pending("Sari", f"context {i}"))
        asyncio.run(tracker.mark_pending("sari"))

        pending = tracker.pending()
        assert len(pending) == 1
        assert pending[0]["mentions"] == 8
        assert pending[0]["contexts"] == [f"context {i}" for i in range(2, 7)]

    def test_increment_usage_and_prompt_view(self, tmp_path):
        tracker = JsonEntityTracker(tmp_path / "people.json", kind="people")
        budi = tracker.add("Budi", aliases=["Pak Budi"])

        assert asyncio.run(tracker.increment_usage(budi["id"])) is True
        assert asyncio.run(tracker.increment_usage("missing")) is False
        assert asyncio.run(tracker.exists("pak budi")) is True
        assert asyncio.run(tracker.known_for_prompt()) == [{"id": budi["id"], "name": "Budi"}]

        data = json.loads((tmp_path / "people.json").read_text(encoding="utf-8"))
        assert data["items"][0]["usage_count"] == 1

    def test_resolve_id_by_name_or_alias(self, tmp_path):
        tracker = JsonEntityTracker(tmp_path / "people.json", kind="people")
        budi = tracker.add("Budi", aliases=["Pak Budi"])

        assert asyncio.run(tracker.resolve_id("PAK BUDI")) == budi["id"]
        assert asyncio.run(tracker.resolve_id("Sari")) is None

    def test_add_removes_pending_entry(self, tmp_path):
        tracker = JsonEntityTracker(tmp_path / "projects.json", kind="projects")
        asyncio.run(tracker.mark_pending("Renovasi", "rumah"))
        tracker.add("Renovasi")
        assert tracker.pending() == []


class TestTududiClient:
    def test_task_list_shapes(self):
        assert TududiClient._as_task_list([{"id": 1}, "x"]) == [{"id": 1}]
        assert TududiClient._as_task_list({"tasks": [{"id": 2}]}) == [{"id": 2}]
        assert TududiClient._as_task_list({"error": "nope"}) == []
        assert TududiClient._as_task_list(None) == []

    def test_empty_name_rejected_before_request(self):
        client = TududiClient(api_url="http://127.0.0.1:9", api_token="t")
        try:
            asyncio.run(client.create_task({"name": "   "}))
        except ValueError as exc:
            assert "name is required" in str(exc)
        else:
            raise AssertionError("empty task name should be rejected")


class TestConsoleChannel:
    def test_transcript_and_output(self, capsys):
        channel = ConsoleChannel()

        async def scenario():
            status_id = await channel.send_status_message("u", "🤔 Let me think...")
            await channel.edit_status_message("u", status_id, "done")
            await channel.send_message("u", "second")

        asyncio.run(scenario())
        assert channel.transcript == ["done", "second"]
        assert "🤔 Let me think..." in capsys.readouterr().out
