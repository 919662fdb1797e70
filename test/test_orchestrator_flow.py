"""端到端状态机测试：LLM / Tududi / vault 都换成内存里的假实现。"""

import asyncio

from agents.dispatcher import ActionDispatcher
from agents.errors import QUOTA_USER_MESSAGE
from agents.extractor import IntentExtractor
from agents.orchestrator import STATUS_TEXT, Orchestrator
from agents.reply_interpreter import ReplyInterpreter
from agents.responder import CANCELLED_MESSAGE, GIVE_UP_MESSAGE, NO_TASKS_MESSAGE, ResponseSynthesizer
from intents.types import ExtractedIntent
from state.conversation_state import ConversationStateStore
from state.pending import STORY_CONFIRMATION, TENTATIVE


class ScriptedTextService:
    def __init__(self, intents, reply="LLM reply"):
        self.intents = list(intents)
        self.reply = reply
        self.extract_calls = []
        self.respond_calls = []
        self.active = 0
        self.max_active = 0

    async def extract(self, message, context=None):
        self.extract_calls.append(message)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.01)
            item = self.intents.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        finally:
            self.active -= 1

    async def respond(self, intent, result, original_message):
        self.respond_calls.append((intent, result, original_message))
        return self.reply


class MemoryTaskStore:
    def __init__(self, fail_titles=()):
        self.fail_titles = set(fail_titles)
        self.created = []

    async def create_task(self, payload):
        if payload["name"] in self.fail_titles:
            raise RuntimeError("tududi 500")
        self.created.append(payload["name"])
        return {"id": len(self.created)}


class MemoryNoteStore:
    async def append_task(self, task):
        return None

    async def create_knowledge_note(self, note):
        return "Knowledge/x.md"


class EmptySearch:
    async def query(self, text):
        return {"found": False, "results": [], "formatted": ""}


class RecordingChannel:
    def __init__(self, fail_status=False, fail_edit=False):
        self.fail_status = fail_status
        self.fail_edit = fail_edit
        self.statuses = []
        self.edits = []
        self.sent = []

    async def send_status_message(self, user_id, text):
        if self.fail_status:
            raise ConnectionError("telegram down")
        self.statuses.append(text)
        return f"msg-{len(self.statuses)}"

    async def edit_status_message(self, user_id, message_id, text):
        if self.fail_edit:
            raise ConnectionError("message too old")
        self.edits.append((message_id, text))

    async def send_message(self, user_id, text):
        self.sent.append(text)


def _build(tmp_path, intents, *, fail_titles=(), max_correction_rounds=3):
    text_service = ScriptedTextService(intents)
    task_store = MemoryTaskStore(fail_titles)
    state_store = ConversationStateStore(path=tmp_path / "state.json", flush_delay_sec=60)
    orchestrator = Orchestrator(
        extractor=IntentExtractor(text_service),
        dispatcher=ActionDispatcher(
            task_store=task_store,
            note_store=MemoryNoteStore(),
            knowledge_search=EmptySearch(),
        ),
        responder=ResponseSynthesizer(text_service),
        state_store=state_store,
        interpreter=ReplyInterpreter(),
        max_correction_rounds=max_correction_rounds,
    )
    return orchestrator, text_service, task_store, state_store


def _say(orchestrator, *texts, channel=None, user_id="u1"):
    channel = channel or RecordingChannel()

    async def scenario():
        return [await orchestrator.handle_message(user_id, t, channel) for t in texts]

    return asyncio.run(scenario()), channel


def _tentative_task(title="Kirim laporan"):
    return ExtractedIntent(
        kind="task",
        confidence=0.5,
        needs_confirmation=True,
        confirmation_reason="not sure about the deadline",
        tasks=[{"title": title}],
    )


def _story(*titles):
    return ExtractedIntent(
        kind="story",
        confidence=0.9,
        summary="cerita hari ini",
        potential_tasks=[{"title": t, "sequence_order": i} for i, t in enumerate(titles, 1)],
        people_mentioned=[{"name": "Budi"}],
    )


class TestTentativeFlow:
    def test_nothing_dispatched_until_confirmed(self, tmp_path):
        orch, llm, tasks, state = _build(tmp_path, [_tentative_task()])

        (prompt,), _ = _say(orch, "kirim laporan kapan-kapan")
        assert "Kirim laporan" in prompt
        assert "not sure about the deadline" in prompt
        assert tasks.created == []
        assert state.get("u1").type == TENTATIVE

        (reply,), _ = _say(orch, "iya")
        assert reply == "LLM reply"
        assert tasks.created == ["Kirim laporan"]
        assert len(llm.extract_calls) == 1
        assert llm.respond_calls[0][2] == "kirim laporan kapan-kapan"
        assert llm.respond_calls[0][0].needs_confirmation is False
        assert state.get("u1") is None

    def test_negative_cancels(self, tmp_path):
        orch, _, tasks, state = _build(tmp_path, [_tentative_task()])
        replies, _ = _say(orch, "kirim laporan", "gak")

        assert replies[1] == CANCELLED_MESSAGE
        assert tasks.created == []
        assert state.get("u1") is None

    def test_correction_is_reprocessed(self, tmp_path):
        corrected = ExtractedIntent(kind="task", confidence=0.9, tasks=[{"title": "Kirim laporan besok"}])
        orch, llm, tasks, state = _build(tmp_path, [_tentative_task(), corrected])
        replies, _ = _say(orch, "kirim laporan", "maksudnya besok jam 3")

        assert replies[1] == "LLM reply"
        assert llm.extract_calls == ["kirim laporan", "maksudnya besok jam 3"]
        assert tasks.created == ["Kirim laporan besok"]
        assert state.get("u1") is None

    def test_corrections_are_bounded(self, tmp_path):
        orch, llm, tasks, state = _build(
            tmp_path, [_tentative_task(), _tentative_task()], max_correction_rounds=1
        )
        replies, _ = _say(orch, "kirim laporan", "bukan itu", "masih salah paham")

        assert state.get("u1") is None
        assert replies[2] == GIVE_UP_MESSAGE
        assert len(llm.extract_calls) == 2
        assert tasks.created == []

    def test_confirmed_story_goes_to_selection(self, tmp_path):
        story = _story("A", "B")
        story.needs_confirmation = True
        orch, _, tasks, state = _build(tmp_path, [story])
        replies, _ = _say(orch, "panjang ceritanya", "ya")

        assert "1. A" in replies[1]
        assert state.get("u1").type == STORY_CONFIRMATION
        assert tasks.created == []


class TestStoryFlow:
    def test_subset_selection(self, tmp_path):
        orch, _, tasks, state = _build(tmp_path, [_story("A", "B", "C")])
        (prompt,), _ = _say(orch, "hari ini capek banget...")

        assert "1. A" in prompt and "3. C" in prompt
        assert tasks.created == []

        (summary,), _ = _say(orch, "1,3")
        assert tasks.created == ["A", "C"]
        assert "Created 2 task(s)" in summary
        assert state.get("u1") is None

    def test_invalid_selection_keeps_state(self, tmp_path):
        orch, _, tasks, state = _build(tmp_path, [_story("A", "B", "C")])
        replies, _ = _say(orch, "cerita", "5")

        assert "didn't catch" in replies[1]
        assert state.get("u1").type == STORY_CONFIRMATION

        (skipped,), _ = _say(orch, "skip")
        assert skipped == NO_TASKS_MESSAGE
        assert tasks.created == []
        assert state.get("u1") is None

    def test_all_with_partial_failure(self, tmp_path):
        orch, _, tasks, _ = _build(tmp_path, [_story("A", "B", "C")], fail_titles={"B"})
        replies, _ = _say(orch, "cerita", "all")

        assert tasks.created == ["A", "C"]
        assert "Created 2 task(s)" in replies[1]
        assert "1 item(s) failed" in replies[1]
        assert "tududi 500" in replies[1]

    def test_story_without_candidates_is_answered(self, tmp_path):
        orch, llm, _, state = _build(tmp_path, [_story()])
        (reply,), _ = _say(orch, "cuma cerita")

        assert reply == "LLM reply"
        assert llm.respond_calls[0][1].action_taken == "none"
        assert state.get("u1") is None


class TestDirectFlow:
    def test_partial_failure_is_reported_after_llm_reply(self, tmp_path):
        intent = ExtractedIntent(kind="task", tasks=[{"title": "A"}, {"title": "B"}])
        orch, _, tasks, _ = _build(tmp_path, [intent], fail_titles={"B"})
        (reply,), _ = _say(orch, "A dan B")

        assert reply.startswith("LLM reply")
        assert "1 item(s) failed" in reply
        assert tasks.created == ["A"]


class TestErrorsAndStatus:
    def test_quota_error_message(self, tmp_path):
        orch, _, _, _ = _build(tmp_path, [RuntimeError("429 Too Many Requests")])
        (reply,), channel = _say(orch, "halo")

        assert reply == QUOTA_USER_MESSAGE
        assert channel.statuses == [STATUS_TEXT]
        assert channel.edits == [("msg-1", QUOTA_USER_MESSAGE)]

    def test_generic_error_message(self, tmp_path):
        orch, _, _, _ = _build(tmp_path, [ValueError("model returned nonsense")])
        (reply,), _ = _say(orch, "halo")

        assert reply.startswith("❌ Sorry, I couldn't process that message.")
        assert "model returned nonsense" in reply

    def test_status_failure_falls_back_to_send(self, tmp_path):
        orch, _, _, _ = _build(tmp_path, [ExtractedIntent(kind="greeting")])
        (reply,), channel = _say(orch, "halo", channel=RecordingChannel(fail_status=True))

        assert channel.sent == [reply]
        assert channel.edits == []

    def test_edit_failure_falls_back_to_send(self, tmp_path):
        orch, _, _, _ = _build(tmp_path, [ExtractedIntent(kind="greeting")])
        (reply,), channel = _say(orch, "halo", channel=RecordingChannel(fail_edit=True))

        assert channel.sent == [reply]

    def test_same_user_messages_are_serialised(self, tmp_path):
        greetings = [ExtractedIntent(kind="greeting") for _ in range(3)]
        orch, llm, _, _ = _build(tmp_path, greetings)
        channel = RecordingChannel()

        async def scenario():
            return await asyncio.gather(
                *(orch.handle_message("u1", f"halo {i}", channel) for i in range(3))
            )

        replies = asyncio.run(scenario())
        assert replies == ["LLM reply"] * 3
        assert llm.max_active == 1
        assert orch.active_locks == 0

    def test_int_and_str_user_ids_share_one_lock(self, tmp_path):
        greetings = [ExtractedIntent(kind="greeting") for _ in range(2)]
        orch, llm, _, _ = _build(tmp_path, greetings)
        channel = RecordingChannel()

        async def scenario():
            await asyncio.gather(
                orch.handle_message(42, "halo", channel),
                orch.handle_message("42", "halo lagi", channel),
            )

        asyncio.run(scenario())
        assert llm.max_active == 1
        assert orch.active_locks == 0

    def test_locks_are_released_for_many_users(self, tmp_path):
        greetings = [ExtractedIntent(kind="greeting") for _ in range(5)]
        orch, _, _, _ = _build(tmp_path, greetings)
        channel = RecordingChannel()

        async def scenario():
            for i in range(5):
                await orch.handle_message(f"user-{i}", "halo", channel)

        asyncio.run(scenario())
        assert orch.active_locks == 0
