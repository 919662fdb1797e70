# agents/orchestrator.py
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from agents.dispatcher import ActionDispatcher
from agents.errors import user_message_for_error
from agents.extractor import IntentExtractor
from agents.reply_interpreter import ReplyInterpreter
from agents.responder import (
    CANCELLED_MESSAGE,
    GIVE_UP_MESSAGE,
    NO_TASKS_MESSAGE,
    ResponseSynthesizer,
    format_batch_summary,
    format_story_prompt,
    format_tentative_prompt,
)
from intents.types import ExtractedIntent, TaskItem
from services.channel import ReplyChannel
from state.conversation_state import ConversationStateStore
from state.pending import STORY_CONFIRMATION, TENTATIVE, PendingInteraction

STATUS_TEXT = "🤔 Let me think..."
INVALID_SELECTION_PREFIX = "🤔 I didn't catch which ones you want."


class Orchestrator:
    """
    每条入站消息的总入口：

    - 用户没有挂起的提问：抽取 -> (确认 | story 选择 | 执行 + 回复)
    - 用户在回答 tentative 确认：yes 执行存着的 intent，no 取消，其余当作更正重新抽取
    - 用户在回答 story 选择：按序号只创建选中的任务

    同一个 user 的消息串行处理，不同 user 之间互不阻塞。
    """

    def __init__(
        self,
        *,
        extractor: IntentExtractor,
        dispatcher: ActionDispatcher,
        responder: ResponseSynthesizer,
        state_store: ConversationStateStore,
        interpreter: ReplyInterpreter,
        max_correction_rounds: int = 3,
    ):
        self.extractor = extractor
        self.dispatcher = dispatcher
        self.responder = responder
        self.state_store = state_store
        self.interpreter = interpreter
        self.max_correction_rounds = max_correction_rounds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: Any) -> AsyncIterator[None]:
        """同一 user 串行；没人排队时把锁删掉，避免 _locks 无限增长。"""

        key = str(user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_holders[key] = self._lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[key] -= 1
            if self._lock_holders[key] == 0:
                del self._lock_holders[key]
                del self._locks[key]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    # ===== 对外入口 =====
    async def handle_message(
        self,
        user_id: Any,
        text: str,
        channel: ReplyChannel,
        *,
        source: str = "text",
    ) -> str:
        async with self._user_lock(user_id):
            status_id = await self._send_status(channel, user_id)
            try:
                reply = await self._process(user_id, text, source)
            except Exception as exc:  # noqa: BLE001 - 统一转成一条用户可见的错误回复
                print(f"[agents/orchestrator.py] ❌ 处理 user={user_id} 的消息失败：{type(exc).__name__}: {exc}")
                reply = user_message_for_error(exc)
            await self._deliver(channel, user_id, status_id, reply)
            return reply

    # ===== 状态机 =====
    async def _process(self, user_id: Any, text: str, source: str) -> str:
        pending = self.state_store.get(user_id)
        if pending is None:
            return await self._handle_new(user_id, text, source)
        if pending.type == TENTATIVE:
            return await self._handle_tentative_reply(user_id, text, source, pending)
        if pending.type == STORY_CONFIRMATION:
            return await self._handle_story_reply(user_id, text, pending)
        print(f"[agents/orchestrator.py] ⚠️ user={user_id} 的挂起状态类型未知：{pending.type}，已清除。")
        self.state_store.clear(user_id)
        return await self._handle_new(user_id, text, source)

    async def _handle_new(self, user_id: Any, text: str, source: str, *, correction_round: int = 0) -> str:
        intent = await self.extractor.extract(text, source=source)
        return await self._route(user_id, intent, text, correction_round=correction_round)

    async def _route(
        self,
        user_id: Any,
        intent: ExtractedIntent,
        original_message: str,
        *,
        correction_round: int = 0,
    ) -> str:
        if intent.needs_confirmation:
            self.state_store.set(
                user_id,
                PendingInteraction.tentative(
                    extracted=intent,
                    reason=intent.confirmation_reason,
                    original_message=original_message,
                    correction_round=correction_round,
                ),
            )
            return format_tentative_prompt(intent, intent.confirmation_reason)

        if intent.kind == "story" and intent.potential_tasks:
            self.state_store.set(
                user_id,
                PendingInteraction.story(
                    summary=intent.summary,
                    potential_tasks=intent.potential_tasks,
                    people_mentioned=intent.people_mentioned,
                ),
            )
            return format_story_prompt(intent.summary, intent.potential_tasks)

        result = await self.dispatcher.dispatch(intent, context=original_message)
        return await self.responder.respond(intent, result, original_message)

    async def _handle_tentative_reply(
        self, user_id: Any, text: str, source: str, pending: PendingInteraction
    ) -> str:
        verdict = self.interpreter.classify_confirmation(text)
        self.state_store.clear(user_id)

        if verdict == "yes":
            print(f"[agents/orchestrator.py] ✅ user={user_id} 确认了挂起的 {pending.extracted.kind}。")
            return await self._route(user_id, pending.extracted.confirmed(), pending.original_message)
        if verdict == "no":
            print(f"[agents/orchestrator.py] 🚫 user={user_id} 取消了挂起的请求。")
            return CANCELLED_MESSAGE

        next_round = pending.correction_round + 1
        if next_round > self.max_correction_rounds:
            print(f"[agents/orchestrator.py] 🛑 user={user_id} 连续更正 {pending.correction_round} 次，放弃本轮。")
            return GIVE_UP_MESSAGE
        print(f"[agents/orchestrator.py] ✏️ user={user_id} 发来更正（第 {next_round} 次），重新抽取。")
        return await self._handle_new(user_id, text, source, correction_round=next_round)

    async def _handle_story_reply(self, user_id: Any, text: str, pending: PendingInteraction) -> str:
        reply = self.interpreter.parse_story_reply(text, len(pending.potential_tasks))
        if reply.action == "skip":
            self.state_store.clear(user_id)
            return NO_TASKS_MESSAGE
        if reply.action == "invalid":
            return f"{INVALID_SELECTION_PREFIX}\n\n" + format_story_prompt(pending.summary, pending.potential_tasks)

        selected = [pending.potential_tasks[i - 1] for i in reply.indices]
        intent = ExtractedIntent(
            kind="task",
            confidence=1.0,
            tasks=[TaskItem.from_potential(p) for p in selected],
            people_mentioned=list(pending.people_mentioned),
        )
        self.state_store.clear(user_id)
        print(f"[agents/orchestrator.py] 📌 user={user_id} 从 story 中选择了 {reply.indices}。")
        result = await self.dispatcher.dispatch(intent, context=pending.summary)
        return format_batch_summary(result)

    # ===== 状态消息 =====
    async def _send_status(self, channel: ReplyChannel, user_id: Any):
        try:
            return await channel.send_status_message(user_id, STATUS_TEXT)
        except Exception as exc:  # noqa: BLE001 - 没有状态消息也照常处理
            print(f"[agents/orchestrator.py] ⚠️ 发送状态消息失败，继续处理：{exc}")
            return None

    async def _deliver(self, channel: ReplyChannel, user_id: Any, status_id: Any, reply: str) -> None:
        if status_id is not None:
            try:
                await channel.edit_status_message(user_id, status_id, reply)
                return
            except Exception as exc:  # noqa: BLE001
                print(f"[agents/orchestrator.py] ⚠️ 改写状态消息失败，改为直接发送：{exc}")
        try:
            await channel.send_message(user_id, reply)
        except Exception as exc:  # noqa: BLE001 - 回复文本仍会返回给调用方
            print(f"[agents/orchestrator.py] ❌ 回复 user={user_id} 失败：{exc}")
