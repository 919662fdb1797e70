# agents/responder.py
from __future__ import annotations

from typing import List, Optional

from agents.errors import ResponseFailure
from intents.types import ActionResult, ExtractedIntent, PotentialTask
from llm.text_service import TextService

CANCELLED_MESSAGE = "👌 Okay, cancelled. Nothing was saved."
NO_TASKS_MESSAGE = "👌 Got it, no tasks created."
GIVE_UP_MESSAGE = (
    "😅 I still couldn't get that right. Let's start over: "
    "please send the whole request again in one message."
)
STORY_INVALID_HINT = "Reply with the numbers (e.g. 1,3), \"all\", or \"skip\"."


class ResponseSynthesizer:
    """根据 (intent, 执行结果) 写回复；本身不改任何状态。"""

    def __init__(self, text_service: TextService):
        self.text_service = text_service

    async def respond(self, intent: ExtractedIntent, result: ActionResult, original_message: str) -> str:
        try:
            text = await self.text_service.respond(intent, result, original_message)
        except Exception as exc:
            print(f"[agents/responder.py] ❌ 生成回复失败：{type(exc).__name__}: {exc}")
            raise ResponseFailure(f"could not generate a reply: {exc}") from exc
        if not text or not text.strip():
            raise ResponseFailure("could not generate a reply: empty text")

        footnote = format_failure_footnote(result)
        if footnote:
            text = f"{text.rstrip()}\n\n{footnote}"
        return text


# ===== 确定性文案 =====

def format_failure_footnote(result: ActionResult) -> str:
    if not result.failed:
        return ""
    lines = [f"⚠️ {len(result.failed)} item(s) failed:"]
    for item in result.failed:
        lines.append(f"• {item.get('title') or '(untitled)'}: {item.get('error', 'unknown error')}")
    return "\n".join(lines)


def format_batch_summary(result: ActionResult) -> str:
    """story 选择之后的汇总：成功几条、失败几条，不走 LLM。"""

    if not result.created and not result.failed:
        return NO_TASKS_MESSAGE
    lines: List[str] = []
    if result.created:
        lines.append(f"✅ Created {len(result.created)} task(s):")
        lines.extend(f"• {item.get('title')}" for item in result.created)
    footnote = format_failure_footnote(result)
    if footnote:
        if lines:
            lines.append("")
        lines.append(footnote)
    return "\n".join(lines)


def format_story_prompt(summary: str, potential_tasks: List[PotentialTask]) -> str:
    lines = []
    if summary:
        lines.extend([f"📖 {summary}", ""])
    lines.append("I found some possible tasks in there:")
    for i, task in enumerate(potential_tasks, start=1):
        line = f"{i}. {task.title}"
        if task.due_date:
            line += f" (due: {task.due_date}{' ' + task.due_time if task.due_time else ''})"
        lines.append(line)
    lines.extend(["", f"Which ones should I create? {STORY_INVALID_HINT}"])
    return "\n".join(lines)


def describe_intent(intent: ExtractedIntent) -> str:
    if intent.kind == "task":
        titles = ", ".join(t.title for t in intent.tasks) or "(no title)"
        return f"create {len(intent.tasks)} task(s): {titles}"
    if intent.kind == "knowledge" and intent.knowledge is not None:
        return f"save a note \"{intent.knowledge.title}\" under {intent.knowledge.category}"
    if intent.kind == "question":
        return f"search your notes for \"{intent.query}\""
    if intent.kind == "story":
        return f"treat this as a story: {intent.summary}" if intent.summary else "treat this as a story"
    return f"reply to a {intent.kind}"


def format_tentative_prompt(intent: ExtractedIntent, reason: Optional[str] = None) -> str:
    lines = [f"🤔 Just to check, you want me to {describe_intent(intent)}?"]
    if reason:
        lines.append(f"({reason})")
    lines.extend(["", "Reply yes / no, or tell me what you meant."])
    return "\n".join(lines)
