# services/channel.py
from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4


class ReplyChannel:
    """往用户那边发消息的出口；状态消息可以原地改写。"""

    async def send_message(self, user_id: Any, text: str) -> None:
        raise NotImplementedError

    async def send_status_message(self, user_id: Any, text: str) -> Optional[str]:
        raise NotImplementedError

    async def edit_status_message(self, user_id: Any, message_id: str, text: str) -> None:
        raise NotImplementedError


class ConsoleChannel(ReplyChannel):
    """终端版本：直接 print，顺带记一份 transcript 方便调试。"""

    def __init__(self, *, prefix: str = "🤖"):
        self.prefix = prefix
        self.transcript: List[str] = []

    async def send_message(self, user_id: Any, text: str) -> None:
        self.transcript.append(text)
        print(f"{self.prefix} {text}")

    async def send_status_message(self, user_id: Any, text: str) -> Optional[str]:
        message_id = uuid4().hex[:8]
        print(f"{self.prefix} {text}")
        return message_id

    async def edit_status_message(self, user_id: Any, message_id: str, text: str) -> None:
        self.transcript.append(text)
        print(f"{self.prefix} {text}")
