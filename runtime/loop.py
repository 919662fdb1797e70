import asyncio
from typing import Any, Callable, Iterable, Optional

from runtime.bootstrap import AppRuntime
from services.channel import ConsoleChannel, ReplyChannel


class ConsoleLoop:
    """
    终端 REPL：每行输入就是 user_id 发来的一条消息。
    /state 打印会话状态统计，/quit 退出；退出时等实体登记收尾并把状态落盘。
    """

    def __init__(
        self,
        runtime: AppRuntime,
        *,
        user_id: Any = "console",
        channel: Optional[ReplyChannel] = None,
        reader: Optional[Callable[[str], str]] = None,
        prompt: str = "🧑 ",
    ):
        self.runtime = runtime
        self.user_id = user_id
        self.channel = channel or ConsoleChannel()
        self.reader = reader or input
        self.prompt = prompt

    async def handle_line(self, line: str) -> bool:
        """处理一行输入，返回 False 表示该退出了。"""

        text = line.strip()
        if not text:
            return True
        if text == "/quit":
            return False
        if text == "/state":
            print(f"[runtime/loop.py] 📊 会话状态：{self.runtime.state_store.stats()}")
            return True
        await self.runtime.orchestrator.handle_message(self.user_id, text, self.channel)
        return True

    async def run_lines(self, lines: Iterable[str]) -> None:
        await self.runtime.start()
        try:
            for line in lines:
                if not await self.handle_line(line):
                    break
        finally:
            await self.runtime.shutdown()

    async def run(self) -> None:
        await self.runtime.start()
        print(f"[runtime/loop.py] 💬 控制台已就绪（user_id={self.user_id}），输入 /quit 退出。")
        try:
            while True:
                try:
                    line = await asyncio.to_thread(self.reader, self.prompt)
                except EOFError:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            await self.runtime.shutdown()
            print("[runtime/loop.py] 👋 控制台已退出。")
