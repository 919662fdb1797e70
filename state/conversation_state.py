from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from agents.errors import PersistenceFailure
from state.pending import PendingInteraction


class ConversationStateStore:
    """按用户保存「待回答的澄清」的可落盘仓库。

    - 每个用户最多一条 PendingInteraction，set 直接覆盖
    - get 会过滤超过 ttl 的条目（即使 prune 还没跑）
    - 写盘做了去抖（flush_delay 内合并）+ 原子替换（临时文件 + os.replace）
    - 读写失败只打日志，内存中的状态始终是当前进程的权威来源
    """

    def __init__(
        self,
        *,
        path: str | Path,
        ttl_sec: float = 30 * 60,
        prune_interval_sec: float = 10 * 60,
        flush_delay_sec: float = 1.0,
        clock: Callable[[], float] = time.time,
        autoload: bool = True,
    ):
        self.path = Path(path)
        self.ttl_sec = ttl_sec
        self.prune_interval_sec = prune_interval_sec
        self.flush_delay_sec = flush_delay_sec
        self._clock = clock

        self._states: Dict[str, PendingInteraction] = {}
        self._dirty = False
        self._flush_lock = asyncio.Lock()
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._flush_loop: Optional[asyncio.AbstractEventLoop] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._prune_task: Optional[asyncio.Task] = None

        if autoload:
            self.load()

    # ---------- 对外接口 ----------
    def set(self, user_id: Any, state: PendingInteraction) -> PendingInteraction:
        key = str(user_id)
        state.created_at = self._clock()
        replaced = key in self._states
        self._states[key] = state
        print(
            f"[state/conversation_state.py] 📌 用户 {key} 的会话状态已设置为 {state.type}"
            f"{'（覆盖了旧状态）' if replaced else ''}。"
        )
        self._mark_dirty()
        return state

    def get(self, user_id: Any) -> Optional[PendingInteraction]:
        key = str(user_id)
        state = self._states.get(key)
        if state is None:
            return None
        if self._is_expired(state):
            print(
                f"[state/conversation_state.py] ⌛ 用户 {key} 的 {state.type} 状态已过期，按不存在处理。"
            )
            self.clear(key)
            return None
        return state

    def has_pending(self, user_id: Any) -> bool:
        return self.get(user_id) is not None

    def clear(self, user_id: Any) -> bool:
        key = str(user_id)
        removed = self._states.pop(key, None)
        if removed is None:
            return False
        print(f"[state/conversation_state.py] 🧽 用户 {key} 的会话状态已清除。")
        self._mark_dirty()
        return True

    def prune(self) -> int:
        now = self._clock()
        expired = [key for key, state in self._states.items() if self._is_expired(state, now)]
        for key in expired:
            del self._states[key]
        if expired:
            print(f"[state/conversation_state.py] 🧹 清理了 {len(expired)} 条过期会话状态。")
            self._mark_dirty()
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "active_states": len(self._states),
            "ttl_sec": self.ttl_sec,
            "path": str(self.path),
            "dirty": self._dirty,
        }

    # ---------- 生命周期 ----------
    def load(self) -> int:
        if not self.path.exists():
            return 0
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            print(
                f"[state/conversation_state.py] ⚠️ 读取 {self.path} 失败：{type(exc).__name__}:{exc}，以空状态启动。"
            )
            return 0
        if not isinstance(raw, dict):
            print(f"[state/conversation_state.py] ⚠️ {self.path} 不是 JSON 对象，已忽略。")
            return 0

        now = self._clock()
        dropped = 0
        for user_id, data in raw.items():
            if not isinstance(data, dict):
                print(f"[state/conversation_state.py] ⚠️ 用户 {user_id} 的状态不是 JSON 对象，已跳过。")
                dropped += 1
                continue
            try:
                state = PendingInteraction.from_dict(data)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                print(
                    f"[state/conversation_state.py] ⚠️ 用户 {user_id} 的状态无法解析：{type(exc).__name__}:{exc}，已跳过。"
                )
                dropped += 1
                continue
            if self._is_expired(state, now):
                dropped += 1
                continue
            self._states[str(user_id)] = state
        if dropped:
            self._dirty = True
        print(
            f"[state/conversation_state.py] 🗂️ 从 {self.path} 恢复 {len(self._states)} 条会话状态，丢弃 {dropped} 条。"
        )
        return len(self._states)

    async def start(self) -> None:
        if self._prune_task is None or self._prune_task.done():
            self._prune_task = asyncio.create_task(self._prune_forever())

    async def shutdown(self) -> None:
        if self._prune_task is not None:
            self._prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._prune_task
            self._prune_task = None
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush()

    async def flush(self) -> bool:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        async with self._flush_lock:
            if not self._dirty:
                return True
            self._dirty = False
            payload = self._snapshot()
            try:
                await asyncio.to_thread(self._write_atomic, payload)
            except PersistenceFailure as exc:
                self._dirty = True
                print(
                    f"[state/conversation_state.py] ⚠️ 会话状态落盘失败：{exc}，继续使用内存状态。"
                )
                return False
            return True

    def flush_now(self) -> bool:
        if not self._dirty:
            return True
        self._dirty = False
        try:
            self._write_atomic(self._snapshot())
        except PersistenceFailure as exc:
            self._dirty = True
            print(
                f"[state/conversation_state.py] ⚠️ 会话状态落盘失败：{exc}，继续使用内存状态。"
            )
            return False
        return True

    # ---------- 内部 ----------
    def _is_expired(self, state: PendingInteraction, now: Optional[float] = None) -> bool:
        current = self._clock() if now is None else now
        return current - state.created_at > self.ttl_sec

    def _snapshot(self) -> Dict[str, Any]:
        return {key: state.to_dict() for key, state in self._states.items()}

    def _mark_dirty(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有事件循环（脚本/同步测试）时直接写
            self.flush_now()
            return
        if self._flush_handle is not None and self._flush_loop is not loop:
            self._flush_handle = None
        if self._flush_handle is None:
            self._flush_loop = loop
            self._flush_handle = loop.call_later(self.flush_delay_sec, self._start_scheduled_flush)

    def _start_scheduled_flush(self) -> None:
        self._flush_handle = None
        self._flush_task = asyncio.ensure_future(self.flush())

    def _write_atomic(self, payload: Dict[str, Any]) -> None:
        try:
            self._replace_file(payload)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure(f"cannot write {self.path}: {type(exc).__name__}: {exc}") from exc

    def _replace_file(self, payload: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    async def _prune_forever(self) -> None:
        while True:
            await asyncio.sleep(self.prune_interval_sec)
            self.prune()
