# runtime/bootstrap.py
from __future__ import annotations
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, List, TextIO
import atexit
import sys

from agents.dispatcher import ActionDispatcher
from agents.extractor import IntentExtractor
from agents.orchestrator import Orchestrator
from agents.reply_interpreter import ReplyInterpreter
from agents.responder import ResponseSynthesizer
from config.settings import AppSettings, load_settings
from llm.client import LLMClient, build_provider_chain, build_request_options
from llm.text_service import TextService
from services.entities import JsonEntityTracker
from services.knowledge_search import FullTextKnowledgeSearch, KnowledgeSearch
from services.note_store import NoteStore, ObsidianNoteStore
from services.task_store import TaskStore, TududiClient
from state.conversation_state import ConversationStateStore


@dataclass
class RuntimeConfig:
    settings: Optional[AppSettings] = None  # 为空时从环境变量读取

    # 路径覆盖（命令行参数优先于环境变量）
    data_dir: Optional[str] = None
    state_path: Optional[str] = None
    vocabulary_path: Optional[str] = None
    vault_path: Optional[str] = None

    terminal_log: Optional[bool] = None

    # 测试 / 嵌入场景可以直接注入协作方
    providers: Optional[List[LLMClient]] = None
    task_store: Optional[TaskStore] = None
    note_store: Optional[NoteStore] = None
    knowledge_search: Optional[KnowledgeSearch] = None


@dataclass
class AppRuntime:
    settings: AppSettings
    text_service: TextService
    people: JsonEntityTracker
    projects: JsonEntityTracker
    task_store: TaskStore
    note_store: NoteStore
    knowledge_search: KnowledgeSearch
    extractor: IntentExtractor
    dispatcher: ActionDispatcher
    responder: ResponseSynthesizer
    interpreter: ReplyInterpreter
    state_store: ConversationStateStore
    orchestrator: Orchestrator

    async def start(self) -> None:
        await self.state_store.start()

    async def shutdown(self) -> None:
        print("[runtime/bootstrap.py] 🧹 等待实体登记任务收尾…")
        await self.dispatcher.drain()
        await self.state_store.shutdown()
        print("[runtime/bootstrap.py] ✅ 运行时已关闭，会话状态已落盘。")


class _TeeStream:
    def __init__(self, stream: TextIO, log_file: TextIO, log_path: Path):
        self._stream = stream
        self._log_file = log_file
        self._tee_log_path = log_path

    def write(self, message: str) -> int:
        self._log_file.write(message)
        return self._stream.write(message)

    def flush(self) -> None:
        self._log_file.flush()
        self._stream.flush()

    def isatty(self) -> bool:
        return getattr(self._stream, "isatty", lambda: False)()

    @property
    def encoding(self) -> str | None:
        return getattr(self._stream, "encoding", None)


def _enable_terminal_logging(data_dir: Path) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    log_path = data_dir / "terminal.log"
    log_file = log_path.open("a", encoding="utf-8")

    def _wrap(stream: TextIO) -> TextIO:
        if getattr(stream, "_tee_log_path", None) == log_path:
            return stream
        return _TeeStream(stream, log_file, log_path)

    sys.stdout = _wrap(sys.stdout)
    sys.stderr = _wrap(sys.stderr)
    atexit.register(log_file.close)
    print(f"[runtime/bootstrap.py] 🧾 终端日志将写入 {log_path}。")


def bootstrap(cfg: RuntimeConfig) -> AppRuntime:
    settings = cfg.settings or load_settings()
    data_dir = Path(cfg.data_dir or settings.data_dir)
    state_path = cfg.state_path or (
        str(data_dir / "conversation_state.json") if cfg.data_dir else settings.state_path
    )
    vault_path = cfg.vault_path or settings.obsidian_vault_path
    terminal_log = settings.terminal_log if cfg.terminal_log is None else cfg.terminal_log
    if terminal_log:
        _enable_terminal_logging(data_dir)

    # === LLM ===
    providers = cfg.providers if cfg.providers is not None else build_provider_chain(settings)
    if not providers:
        print("[runtime/bootstrap.py] ⚠️ 没有任何可用的 LLM 供应商，所有消息都会返回错误提示。")
    options = build_request_options(settings)
    text_service = TextService(
        providers,
        extraction_options=replace(options, temperature=0.1),
        response_options=options,
        timezone=settings.timezone,
    )
    print(f"[runtime/bootstrap.py] 🧠 TextService 已就绪，供应商顺序：{text_service.provider_names}。")

    # === 协作方 ===
    people = JsonEntityTracker(data_dir / "people.json", kind="people")
    projects = JsonEntityTracker(data_dir / "projects.json", kind="projects")
    if cfg.task_store is not None:
        task_store = cfg.task_store
    else:
        if not settings.tududi_api_token:
            print("[runtime/bootstrap.py] ⚠️ 未配置 TUDUDI_API_TOKEN，创建任务大概率会失败。")
        task_store = TududiClient(
            api_url=settings.tududi_api_url,
            api_token=settings.tududi_api_token or "",
        )
    note_store = cfg.note_store or ObsidianNoteStore(
        vault_path, daily_notes_path=settings.obsidian_daily_notes_path
    )
    knowledge_search = cfg.knowledge_search or FullTextKnowledgeSearch(vault_path)
    print(f"[runtime/bootstrap.py] 🔌 协作方装配完成：vault={vault_path}，data_dir={data_dir}。")

    # === 流水线 ===
    extractor = IntentExtractor(text_service, people=people, projects=projects)
    dispatcher = ActionDispatcher(
        task_store=task_store,
        note_store=note_store,
        knowledge_search=knowledge_search,
        people=people,
        projects=projects,
    )
    responder = ResponseSynthesizer(text_service)
    interpreter = ReplyInterpreter(cfg.vocabulary_path or settings.reply_vocabulary_path)
    state_store = ConversationStateStore(
        path=state_path,
        ttl_sec=settings.state_ttl_sec,
        prune_interval_sec=settings.state_prune_interval_sec,
        flush_delay_sec=settings.state_flush_delay_sec,
    )
    orchestrator = Orchestrator(
        extractor=extractor,
        dispatcher=dispatcher,
        responder=responder,
        state_store=state_store,
        interpreter=interpreter,
        max_correction_rounds=settings.max_correction_rounds,
    )
    print(f"[runtime/bootstrap.py] 🚦 Orchestrator 已就绪，会话状态文件 {state_path}。")

    return AppRuntime(
        settings=settings,
        text_service=text_service,
        people=people,
        projects=projects,
        task_store=task_store,
        note_store=note_store,
        knowledge_search=knowledge_search,
        extractor=extractor,
        dispatcher=dispatcher,
        responder=responder,
        interpreter=interpreter,
        state_store=state_store,
        orchestrator=orchestrator,
    )
