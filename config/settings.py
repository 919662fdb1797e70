from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple


def _get_env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_env_key(key: str) -> str | None:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


def _get_env_keys(*keys: str) -> Tuple[str, ...]:
    """逗号分隔的 API key 列表，按 keys 顺序取第一个非空的环境变量，保留大小写。"""

    for key in keys:
        raw = os.getenv(key)
        if raw and raw.strip():
            return tuple(part.strip() for part in raw.split(",") if part.strip())
    return ()


def _get_env_list(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class ProviderSettings:
    """单个 LLM 供应商的连接参数。"""

    name: str
    api_key: str | None = None
    base_url: str = ""
    model: str = ""
    # 多 key 轮换 + 按输入长度选模型（目前只有 gemini 用）
    api_keys: Tuple[str, ...] = ()
    model_short: str = ""
    model_medium: str = ""


@dataclass(frozen=True)
class AppSettings:
    # LLM：按顺序尝试的供应商列表（失败自动切到下一个）
    llm_providers: Tuple[str, ...] = ("claude",)
    claude: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="claude",
            base_url="https://api.anthropic.com",
            model="claude-3-5-sonnet-20241022",
        )
    )
    openai: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="openai", base_url="https://api.openai.com", model="gpt-4o-mini"
        )
    )
    megallm: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="megallm", base_url="https://ai.megallm.io", model="gpt-4o-mini"
        )
    )
    cliproxy: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="cliproxy", base_url="http://localhost:8317", model="gemini-2.5-flash"
        )
    )
    gemini: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="gemini",
            base_url="https://generativelanguage.googleapis.com",
            model="gemini-2.5-flash",
            model_short="gemini-2.5-flash-lite",
            model_medium="gemini-2.5-flash-lite",
        )
    )
    deepseek: ProviderSettings = field(
        default_factory=lambda: ProviderSettings(
            name="deepseek", base_url="https://api.deepseek.com", model="deepseek-chat"
        )
    )

    llm_timeout_connect: float = 5.0
    llm_timeout_read: float = 60.0

    llm_retries: int = 2
    llm_retry_backoff_base: float = 0.5

    llm_temperature: float = 0.7
    llm_max_tokens: int = 2048

    # 会话状态
    data_dir: str = "data"
    state_path: str = "data/conversation_state.json"
    state_ttl_sec: float = 30 * 60
    state_prune_interval_sec: float = 10 * 60
    state_flush_delay_sec: float = 1.0
    max_correction_rounds: int = 3
    reply_vocabulary_path: str | None = None

    # 外部协作方
    tududi_api_url: str = "http://localhost:3002"
    tududi_api_token: str | None = None
    obsidian_vault_path: str = "vault"
    obsidian_daily_notes_path: str = "Daily Notes"

    timezone: str = "Asia/Jakarta"
    terminal_log: bool = True

    def provider(self, name: str) -> ProviderSettings | None:
        key = {"gpt": "openai", "anthropic": "claude"}.get(name, name)
        value = getattr(self, key, None)
        return value if isinstance(value, ProviderSettings) else None


def _load_provider(name: str, *, key_env: str, url_env: str, model_env: str,
                   default_url: str, default_model: str) -> ProviderSettings:
    return ProviderSettings(
        name=name,
        api_key=_get_env_key(key_env),
        base_url=os.getenv(url_env, default_url),
        model=os.getenv(model_env, default_model),
    )


def _load_gemini() -> ProviderSettings:
    keys = _get_env_keys("GEMINI_API_KEYS", "GEMINI_API_KEY")
    return ProviderSettings(
        name="gemini",
        api_key=keys[0] if keys else None,
        api_keys=keys,
        base_url=os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
        model=os.getenv("GEMINI_MODEL_LONG", "gemini-2.5-flash"),
        model_short=os.getenv("GEMINI_MODEL_SHORT", "gemini-2.5-flash-lite"),
        model_medium=os.getenv("GEMINI_MODEL_MEDIUM", "gemini-2.5-flash-lite"),
    )


def load_settings() -> AppSettings:
    data_dir = os.getenv("DATA_DIR", "data")
    return AppSettings(
        llm_providers=_get_env_list("LLM_PROVIDERS", ("claude",)),
        claude=_load_provider(
            "claude",
            key_env="ANTHROPIC_API_KEY",
            url_env="CLAUDE_BASE_URL",
            model_env="CLAUDE_MODEL",
            default_url="https://api.anthropic.com",
            default_model="claude-3-5-sonnet-20241022",
        ),
        openai=_load_provider(
            "openai",
            key_env="OPENAI_API_KEY",
            url_env="OPENAI_BASE_URL",
            model_env="OPENAI_MODEL",
            default_url="https://api.openai.com",
            default_model="gpt-4o-mini",
        ),
        megallm=_load_provider(
            "megallm",
            key_env="MEGALLM_API_KEY",
            url_env="MEGALLM_BASE_URL",
            model_env="MEGALLM_MODEL",
            default_url="https://ai.megallm.io",
            default_model="gpt-4o-mini",
        ),
        cliproxy=_load_provider(
            "cliproxy",
            key_env="CLIPROXY_API_KEY",
            url_env="CLIPROXY_BASE_URL",
            model_env="CLIPROXY_MODEL",
            default_url="http://localhost:8317",
            default_model="gemini-2.5-flash",
        ),
        gemini=_load_gemini(),
        deepseek=_load_provider(
            "deepseek",
            key_env="DEEPSEEK_API_KEY",
            url_env="DEEPSEEK_BASE_URL",
            model_env="DEEPSEEK_MODEL",
            default_url="https://api.deepseek.com",
            default_model="deepseek-chat",
        ),
        llm_timeout_connect=_get_env_float("LLM_TIMEOUT_CONNECT", 5.0),
        llm_timeout_read=_get_env_float("LLM_TIMEOUT_READ", 60.0),
        llm_retries=_get_env_int("LLM_RETRIES", 2),
        llm_retry_backoff_base=_get_env_float("LLM_RETRY_BACKOFF_BASE", 0.5),
        llm_temperature=_get_env_float("LLM_TEMPERATURE", 0.7),
        llm_max_tokens=_get_env_int("LLM_MAX_TOKENS", 2048),
        data_dir=data_dir,
        state_path=os.getenv("STATE_PATH", os.path.join(data_dir, "conversation_state.json")),
        state_ttl_sec=_get_env_float("STATE_TTL_SEC", 30 * 60),
        state_prune_interval_sec=_get_env_float("STATE_PRUNE_INTERVAL_SEC", 10 * 60),
        state_flush_delay_sec=_get_env_float("STATE_FLUSH_DELAY_SEC", 1.0),
        max_correction_rounds=_get_env_int("MAX_CORRECTION_ROUNDS", 3),
        reply_vocabulary_path=_get_env_key("REPLY_VOCABULARY_PATH"),
        tududi_api_url=os.getenv("TUDUDI_API_URL", "http://localhost:3002"),
        tududi_api_token=_get_env_key("TUDUDI_API_TOKEN"),
        obsidian_vault_path=os.getenv("OBSIDIAN_VAULT_PATH", "vault"),
        obsidian_daily_notes_path=os.getenv("OBSIDIAN_DAILY_NOTES_PATH", "Daily Notes"),
        timezone=os.getenv("TIMEZONE", "Asia/Jakarta"),
        terminal_log=_get_env_bool("TERMINAL_LOG", True),
    )
