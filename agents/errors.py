from __future__ import annotations

from typing import List, Optional, Tuple

QUOTA_MARKERS = (
    "429",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "quota",
    "resource_exhausted",
    "too many requests",
)

QUOTA_USER_MESSAGE = (
    "⏳ I'm getting too many requests right now (AI quota / rate limit reached).\n\n"
    "Please wait a minute and send that again."
)
GENERIC_USER_MESSAGE = "❌ Sorry, I couldn't process that message."


class AssistantError(Exception):
    """Base for every failure the pipeline reports to the user."""


class ExtractionFailure(AssistantError):
    pass


class ResponseFailure(AssistantError):
    pass


class PersistenceFailure(AssistantError):
    pass


class ProviderChainExhausted(AssistantError):
    """所有 LLM 供应商都失败时抛出，errors 里保留每一家的原始异常。"""

    def __init__(self, errors: List[Tuple[str, Exception]]):
        self.errors = list(errors)
        if not self.errors:
            message = "no LLM provider configured"
        else:
            message = "all LLM providers failed: " + "; ".join(
                f"{name}: {type(exc).__name__}: {exc}" for name, exc in self.errors
            )
        super().__init__(message)


def _error_chain(exc: BaseException) -> List[BaseException]:
    chain: List[BaseException] = []
    current: Optional[BaseException] = exc
    while current is not None and current not in chain:
        chain.append(current)
        if isinstance(current, ProviderChainExhausted):
            chain.extend(err for _, err in current.errors)
        current = current.__cause__ or current.__context__
    return chain


def is_quota_error(exc: BaseException) -> bool:
    for err in _error_chain(exc):
        text = f"{type(err).__name__} {err}".lower()
        if any(marker in text for marker in QUOTA_MARKERS):
            return True
        if getattr(err, "code", None) == 429 or getattr(err, "status", None) == 429:
            return True
    return False


def user_message_for_error(exc: BaseException) -> str:
    if is_quota_error(exc):
        return QUOTA_USER_MESSAGE
    return f"{GENERIC_USER_MESSAGE}\n\nError: {exc}"
