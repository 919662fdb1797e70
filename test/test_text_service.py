import asyncio
import json
from urllib.error import HTTPError

import pytest

from agents.errors import (
    GENERIC_USER_MESSAGE,
    QUOTA_USER_MESSAGE,
    ExtractionFailure,
    ProviderChainExhausted,
    is_quota_error,
    user_message_for_error,
)
from intents.types import ActionResult, ExtractedIntent
from llm.client import LLMClient
from llm.text_service import TextService


class ScriptedProvider(LLMClient):
    def __init__(self, name, outputs):
        self.name = name
        self.outputs = list(outputs)
        self.calls = 0

    def complete(self, messages, *, options=None):
        self.calls += 1
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return out


GREETING = json.dumps({"type": "greeting", "confidence": 0.9, "needs_confirmation": False})


class TestProviderFallback:
    def test_first_healthy_provider_wins(self):
        first = ScriptedProvider("claude", [GREETING])
        second = ScriptedProvider("openai", [GREETING])
        intent = asyncio.run(TextService([first, second]).extract("halo"))

        assert intent.kind == "greeting"
        assert (first.calls, second.calls) == (1, 0)

    def test_falls_through_errors_and_bad_output(self):
        first = ScriptedProvider("claude", [RuntimeError("429 rate limit")])
        second = ScriptedProvider("openai", ["not json at all"])
        third = ScriptedProvider("megallm", [GREETING])

        intent = asyncio.run(TextService([first, second, third]).extract("halo"))
        assert intent.kind == "greeting"
        assert third.calls == 1

    def test_all_fail_lists_every_provider(self):
        first = ScriptedProvider("claude", [RuntimeError("boom")])
        second = ScriptedProvider("openai", [TimeoutError("slow")])

        with pytest.raises(ProviderChainExhausted) as excinfo:
            asyncio.run(TextService([first, second]).extract("halo"))
        message = str(excinfo.value)
        assert "claude" in message and "openai" in message
        assert [name for name, _ in excinfo.value.errors] == ["claude", "openai"]

    def test_no_providers_is_exhausted_immediately(self):
        with pytest.raises(ProviderChainExhausted, match="no LLM provider configured"):
            asyncio.run(TextService([]).extract("halo"))

    def test_empty_response_text_counts_as_failure(self):
        first = ScriptedProvider("claude", ["   "])
        second = ScriptedProvider("openai", ["Halo juga! 👋"])
        text = asyncio.run(
            TextService([first, second]).respond(
                ExtractedIntent(kind="greeting"), ActionResult(action_taken="none"), "halo"
            )
        )
        assert text == "Halo juga! 👋"


class TestErrorMapping:
    def test_quota_markers(self):
        assert is_quota_error(RuntimeError("Error 429: Too Many Requests"))
        assert is_quota_error(RuntimeError("RESOURCE_EXHAUSTED"))
        assert not is_quota_error(RuntimeError("connection reset"))

    def test_quota_found_through_cause_chain(self):
        exhausted = ProviderChainExhausted([("claude", RuntimeError("You exceeded your current quota"))])
        try:
            raise ExtractionFailure("could not extract intent") from exhausted
        except ExtractionFailure as exc:
            assert is_quota_error(exc)
            assert user_message_for_error(exc) == QUOTA_USER_MESSAGE

    def test_http_429_status(self):
        err = HTTPError("https://api.example.com", 429, "slow down", hdrs=None, fp=None)
        assert is_quota_error(err)

    def test_generic_message_contains_error_text(self):
        message = user_message_for_error(ValueError("vault missing"))
        assert message.startswith(GENERIC_USER_MESSAGE)
        assert "vault missing" in message
