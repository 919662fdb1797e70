from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence
from urllib import request
from urllib.error import HTTPError, URLError


@dataclass(frozen=True)
class LLMTimeouts:
    connect: float = 5.0
    read: float = 60.0


@dataclass(frozen=True)
class LLMRetryPolicy:
    max_retries: int = 2
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)


@dataclass
class LLMRequestOptions:
    temperature: float = 0.7
    max_tokens: int = 2048
    timeouts: LLMTimeouts = field(default_factory=LLMTimeouts)
    retry_policy: LLMRetryPolicy = field(default_factory=LLMRetryPolicy)


class LLMClient:
    """抽象客户端：同步 complete + 线程池包装的异步 acomplete。"""

    name = "llm"

    def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        options: Optional[LLMRequestOptions] = None,
    ) -> str:
        raise NotImplementedError

    async def acomplete(
        self,
        messages: List[Dict[str, str]],
        *,
        options: Optional[LLMRequestOptions] = None,
    ) -> str:
        return await asyncio.to_thread(self.complete, messages, options=options)


class _HTTPChatClient(LLMClient):
    """带重试的 JSON-over-HTTP 基类，子类只负责 payload / header / 解析。"""

    endpoint = ""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        name: Optional[str] = None,
        default_options: Optional[LLMRequestOptions] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        if name:
            self.name = name
        self.default_options = default_options or LLMRequestOptions()

    def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        options: Optional[LLMRequestOptions] = None,
    ) -> str:
        opts = options or self.default_options
        payload = self._build_payload(messages, opts)
        data = self._request_with_retries(payload, opts)
        content = self._extract_content(data)
        if not content:
            raise ValueError(f"{self.name}: empty completion in response")
        return content

    def _build_payload(self, messages: List[Dict[str, str]], options: LLMRequestOptions) -> Dict[str, Any]:
        raise NotImplementedError

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def _request_with_retries(
        self, payload: Dict[str, Any], options: LLMRequestOptions, url: Optional[str] = None
    ) -> Dict[str, Any]:
        retry_policy = options.retry_policy
        last_exc: Optional[Exception] = None
        for attempt in range(retry_policy.max_retries + 1):
            try:
                return self._request(payload, options, url)
            except Exception as exc:  # noqa: BLE001 - 需要统一重试入口
                last_exc = exc
                if not self._should_retry(exc, retry_policy, attempt):
                    raise
                delay = retry_policy.backoff_base * (retry_policy.backoff_factor ** attempt)
                print(
                    f"[llm/client.py] 🔁 {self.name} 请求失败（{type(exc).__name__}: {exc}），{delay:.2f}s 后第 {attempt + 1} 次重试。"
                )
                time.sleep(delay)
        if last_exc:
            raise last_exc
        raise RuntimeError("LLM 请求失败且未捕获异常")

    def _request(
        self, payload: Dict[str, Any], options: LLMRequestOptions, url: Optional[str] = None
    ) -> Dict[str, Any]:
        url = url or f"{self.base_url}{self.endpoint}"
        data = json.dumps(payload).encode("utf-8")
        req = request.Request(url, data=data, method="POST")
        for key, value in self._headers().items():
            req.add_header(key, value)
        timeout = max(options.timeouts.connect, options.timeouts.read)
        with request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
        return json.loads(body)

    @staticmethod
    def _should_retry(exc: Exception, policy: LLMRetryPolicy, attempt: int) -> bool:
        if attempt >= policy.max_retries:
            return False
        if isinstance(exc, HTTPError):
            return exc.code in policy.retry_statuses
        if isinstance(exc, (URLError, TimeoutError)):
            return True
        return False


class OpenAICompatibleClient(_HTTPChatClient):
    """适配 OpenAI 风格的 chat/completions API（OpenAI / MegaLLM / CLIProxy / DeepSeek 通用）。"""

    name = "openai"
    endpoint = "/v1/chat/completions"

    def _build_payload(self, messages: List[Dict[str, str]], options: LLMRequestOptions) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": False,
        }

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return message.get("content") or choices[0].get("text") or ""


class AnthropicClient(_HTTPChatClient):
    """Anthropic Messages API：system 单独放，其余消息原样透传。"""

    name = "claude"
    endpoint = "/v1/messages"
    api_version = "2023-06-01"

    def _build_payload(self, messages: List[Dict[str, str]], options: LLMRequestOptions) -> Dict[str, Any]:
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        chat = [m for m in messages if m.get("role") != "system"]
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": chat,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        blocks = data.get("content") or []
        texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"]
        return "".join(texts)


class GeminiClient(_HTTPChatClient):
    """
    Gemini generateContent API：
    - 按输入长度在 short / medium / long 三个模型之间路由
    - 配了多个 key 时，遇到 429 换下一个 key，一圈都 429 才放弃
    """

    name = "gemini"
    short_limit = 100
    medium_limit = 500

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        name: Optional[str] = None,
        default_options: Optional[LLMRequestOptions] = None,
        api_keys: Sequence[str] = (),
        model_short: str = "",
        model_medium: str = "",
    ) -> None:
        super().__init__(
            api_key=api_key, base_url=base_url, model=model, name=name, default_options=default_options
        )
        self.api_keys = list(api_keys) or [api_key]
        self.model_short = model_short or model
        self.model_medium = model_medium or model
        self._key_index = 0

    def select_model(self, messages: List[Dict[str, str]]) -> str:
        chars = sum(len(m.get("content", "")) for m in messages if m.get("role") != "system")
        if chars < self.short_limit:
            return self.model_short
        if chars < self.medium_limit:
            return self.model_medium
        return self.model

    def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        options: Optional[LLMRequestOptions] = None,
    ) -> str:
        opts = options or self.default_options
        if len(self.api_keys) > 1:
            # 有备用 key 时 429 交给换 key 处理，不在同一个 key 上原地重试
            policy = replace(
                opts.retry_policy,
                retry_statuses=tuple(s for s in opts.retry_policy.retry_statuses if s != 429),
            )
            opts = replace(opts, retry_policy=policy)
        model = self.select_model(messages)
        url = f"{self.base_url}/v1beta/models/{model}:generateContent"
        payload = self._build_payload(messages, opts)

        for tried in range(len(self.api_keys)):
            try:
                data = self._request_with_retries(payload, opts, url)
                break
            except HTTPError as exc:
                if exc.code != 429 or tried == len(self.api_keys) - 1:
                    raise
                old = self._key_index
                self._key_index = (self._key_index + 1) % len(self.api_keys)
                print(f"[llm/client.py] 🔑 {self.name} 触发限流，API key {old + 1} → {self._key_index + 1}。")

        content = self._extract_content(data)
        if not content:
            raise ValueError(f"{self.name}: empty completion in response")
        return content

    def _build_payload(self, messages: List[Dict[str, str]], options: LLMRequestOptions) -> Dict[str, Any]:
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        contents = [
            {
                "role": "model" if m.get("role") == "assistant" else "user",
                "parts": [{"text": m.get("content", "")}],
            }
            for m in messages
            if m.get("role") != "system"
        ]
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return payload

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self.api_keys[self._key_index],
            "Content-Type": "application/json",
        }

    @staticmethod
    def _extract_content(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


_CLIENT_CLASSES = {
    "claude": AnthropicClient,
    "openai": OpenAICompatibleClient,
    "megallm": OpenAICompatibleClient,
    "cliproxy": OpenAICompatibleClient,
    "deepseek": OpenAICompatibleClient,
    "gemini": GeminiClient,
}


def build_request_options(settings: Any) -> LLMRequestOptions:
    return LLMRequestOptions(
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
        timeouts=LLMTimeouts(
            connect=settings.llm_timeout_connect,
            read=settings.llm_timeout_read,
        ),
        retry_policy=LLMRetryPolicy(
            max_retries=settings.llm_retries,
            backoff_base=settings.llm_retry_backoff_base,
        ),
    )


def build_provider_chain(settings: Any) -> List[LLMClient]:
    """按 settings.llm_providers 的顺序构造客户端，没有 API Key 的直接跳过。"""

    options = build_request_options(settings)
    chain: List[LLMClient] = []
    for raw_name in settings.llm_providers:
        name = {"gpt": "openai", "anthropic": "claude"}.get(raw_name, raw_name)
        client_cls = _CLIENT_CLASSES.get(name)
        provider = settings.provider(name)
        if client_cls is None or provider is None:
            print(f"[llm/client.py] ⚠️ 未知的 LLM 供应商 {raw_name}，已忽略。")
            continue
        if not provider.api_key:
            print(f"[llm/client.py] ⚠️ 供应商 {name} 未配置 API Key，跳过。")
            continue
        extra: Dict[str, Any] = {}
        if client_cls is GeminiClient:
            extra = {
                "api_keys": provider.api_keys,
                "model_short": provider.model_short,
                "model_medium": provider.model_medium,
            }
        chain.append(
            client_cls(
                api_key=provider.api_key,
                base_url=provider.base_url,
                model=provider.model,
                name=name,
                default_options=options,
                **extra,
            )
        )
        print(f"[llm/client.py] 🔌 已配置 LLM 供应商 {name}（model={provider.model}）。")
    return chain
