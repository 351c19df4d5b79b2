from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import os
import time
from typing import Any, AsyncIterator, Callable, Mapping, TypeVar

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from loguru import logger

from storyloom.config.schema import AppConfigRoot, ChatRoute
from storyloom.domain.hashing import sha256_text


@dataclass
class LLMResponse:
    text: str
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedChatRuntime:
    route: str
    endpoint_name: str
    provider_name: str
    model: str
    temperature: float
    timeout_s: int
    max_concurrency: int
    retries: int
    max_tokens: int | None
    extra_body: dict[str, Any]
    base_url: str | None
    api_key_env: str | None
    api_key: str | None


T = TypeVar("T")


def _short_key(value: str | None, length: int = 12) -> str:
    if not value:
        return "-"
    return value[:length]


def _extract_json_error_location(exc: Exception) -> str | None:
    lineno = getattr(exc, "lineno", None)
    colno = getattr(exc, "colno", None)
    pos = getattr(exc, "pos", None)

    parts: list[str] = []
    if isinstance(lineno, int):
        parts.append(f"line={lineno}")
    if isinstance(colno, int):
        parts.append(f"column={colno}")
    if isinstance(pos, int):
        parts.append(f"pos={pos}")

    if not parts:
        return None
    return ", ".join(parts)


def _extract_usage(response: Any) -> dict[str, int]:
    usage = getattr(response, "usage_metadata", None)
    if not isinstance(usage, Mapping):
        return {}
    extracted: dict[str, int] = {}
    for key in ("input_tokens", "output_tokens", "total_tokens"):
        value = usage.get(key)
        if isinstance(value, int):
            extracted[key] = value
    return extracted


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def resolve_chat_runtime(config: AppConfigRoot, route: ChatRoute) -> ResolvedChatRuntime:
    endpoint_name, endpoint, provider = config.llm.resolve_chat_route(route)
    api_key = None
    if provider.api_key_env:
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(
                f"Missing required API key env for route '{route}': {provider.api_key_env}"
            )

    return ResolvedChatRuntime(
        route=route,
        endpoint_name=endpoint_name,
        provider_name=endpoint.provider,
        model=endpoint.model,
        temperature=endpoint.temperature,
        timeout_s=endpoint.timeout_s,
        max_concurrency=endpoint.max_concurrency,
        retries=endpoint.retries,
        max_tokens=endpoint.max_tokens,
        extra_body=dict(endpoint.extra_body),
        base_url=provider.base_url,
        api_key_env=provider.api_key_env,
        api_key=api_key,
    )


def _build_chat_model(runtime: ResolvedChatRuntime) -> ChatOpenAI:
    kwargs: dict[str, Any] = {
        "model": runtime.model,
        "temperature": runtime.temperature,
        "timeout": runtime.timeout_s,
        # Retry is handled explicitly in OpenAIChatClient to keep attempt count predictable.
        "max_retries": 0,
    }

    if runtime.max_tokens:
        kwargs["max_tokens"] = runtime.max_tokens
    if runtime.extra_body:
        kwargs["extra_body"] = dict(runtime.extra_body)
    if runtime.base_url:
        kwargs["base_url"] = runtime.base_url
    if runtime.api_key:
        kwargs["api_key"] = runtime.api_key

    return ChatOpenAI(**kwargs)


class OpenAIChatClient:
    def __init__(self, config: AppConfigRoot, route: ChatRoute = "narrative"):
        self.config = config
        self.runtime = resolve_chat_runtime(config, route)
        self.model = _build_chat_model(self.runtime)
        self.model_identifier = f"{self.runtime.provider_name}/{self.runtime.endpoint_name}/{self.runtime.model}"
        self._async_semaphore = asyncio.Semaphore(max(1, self.runtime.max_concurrency))

    def _build_log_context(
        self,
        *,
        attempt: int | None = None,
        attempts_total: int | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        merged: dict[str, Any] = {
            "route": self.runtime.route,
            "provider": self.runtime.provider_name,
            "endpoint": self.runtime.endpoint_name,
            "model": self.runtime.model,
        }
        if context:
            for key, value in context.items():
                if value is not None:
                    merged[key] = value
        if "input_hash" in merged:
            merged["input_hash"] = _short_key(str(merged["input_hash"]))
        if attempt is not None and attempts_total is not None:
            merged["attempt"] = f"{attempt}/{attempts_total}"
        return merged

    def _format_payload_for_log(self, payload: str) -> str:
        max_chars = int(self.config.observability.json_error_payload_max_chars)
        if max_chars <= 0 or len(payload) <= max_chars:
            return payload

        head = max_chars // 2
        tail = max_chars - head
        omitted = max(0, len(payload) - max_chars)
        if head <= 0 or tail <= 0:
            return payload[:max_chars]

        return f"{payload[:head]}\n...[truncated {omitted} chars]...\n{payload[-tail:]}"

    def _log_json_parse_failure(
        self,
        *,
        source: str,
        raw_text: str,
        exc: Exception,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        log = logger.bind(**self._build_log_context(context=context))
        location = _extract_json_error_location(exc)
        raw_hash = sha256_text(raw_text)

        log.warning(
            "JSON parse failed source={} error_type={} error={} location={} raw_len={} raw_hash={}",
            source,
            type(exc).__name__,
            exc,
            location or "-",
            len(raw_text),
            raw_hash,
        )

        if self.config.observability.log_json_error_payload:
            payload_to_log = self._format_payload_for_log(raw_text)
            log.warning("JSON parse raw_response={}", payload_to_log)

    async def complete_async(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> LLMResponse:
        result = await self._ainvoke_with_retry(system_prompt, user_prompt, context=context)
        if not isinstance(result, LLMResponse):
            raise RuntimeError("Unexpected non-text response from LLM")
        return result

    async def complete_json_async(
        self,
        system_prompt: str,
        user_prompt: str,
        parser: Callable[[str], T],
        *,
        context: Mapping[str, Any] | None = None,
    ) -> tuple[LLMResponse, T]:
        result = await self._ainvoke_with_retry(system_prompt, user_prompt, parser, context=context)
        if not isinstance(result, tuple) or len(result) != 2:
            raise RuntimeError("Unexpected non-JSON response from LLM")
        return result

    async def stream_async(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[str]:
        """Yield text chunks as the provider produces them; no retry once streaming started."""

        messages = [SystemMessage(system_prompt), HumanMessage(user_prompt)]
        log = logger.bind(**self._build_log_context(context=context))
        started = time.perf_counter()
        emitted = 0
        async with self._async_semaphore:
            async for chunk in self.model.astream(messages):
                text = _chunk_text(chunk)
                if text:
                    emitted += len(text)
                    yield text
        log.debug("LLM stream finished chars={} elapsed_ms={}", emitted, int((time.perf_counter() - started) * 1000))

    async def _call_model(self, messages: list[Any], *, require_text: bool) -> LLMResponse:
        async with self._async_semaphore:
            response = await self.model.ainvoke(messages)
        text = _chunk_text(response).strip()
        # Plain completions may come back empty; the narrative phase owns that retry.
        if require_text and not text:
            raise ValueError("Empty LLM response")
        return LLMResponse(text=text, usage=_extract_usage(response))

    def _log_failed_attempt(
        self,
        exc: Exception,
        *,
        attempt: int,
        attempts: int,
        started: float,
        context: Mapping[str, Any] | None,
    ) -> None:
        log = logger.bind(**self._build_log_context(attempt=attempt, attempts_total=attempts, context=context))
        if self.config.observability.log_retry_attempts:
            log.warning(
                "LLM call failed elapsed_ms={} error_type={} error={}",
                int((time.perf_counter() - started) * 1000),
                type(exc).__name__,
                exc,
            )
        if attempt == attempts:
            log.opt(exception=exc).error("LLM call failed on final attempt")

    async def _ainvoke_with_retry(
        self,
        system_prompt: str,
        user_prompt: str,
        parser: Callable[[str], T] | None = None,
        *,
        context: Mapping[str, Any] | None = None,
    ) -> tuple[LLMResponse, T] | LLMResponse:
        attempts = max(1, self.runtime.retries + 1)
        messages = [SystemMessage(system_prompt), HumanMessage(user_prompt)]
        last_exc: Exception | None = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                response = await self._call_model(messages, require_text=parser is not None)
                if parser is None:
                    return response
                try:
                    return response, parser(response.text)
                except Exception as parse_exc:  # noqa: BLE001
                    self._log_json_parse_failure(
                        source="llm_response",
                        raw_text=response.text,
                        exc=parse_exc,
                        context=self._build_log_context(attempt=attempt, attempts_total=attempts, context=context),
                    )
                    raise
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                self._log_failed_attempt(exc, attempt=attempt, attempts=attempts, started=started, context=context)
                if attempt < attempts:
                    await asyncio.sleep(min(0.5 * (2 ** (attempt - 1)), 4.0))

        raise RuntimeError("LLM call failed after retries") from last_exc
