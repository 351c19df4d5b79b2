from __future__ import annotations

import asyncio
from dataclasses import dataclass
import os
from typing import Any

import httpx
from loguru import logger

from storyloom.config.schema import AppConfigRoot


@dataclass
class ImageResult:
    url: str | None = None
    b64_json: str | None = None
    revised_prompt: str | None = None


@dataclass(frozen=True)
class ResolvedImageRuntime:
    endpoint_name: str
    provider_name: str
    model: str
    size: str
    timeout_s: int
    retries: int
    base_url: str | None
    api_key_env: str | None
    api_key: str | None


def resolve_image_runtime(config: AppConfigRoot) -> ResolvedImageRuntime | None:
    resolved = config.llm.resolve_image_route()
    if resolved is None:
        return None
    endpoint_name, endpoint, provider = resolved

    api_key = None
    if provider.api_key_env:
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(f"Missing required API key env for image route: {provider.api_key_env}")

    return ResolvedImageRuntime(
        endpoint_name=endpoint_name,
        provider_name=endpoint.provider,
        model=endpoint.model,
        size=endpoint.size,
        timeout_s=endpoint.timeout_s,
        retries=endpoint.retries,
        base_url=provider.base_url,
        api_key_env=provider.api_key_env,
        api_key=api_key,
    )


def _extract_image(payload: dict[str, Any]) -> ImageResult:
    data = payload.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise ValueError("Invalid image response: missing 'data'")
    first = data[0]
    result = ImageResult(
        url=first.get("url"),
        b64_json=first.get("b64_json"),
        revised_prompt=first.get("revised_prompt"),
    )
    if not result.url and not result.b64_json:
        raise ValueError("Invalid image response: neither 'url' nor 'b64_json' present")
    return result


class OpenAIImageClient:
    """Calls an OpenAI-compatible /images/generations endpoint."""

    def __init__(self, runtime: ResolvedImageRuntime, transport: httpx.AsyncBaseTransport | None = None):
        self.runtime = runtime
        base_url = (runtime.base_url or "https://api.openai.com/v1").rstrip("/")
        self.generate_url = f"{base_url}/images/generations"
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: AppConfigRoot,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "OpenAIImageClient | None":
        runtime = resolve_image_runtime(config)
        if runtime is None:
            return None
        return cls(runtime, transport=transport)

    async def generate(self, prompt: str) -> ImageResult:
        headers = {"Content-Type": "application/json"}
        if self.runtime.api_key:
            headers["Authorization"] = f"Bearer {self.runtime.api_key}"
        body = {"model": self.runtime.model, "prompt": prompt, "size": self.runtime.size, "n": 1}

        last_exc: Exception | None = None
        attempts = max(1, self.runtime.retries + 1)
        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=self.runtime.timeout_s, transport=self._transport) as client:
                    response = await client.post(self.generate_url, headers=headers, json=body)
                    response.raise_for_status()
                    payload = response.json()
                return _extract_image(payload)
            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                logger.bind(endpoint=self.runtime.endpoint_name, attempt=f"{attempt + 1}/{attempts}").warning(
                    "Image request failed error_type={} error={}",
                    type(exc).__name__,
                    exc,
                )
                if attempt < attempts - 1:
                    await asyncio.sleep(min(0.3 * (2**attempt), 2.0))

        raise RuntimeError("Image generation request failed after retries") from last_exc
