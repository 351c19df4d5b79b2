from __future__ import annotations

import asyncio

import httpx
import orjson
import pytest

from storyloom.config.schema import AppConfigRoot
from storyloom.llm.images import ImageResult, OpenAIImageClient, ResolvedImageRuntime


def _runtime(retries: int = 0) -> ResolvedImageRuntime:
    return ResolvedImageRuntime(
        endpoint_name="image_default",
        provider_name="default",
        model="gpt-image-1",
        size="512x512",
        timeout_s=5,
        retries=retries,
        base_url="https://images.example/v1/",
        api_key_env="TEST_IMAGE_KEY",
        api_key="secret",
    )


def test_generate_posts_prompt_and_returns_url() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"url": "https://cdn.example/a.png", "revised_prompt": "a harbor"}]})

    client = OpenAIImageClient(_runtime(), transport=httpx.MockTransport(handler))
    result = asyncio.run(client.generate("A foggy harbor at dawn"))

    assert result == ImageResult(url="https://cdn.example/a.png", revised_prompt="a harbor")
    assert str(seen[0].url) == "https://images.example/v1/images/generations"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert orjson.loads(seen[0].content) == {
        "model": "gpt-image-1",
        "prompt": "A foggy harbor at dawn",
        "size": "512x512",
        "n": 1,
    }


def test_generate_retries_then_raises() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, json={"error": "busy"})

    client = OpenAIImageClient(_runtime(retries=2), transport=httpx.MockTransport(handler))

    with pytest.raises(RuntimeError, match="Image generation request failed after retries"):
        asyncio.run(client.generate("prompt"))
    assert calls["count"] == 3


def test_generate_rejects_payload_without_image() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"revised_prompt": "nothing"}]})

    client = OpenAIImageClient(_runtime(), transport=httpx.MockTransport(handler))

    with pytest.raises(RuntimeError) as excinfo:
        asyncio.run(client.generate("prompt"))
    assert "neither 'url' nor 'b64_json'" in str(excinfo.value.__cause__)


def test_from_config_without_image_route_returns_none() -> None:
    assert OpenAIImageClient.from_config(AppConfigRoot()) is None
