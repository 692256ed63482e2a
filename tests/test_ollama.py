import pytest
import respx
from aiolimiter import AsyncLimiter
from httpx import ConnectError, Response
from tenacity import wait_none

from feedrank.ollama import NullProvider, OllamaClient

BASE = "http://ollama.test"


def _client(**kw):
    kw.setdefault("retry_wait", wait_none())
    kw.setdefault("limiter", AsyncLimiter(100, 1))
    return OllamaClient(BASE, "embed-model", "gen-model", **kw)


@pytest.mark.asyncio
@respx.mock
async def test_availability_is_cached():
    route = respx.get(f"{BASE}/api/tags").mock(return_value=Response(200, json={"models": []}))
    async with _client() as client:
        assert await client.is_available()
        assert await client.is_available()
        assert route.call_count == 1

        client.invalidate_availability()
        assert await client.is_available()
        assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_availability_rechecked_after_ttl():
    route = respx.get(f"{BASE}/api/tags").mock(
        side_effect=[ConnectError("down"), Response(200, json={"models": []})]
    )
    async with _client(availability_ttl=0) as client:
        assert not await client.is_available()
        assert await client.is_available()
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_embed_posts_prompt():
    route = respx.post(f"{BASE}/api/embeddings").mock(
        return_value=Response(200, json={"embedding": [0.5, -0.25, 1]})
    )
    async with _client() as client:
        assert await client.embed("hello world") == [0.5, -0.25, 1.0]
    body = route.calls.last.request.read()
    assert b'"model":"embed-model"' in body.replace(b" ", b"")
    assert b'"prompt":"helloworld"' in body.replace(b" ", b"")


@pytest.mark.asyncio
@respx.mock(assert_all_called=False)
async def test_embed_empty_text_skips_request():
    route = respx.post(f"{BASE}/api/embeddings")
    async with _client() as client:
        assert await client.embed("   ") is None
    assert not route.called


@pytest.mark.asyncio
@respx.mock
async def test_embed_empty_vector_is_none():
    respx.post(f"{BASE}/api/embeddings").mock(return_value=Response(200, json={"embedding": []}))
    async with _client() as client:
        assert await client.embed("text") is None


@pytest.mark.asyncio
@respx.mock
async def test_generate_retries_transient_errors():
    route = respx.post(f"{BASE}/api/generate").mock(
        side_effect=[
            Response(503),
            ConnectError("reset"),
            Response(200, json={"response": '{"score": 7, "reason": "x"}'}),
        ]
    )
    async with _client() as client:
        assert await client.generate("rate this") == '{"score": 7, "reason": "x"}'
    assert route.call_count == 3


@pytest.mark.asyncio
@respx.mock
async def test_generate_gives_up_after_max_retries():
    route = respx.post(f"{BASE}/api/generate").mock(return_value=Response(429))
    async with _client(max_retries=2) as client:
        assert await client.generate("rate this") is None
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_non_retryable_status_fails_fast():
    route = respx.post(f"{BASE}/api/generate").mock(return_value=Response(400, text="bad model"))
    async with _client() as client:
        assert await client.generate("rate this") is None
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_null_provider():
    provider = NullProvider()
    assert not await provider.is_available()
    assert await provider.embed("x") is None
    assert await provider.generate("x") is None
