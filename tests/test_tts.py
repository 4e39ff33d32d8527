"""
Tests for Deepgram Aura synthesis.
"""

import json

import httpx
import pytest

from src.callflow.tts import DEEPGRAM_SPEAK_URL, DeepgramAuraTTS


def aura_client(requests: list, status_code: int = 200, content: bytes = b"\xff\x7f" * 80):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, content=content)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_synthesize_requests_mulaw_8k():
    requests = []
    tts = DeepgramAuraTTS(client=aura_client(requests))

    audio = await tts.synthesize("Hello from Cigna.")

    assert audio == b"\xff\x7f" * 80
    request = requests[0]
    assert str(request.url).startswith(DEEPGRAM_SPEAK_URL)
    assert request.url.params["encoding"] == "mulaw"
    assert request.url.params["sample_rate"] == "8000"
    assert request.url.params["container"] == "none"
    assert request.url.params["model"] == "aura-asteria-en"
    assert request.headers["Authorization"] == "Token test_deepgram_key"
    assert json.loads(request.content) == {"text": "Hello from Cigna."}


@pytest.mark.asyncio
async def test_blank_text_skips_request():
    requests = []
    tts = DeepgramAuraTTS(client=aura_client(requests))

    assert await tts.synthesize("   ") == b""
    assert requests == []


@pytest.mark.asyncio
async def test_error_status_raises():
    requests = []
    tts = DeepgramAuraTTS(client=aura_client(requests, status_code=401, content=b"bad key"))

    with pytest.raises(httpx.HTTPStatusError):
        await tts.synthesize("Hello")


@pytest.mark.asyncio
async def test_close_keeps_injected_client_open():
    client = aura_client([])
    tts = DeepgramAuraTTS(client=client)

    await tts.close()

    assert client.is_closed is False
    await client.aclose()
