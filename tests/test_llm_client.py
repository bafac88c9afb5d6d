"""Unit tests for LLMClient."""
import sys
import asyncio
import json
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from unittest.mock import Mock, AsyncMock, patch
from services.llm_client import LLMClient, LLMClientError, SSE_DONE, sse_frame
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError, APIStatusError


class FakeStream:
    """Stands in for the SDK's async completion stream."""

    def __init__(self, payloads):
        self.chunks = [Mock(model_dump=Mock(return_value=p)) for p in payloads]
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk

    async def close(self):
        self.closed = True


def delta(content):
    return {"id": "chatcmpl-1", "choices": [{"index": 0, "delta": {"content": content}}]}


def make_client(create):
    sdk = Mock()
    sdk.chat.completions.create = create
    return LLMClient(client=sdk, model="test-model")


def parse(frames):
    return [json.loads(f.decode()[len("data: "):]) for f in frames if f != SSE_DONE]


class TestLLMClient:
    """Test suite for LLMClient class."""

    def test_initialization_with_api_key(self):
        client = LLMClient(api_key="test_key")
        assert client.model == "llama-3.3-70b-versatile"

    def test_initialization_without_api_key_raises_error(self):
        with patch('services.llm_client.GROQ_API_KEY', None):
            with pytest.raises(ValueError, match="GROQ_API_KEY must be provided"):
                LLMClient()

    def test_sse_frame(self):
        assert sse_frame({"a": "拥车证"}) == 'data: {"a": "拥车证"}\n\n'.encode("utf-8")

    @pytest.mark.asyncio
    async def test_stream_relays_chunks_then_done(self):
        upstream = FakeStream([delta("COE "), delta("prices")])
        create = AsyncMock(return_value=upstream)
        client = make_client(create)

        stream = await client.stream_chat([{"role": "user", "content": "hi"}], max_tokens=100, temperature=0.2)
        frames = [f async for f in stream]

        assert frames[-1] == SSE_DONE
        assert [p["choices"][0]["delta"]["content"] for p in parse(frames)] == ["COE ", "prices"]
        assert upstream.closed is True

        create.assert_awaited_once_with(
            model="test-model",
            messages=[{"role": "user", "content": "hi"}],
            stream=True,
            max_tokens=100,
            temperature=0.2,
        )

    @pytest.mark.asyncio
    async def test_request_is_sent_before_iteration(self):
        create = AsyncMock(return_value=FakeStream([]))
        client = make_client(create)

        await client.stream_chat([{"role": "user", "content": "hi"}])

        create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_event_stops_stream_without_done(self):
        upstream = FakeStream([delta("one"), delta("two"), delta("three")])
        client = make_client(AsyncMock(return_value=upstream))
        cancel = asyncio.Event()

        frames = []
        async for frame in await client.stream_chat([], cancel_event=cancel):
            frames.append(frame)
            cancel.set()

        assert len(frames) == 1
        assert SSE_DONE not in frames
        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_consumer_closing_early_closes_upstream(self):
        upstream = FakeStream([delta("one"), delta("two")])
        client = make_client(AsyncMock(return_value=upstream))

        stream = await client.stream_chat([])
        await stream.__anext__()
        await stream.aclose()

        assert upstream.closed is True

    @pytest.mark.asyncio
    async def test_rate_limit_error(self):
        create = AsyncMock(side_effect=RateLimitError(
            message="Rate limit exceeded",
            response=Mock(status_code=429),
            body=None
        ))
        client = make_client(create)

        with pytest.raises(LLMClientError) as exc_info:
            await client.stream_chat([])

        error = exc_info.value.error
        assert error.code == "RATE_LIMIT_ERROR"
        assert error.message == "AI API error: 429 - Rate limit exceeded"
        assert error.details["retry_after"] == 60
        assert error.details["model"] == "test-model"
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_authentication_error(self):
        create = AsyncMock(side_effect=AuthenticationError(
            message="Invalid API key",
            response=Mock(status_code=401),
            body=None
        ))

        with pytest.raises(LLMClientError) as exc_info:
            await make_client(create).stream_chat([])

        assert exc_info.value.error.code == "AUTHENTICATION_ERROR"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_upstream_status_error(self):
        create = AsyncMock(side_effect=APIStatusError(
            message="Service unavailable",
            response=Mock(status_code=503),
            body=None
        ))

        with pytest.raises(LLMClientError) as exc_info:
            await make_client(create).stream_chat([])

        assert exc_info.value.error.code == "API_ERROR"
        assert "503" in exc_info.value.error.message

    @pytest.mark.asyncio
    async def test_timeout_error(self):
        create = AsyncMock(side_effect=APITimeoutError(request=Mock()))

        with pytest.raises(LLMClientError) as exc_info:
            await make_client(create).stream_chat([])

        error = exc_info.value.error
        assert error.code == "TIMEOUT_ERROR"
        assert error.details["status_code"] is None
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_generic_api_error(self):
        create = AsyncMock(side_effect=APIError(
            message="Connection reset",
            request=Mock(),
            body=None
        ))

        with pytest.raises(LLMClientError) as exc_info:
            await make_client(create).stream_chat([])

        error = exc_info.value.error
        assert error.code == "API_ERROR"
        assert error.message == "AI API error: Connection reset"
        assert error.details["latency_ms"] >= 0
