"""Streaming chat completion client for the Groq (OpenAI-compatible) API."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional
from groq import AsyncGroq
from groq import RateLimitError, AuthenticationError, APIStatusError, APIError, APITimeoutError

from config import GROQ_API_KEY, LLM_BASE_URL, CHAT_MODEL, CHAT_MAX_TOKENS, CHAT_TEMPERATURE

logger = logging.getLogger(__name__)

SSE_DONE = b"data: [DONE]\n\n"


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)

    @property
    def status_code(self) -> Optional[int]:
        return self.error.details.get("status_code")


def sse_frame(payload: Dict[str, Any]) -> bytes:
    """Encode one Server-Sent Events data frame."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


class LLMClient:
    """Client for streaming chat completions."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = CHAT_MODEL,
        base_url: Optional[str] = LLM_BASE_URL,
        client: Optional[AsyncGroq] = None
    ):
        """
        Initialize LLM client.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            model: Chat model name
            base_url: Override for OpenAI-compatible endpoints
            client: Pre-built AsyncGroq client, mainly for tests
        """
        if client is None:
            api_key = api_key or GROQ_API_KEY
            if not api_key:
                raise ValueError("GROQ_API_KEY must be provided or set in environment")
            client = AsyncGroq(api_key=api_key, base_url=base_url) if base_url else AsyncGroq(api_key=api_key)

        self.client = client
        self.model = model
        logger.info(f"LLMClient initialized with model {model}")

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        max_tokens: int = CHAT_MAX_TOKENS,
        temperature: float = CHAT_TEMPERATURE,
        cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[bytes]:
        """
        Request a streaming completion.

        The request is sent before this method returns, so upstream
        failures surface here rather than halfway through the stream.

        Args:
            messages: Full conversation including the system prompt
            max_tokens: Generation limit
            temperature: Sampling temperature
            cancel_event: When set, stops consuming the upstream stream

        Returns:
            Async iterator of SSE frames ending with ``data: [DONE]``

        Raises:
            LLMClientError: Structured error with the upstream status in details
        """
        start_time = time.time()

        try:
            upstream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except RateLimitError as e:
            raise self._error("RATE_LIMIT_ERROR", e, start_time, retry_after=60)
        except AuthenticationError as e:
            raise self._error("AUTHENTICATION_ERROR", e, start_time)
        except APIStatusError as e:
            raise self._error("API_ERROR", e, start_time)
        except APITimeoutError as e:
            raise self._error("TIMEOUT_ERROR", e, start_time)
        except APIError as e:
            raise self._error("API_ERROR", e, start_time)

        logger.info(f"Completion stream opened: model={self.model}, latency={int((time.time() - start_time) * 1000)}ms")
        return self._relay(upstream, cancel_event)

    async def _relay(self, upstream: Any, cancel_event: Optional[asyncio.Event]) -> AsyncIterator[bytes]:
        cancelled = False
        try:
            async for chunk in upstream:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    logger.info("Completion stream cancelled by caller")
                    break
                yield sse_frame(chunk.model_dump(exclude_none=True))
            if not cancelled:
                yield SSE_DONE
        finally:
            await upstream.close()

    def _error(self, code: str, exc: Exception, start_time: float, **extra: Any) -> LLMClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        status = getattr(exc, "status_code", None)
        body = getattr(exc, "message", None) or str(exc)
        message = f"AI API error: {status} - {body}" if status else f"AI API error: {body}"

        error = LLMError(
            code=code,
            message=message,
            details={
                "status_code": status,
                "model": self.model,
                "latency_ms": latency_ms,
                "original_error": str(exc),
                **extra,
            }
        )
        logger.error(
            f"Completion request failed: model={self.model}, latency={latency_ms}ms, error={exc}",
            extra={"error_code": error.code, "error_details": error.details}
        )
        return LLMClientError(error)
