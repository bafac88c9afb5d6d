"""
Two-tier response cache for AI endpoints.

The memory tier is a bounded dict checked first; the persistent tier is the
Supabase ``ai_cache`` table shared by every process. Persistent-tier errors
are logged and treated as misses or dropped writes so the cache can never
fail a request.
"""
import asyncio
import codecs
import hashlib
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Coroutine, Dict, Optional, Set
from supabase import Client

from models.cache import CacheEntry
from config import CACHE_MAX_MEMORY_ENTRIES, CACHE_CLEANUP_INTERVAL_SECONDS

logger = logging.getLogger(__name__)


def generate_cache_key(endpoint: str, params: Dict[str, Any]) -> str:
    """
    Hex SHA-256 of ``endpoint:params`` with params serialized with sorted keys.

    Identical logical requests hash the same regardless of key order.
    """
    normalized = json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(f"{endpoint}:{normalized}".encode("utf-8")).hexdigest()


FRACTION_PATTERN = re.compile(r"\.(\d+)")


def _to_timestamp(value: str) -> float:
    """Parse a PostgREST timestamp; fractional seconds may have any number of digits."""
    value = FRACTION_PATTERN.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value.replace("Z", "+00:00"), count=1)
    return datetime.fromisoformat(value).timestamp()


def _to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


class ResponseCache:
    """
    Read-through cache of complete AI responses keyed by ``generate_cache_key``.

    Writes and expired-row deletes against the persistent tier run as
    detached tasks; ``flush()`` waits for the ones still pending.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        table_name: str = "ai_cache",
        max_memory_entries: int = CACHE_MAX_MEMORY_ENTRIES,
        cleanup_interval: float = CACHE_CLEANUP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the cache.

        Args:
            client: Supabase client for the persistent tier; None keeps the
                cache memory-only
            table_name: Persistent table with key, endpoint, response, expires_at
            max_memory_entries: Memory tier capacity
            cleanup_interval: Seconds between background sweeps
            clock: Source of the current Unix time
        """
        self.client = client
        self.table_name = table_name
        self.max_memory_entries = max_memory_entries
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self.memory: Dict[str, CacheEntry] = {}
        self._pending: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None

        if client is None:
            logger.warning("No persistent cache configured; responses are cached in memory only")

    async def get(self, key: str) -> Optional[str]:
        """Return the cached response for ``key`` or None on a miss."""
        now = self.clock()

        entry = self.memory.get(key)
        if entry is not None:
            if not entry.is_expired(now):
                return entry.response
            del self.memory[key]

        if self.client is None:
            return None

        try:
            row = await asyncio.to_thread(self._fetch_row, key)
        except Exception as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

        if row is None:
            return None

        try:
            response = row["response"]
            expires_at = _to_timestamp(row["expires_at"])
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Unreadable cache row, treating as miss: {e}")
            return None

        if expires_at > now:
            self.memory[key] = CacheEntry(response=response, expires_at=expires_at)
            return response

        self._spawn(self._delete_row(key))
        return None

    def set(self, key: str, endpoint: str, response: str, ttl_seconds: float) -> None:
        """
        Store ``response`` for ``ttl_seconds``.

        The memory tier is updated immediately; the persistent upsert is
        scheduled in the background. Must be called from a running event
        loop when a persistent tier is configured.
        """
        expires_at = self.clock() + ttl_seconds

        self._evict_if_needed()
        self.memory[key] = CacheEntry(response=response, expires_at=expires_at)

        if self.client is not None:
            self._spawn(self._upsert_row(key, endpoint, response, expires_at))

    async def clear_expired(self) -> int:
        """Delete expired entries from both tiers and return how many were removed."""
        now = self.clock()
        expired = [k for k, entry in self.memory.items() if entry.is_expired(now)]
        for key in expired:
            del self.memory[key]

        removed = len(expired)
        if self.client is not None:
            try:
                removed += await asyncio.to_thread(self._delete_expired_rows, _to_iso(now))
            except Exception as e:
                logger.warning(f"Cache cleanup failed: {e}")

        logger.info(f"Cleared {removed} expired cache entries")
        return removed

    def start(self) -> None:
        """Start the periodic sweep; no-op if already running."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Cancel the periodic sweep and wait for pending background writes."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.flush()

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            await self.clear_expired()

    def _evict_if_needed(self) -> None:
        if len(self.memory) < self.max_memory_entries:
            return

        now = self.clock()
        for key in [k for k, entry in self.memory.items() if entry.is_expired(now)]:
            del self.memory[key]

        # Still full: drop the oldest insertion
        if len(self.memory) >= self.max_memory_entries:
            oldest = next(iter(self.memory))
            del self.memory[oldest]

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _upsert_row(self, key: str, endpoint: str, response: str, expires_at: float) -> None:
        row = {"key": key, "endpoint": endpoint, "response": response, "expires_at": _to_iso(expires_at)}
        try:
            await asyncio.to_thread(
                lambda: self.client.table(self.table_name).upsert(row, on_conflict="key").execute()
            )
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")

    async def _delete_row(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                lambda: self.client.table(self.table_name).delete().eq("key", key).execute()
            )
        except Exception as e:
            logger.debug(f"Expired cache row delete failed: {e}")

    def _fetch_row(self, key: str) -> Optional[Dict[str, Any]]:
        response = (
            self.client.table(self.table_name)
            .select("response,expires_at")
            .eq("key", key)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    def _delete_expired_rows(self, now_iso: str) -> int:
        response = self.client.table(self.table_name).delete().lt("expires_at", now_iso).execute()
        return len(response.data or [])


async def create_cached_sse_stream(content: str) -> AsyncIterator[bytes]:
    """Replay a cached answer in the shape of a live completion stream."""
    now = time.time()
    chunk = {
        "id": f"chatcmpl-cached-{int(now * 1000)}",
        "object": "chat.completion.chunk",
        "created": int(now),
        "model": "cached",
        "choices": [
            {"index": 0, "delta": {"role": "assistant", "content": content}, "finish_reason": None},
        ],
    }
    yield f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n".encode("utf-8")

    done_chunk = {**chunk, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]}
    yield f"data: {json.dumps(done_chunk, ensure_ascii=False)}\n\n".encode("utf-8")
    yield b"data: [DONE]\n\n"


async def collect_sse_stream(
    stream: AsyncIterator[bytes],
    on_complete: Callable[[str], None]
) -> AsyncIterator[bytes]:
    """
    Pass ``stream`` through unchanged while accumulating the delta text.

    ``on_complete`` receives the full text only once the stream has been
    drained and ended with ``data: [DONE]``; a stream closed early or
    stopped by cancellation never reaches it. Frames that are not valid
    JSON are skipped.
    """
    parts = []
    done = False
    buffer = ""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def consume(line: str) -> None:
        nonlocal done
        if line == "data: [DONE]":
            done = True
            return
        if not line.startswith("data: "):
            return
        try:
            payload = json.loads(line[6:])
            delta = payload["choices"][0]["delta"].get("content")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            return
        if delta:
            parts.append(delta)

    async for data in stream:
        yield data
        buffer += decoder.decode(data)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            consume(line.rstrip("\r"))

    consume(buffer.rstrip("\r"))
    if done:
        on_complete("".join(parts))
    else:
        logger.info("Stream ended without [DONE]; response not cached")
