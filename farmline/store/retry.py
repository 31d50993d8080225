"""
Retry wrapper for message stores.

Wraps any store to retry *read* calls on transient failures:
- connect / timeout errors
- 5xx server errors

Never retried:
- writes (send, mark_read, delete), a retried POST could double-send
- 405, the endpoint simply isn't there
- 4xx, the request itself is wrong
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from farmline.errors import MethodNotSupportedError, ServerError, TransientNetworkError
from farmline.models import Message
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingMessageStore(MessageStore):
    """
    Wraps any store with bounded retry for reads.
    Transparent to callers: same interface, same exceptions once retries run out.
    """

    def __init__(
        self,
        store: MessageStore,
        max_retries: int = 1,
        delay: float = 0.5,
        backoff_base: float = 2.0,
        backoff_max: float = 5.0,
    ):
        self.store = store
        self.max_retries = max_retries
        self.delay = delay
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.name = store.name

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, MethodNotSupportedError):
            return False
        if isinstance(exc, TransientNetworkError):
            return True
        return isinstance(exc, ServerError) and exc.status_code >= 500

    def _backoff_seconds(self, attempt: int) -> float:
        """Delay before retry N (1-based)."""
        return min(self.delay * self.backoff_base ** (attempt - 1), self.backoff_max)

    async def _read(self, label: str, call: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(self.max_retries + 1):
            try:
                return await call()
            except Exception as e:
                if not self._is_retryable(e) or attempt >= self.max_retries:
                    raise
                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Store '%s' %s failed, retry in %.1fs (%d/%d): %s",
                    self.name, label, backoff, attempt + 1, self.max_retries, e,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("unreachable")  # pragma: no cover

    # ── Reads (retried) ──────────────────────────────────────────────────────

    async def fetch_received(self) -> list[Message]:
        return await self._read("fetch_received", self.store.fetch_received)

    async def fetch_sent(self) -> list[Message]:
        return await self._read("fetch_sent", self.store.fetch_sent)

    async def fetch_conversation(self, peer_id: int) -> list[Message]:
        return await self._read("fetch_conversation", lambda: self.store.fetch_conversation(peer_id))

    async def count_unread(self) -> int:
        return await self._read("count_unread", self.store.count_unread)

    # ── Writes (delegated once) ──────────────────────────────────────────────

    async def send(
        self,
        peer_id: int,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        kind: str | None = None,
    ) -> Message | None:
        return await self.store.send(peer_id, body, subject, linked_product_id, kind)

    async def mark_read(self, message_id: int) -> None:
        await self.store.mark_read(message_id)

    async def delete(self, message_id: int) -> None:
        await self.store.delete(message_id)

    async def contact_producer(
        self,
        product_id: int,
        name: str,
        email: str,
        body: str,
        phone: str | None = None,
    ) -> None:
        await self.store.contact_producer(product_id, name, email, body, phone)
