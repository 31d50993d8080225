"""
Sync Scheduler — keeps the conversation cache fresh by polling.

Two channels:
  list    received ∪ sent, re-aggregated into the conversation list
  thread  the authoritative per-pair conversation for the open peer

State machine per view:

    IDLE ──start()──▶ POLLING ──set_visible(False)──▶ SUSPENDED
      ▲                 │  ▲                              │
      └────stop()───────┘  └──────set_visible(True)───────┘

Every fetch is tagged with a sequence number from a SequenceGate; only the
latest issued number of a channel may land in the cache, so a slow response
can never overwrite fresher state. A tick that finds the previous fetch of
its channel still in flight is skipped.

Synchronizer is the seam: a push-based implementation (websocket, SSE) can
replace PollingScheduler without touching the aggregator or the outbox.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
from typing import Any

from farmline.aggregator import merge_sources
from farmline.config import get_runtime_config
from farmline.errors import MessagingError, MethodNotSupportedError
from farmline.state import CacheSnapshot, ConversationCache, with_messages, with_thread, without_thread
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)

LIST = "list"
THREAD = "thread"

# Local mutations that add records a slower poll would not have seen yet.
# Read and delete are covered by overlays in the cache and need no invalidation.
_INVALIDATING_SOURCES = ("send", "receive")


class SyncState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    SUSPENDED = "suspended"


class SequenceGate:
    """
    Monotonic request tags per channel.
    A response is current only if its number is the latest issued for its
    channel; invalidate() makes every in-flight number stale at once.
    """

    def __init__(self):
        self._counter = 0
        self._issued: dict[str, int] = {}
        self._applied: dict[str, int] = {}

    def issue(self, channel: str) -> int:
        self._counter += 1
        self._issued[channel] = self._counter
        return self._counter

    def is_current(self, channel: str, seq: int) -> bool:
        return seq == self._issued.get(channel) and seq > self._applied.get(channel, 0)

    def mark_applied(self, channel: str, seq: int) -> None:
        self._applied[channel] = seq

    def invalidate(self, channel: str | None = None) -> None:
        for ch in ([channel] if channel else list(self._issued)):
            self._counter += 1
            self._issued[ch] = self._counter

    def latest_applied(self, channel: str) -> int:
        return self._applied.get(channel, 0)


class Synchronizer(abc.ABC):
    """What the session needs from whatever keeps the cache up to date."""

    # Most recent fetch failure, cleared by the next successful fetch
    last_error: MessagingError | None = None

    @abc.abstractmethod
    async def start(self) -> None:
        """The consuming view mounted."""
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        """The consuming view unmounted. No refresh may run after this returns."""
        ...

    @abc.abstractmethod
    async def set_visible(self, visible: bool) -> None:
        ...

    @abc.abstractmethod
    async def open_conversation(self, peer_id: int) -> None:
        ...

    @abc.abstractmethod
    async def close_conversation(self) -> None:
        ...

    @abc.abstractmethod
    async def refresh_now(self, channel: str | None = None) -> bool:
        """Fetch immediately, superseding anything in flight. True if state changed."""
        ...


class PollingScheduler(Synchronizer):
    """
    Interval polling over a MessageStore.
    thread_interval applies while a conversation is open; list_interval of 0
    turns list polling off (the list is then refreshed on demand only).
    """

    # Ticks a fetch may stay in flight before it is treated as hung and replaced
    MAX_SKIPPED_TICKS = 3

    def __init__(
        self,
        store: MessageStore,
        cache: ConversationCache,
        thread_interval: float = 5.0,
        list_interval: float = 15.0,
    ):
        self.store = store
        self.cache = cache
        self.thread_interval = thread_interval
        self.list_interval = list_interval
        self.state = SyncState.IDLE
        self.gate = SequenceGate()
        self.open_peer: int | None = None
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._ticks: set[asyncio.Task] = set()
        self._skipped: dict[str, int] = {}
        self._unsupported: set[str] = set()
        self.last_error: MessagingError | None = None
        cache.subscribe(self._on_cache_change)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self.state is not SyncState.IDLE:
            return
        self.state = SyncState.POLLING
        logger.info(
            "Sync polling started (thread every %.0fs, list every %s)",
            self._interval(THREAD),
            f"{self._interval(LIST):.0f}s" if self._interval(LIST) > 0 else "on demand",
        )
        self._start_timers()

    async def stop(self) -> None:
        self.state = SyncState.IDLE
        await self._cancel_timers()
        await self._cancel_inflight()
        logger.info("Sync polling stopped")

    async def set_visible(self, visible: bool) -> None:
        if visible and self.state is SyncState.SUSPENDED:
            self.state = SyncState.POLLING
            logger.debug("View visible again, resuming polling")
            self._start_timers()
        elif not visible and self.state is SyncState.POLLING:
            self.state = SyncState.SUSPENDED
            logger.debug("View hidden, suspending polling")
            await self._cancel_timers()
            await self._cancel_inflight()

    async def open_conversation(self, peer_id: int) -> None:
        if peer_id == self.open_peer:
            return
        await self._drop_thread()
        self.open_peer = peer_id
        logger.debug("Opened conversation with %s", peer_id)
        if self.state is SyncState.POLLING:
            self._start_timer(THREAD)

    async def close_conversation(self) -> None:
        await self._drop_thread()

    async def _drop_thread(self) -> None:
        old = self.open_peer
        self.open_peer = None
        await self._cancel_timer(THREAD)
        await self._cancel_inflight(THREAD)
        self.gate.invalidate(THREAD)
        if old is not None:
            self.cache.apply(without_thread(old), source="poll")

    # ── Ticks ────────────────────────────────────────────────────────────────

    def _interval(self, channel: str) -> float:
        runtime = get_runtime_config()
        key = f"{channel}_interval"
        override = runtime.get(key)
        if override is not None:
            try:
                return float(override)
            except (TypeError, ValueError):
                logger.warning("Ignoring bad runtime %s: %r", key, override)
        return self.thread_interval if channel == THREAD else self.list_interval

    async def poll(self, channel: str) -> bool:
        """
        One timer tick. Skipped when not polling, when there is nothing to
        poll, or when the previous fetch of this channel is still running.
        """
        if self.state is not SyncState.POLLING:
            return False
        if channel == THREAD and self.open_peer is None:
            return False

        running = self._inflight.get(channel)
        if running is not None and not running.done():
            skipped = self._skipped.get(channel, 0) + 1
            self._skipped[channel] = skipped
            if skipped < self.MAX_SKIPPED_TICKS:
                logger.debug("%s poll still in flight, skipping tick", channel)
                return False
            logger.warning("%s poll in flight for %d ticks, replacing it", channel, skipped)
            await self._cancel_inflight(channel)

        self._skipped[channel] = 0
        return await self._issue(channel)

    async def refresh_now(self, channel: str | None = None) -> bool:
        channels = [channel] if channel else [LIST, THREAD]
        results = []
        for ch in channels:
            if ch == THREAD and self.open_peer is None:
                continue
            await self._cancel_inflight(ch)
            results.append(self._issue(ch))
        done = await asyncio.gather(*results)
        return any(done)

    async def _issue(self, channel: str) -> bool:
        seq = self.gate.issue(channel)
        peer = self.open_peer
        task = asyncio.create_task(self._fetch(channel, seq, peer))
        self._inflight[channel] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Superseded by a newer request for the same channel
            return False
        finally:
            if self._inflight.get(channel) is task:
                del self._inflight[channel]

    async def _fetch(self, channel: str, seq: int, peer: int | None) -> bool:
        try:
            if channel == LIST:
                received, sent = await asyncio.gather(
                    self.store.fetch_received(),
                    self.store.fetch_sent(),
                    return_exceptions=True,
                )
                for outcome in (received, sent):
                    if isinstance(outcome, BaseException):
                        raise outcome
                result: Any = merge_sources(received, sent)
            else:
                result = await self.store.fetch_conversation(peer)
        except MethodNotSupportedError as e:
            self.last_error = e
            # Deployment mismatch: say it once, then keep quiet
            if channel not in self._unsupported:
                self._unsupported.add(channel)
                logger.warning("%s endpoint unavailable, polling continues: %s", channel, e)
            else:
                logger.debug("%s endpoint unavailable: %s", channel, e)
            return False
        except MessagingError as e:
            self.last_error = e
            logger.info("%s poll #%d failed, retrying next tick: %s", channel, seq, e)
            return False

        self.last_error = None
        return self.apply_result(channel, seq, peer, result)

    def apply_result(self, channel: str, seq: int, peer: int | None, result: list) -> bool:
        """
        Land a fetch result in the cache if it is still the newest request for
        its channel (and, for threads, still the open peer). Stale results
        are dropped.
        """
        if not self.gate.is_current(channel, seq):
            logger.debug(
                "Discarding stale %s response #%d (latest applied #%d)",
                channel, seq, self.gate.latest_applied(channel),
            )
            return False
        if channel == THREAD and peer != self.open_peer:
            logger.debug("Discarding thread response for %s, %s is open now", peer, self.open_peer)
            return False

        self.gate.mark_applied(channel, seq)
        if channel == LIST:
            self.cache.apply(with_messages(result), source="poll")
        else:
            self.cache.apply(with_thread(peer, result), source="poll")
        return True

    def _on_cache_change(self, snapshot: CacheSnapshot, source: str) -> None:
        # Anything fetched before this mutation landed is now stale
        if source in _INVALIDATING_SOURCES:
            self.gate.invalidate()

    # ── Timers ───────────────────────────────────────────────────────────────

    def _start_timers(self) -> None:
        if self._interval(LIST) > 0:
            self._start_timer(LIST)
        if self.open_peer is not None:
            self._start_timer(THREAD)

    def _start_timer(self, channel: str) -> None:
        existing = self._timers.get(channel)
        if existing is not None and not existing.done():
            return
        self._timers[channel] = asyncio.create_task(self._run_timer(channel))

    async def _run_timer(self, channel: str) -> None:
        while self.state is SyncState.POLLING:
            # Not awaited, so a slow fetch can't stretch the interval
            tick = asyncio.create_task(self._tick(channel))
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(max(self._interval(channel), 0.1))

    async def _tick(self, channel: str) -> None:
        try:
            await self.poll(channel)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception("Unexpected error in %s poll: %s", channel, e)

    async def _cancel_timer(self, channel: str) -> None:
        task = self._timers.pop(channel, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _cancel_timers(self) -> None:
        for channel in list(self._timers):
            await self._cancel_timer(channel)

    async def _cancel_inflight(self, channel: str | None = None) -> None:
        channels = [channel] if channel else list(self._inflight)
        for ch in channels:
            task = self._inflight.pop(ch, None)
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
