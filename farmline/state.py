"""
Conversation cache — the one place conversation state lives.

Consumers only ever see a CacheSnapshot (immutable). Every trigger that
changes state (poll, send, mark-read, delete) hands the cache a pure
transformation old-snapshot -> new-snapshot; the cache re-runs the
aggregator over the result and publishes it as a whole. Nothing mutates a
published snapshot in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Mapping

from farmline.aggregator import build_view, peer_id_of
from farmline.models import Conversation, CurrentUser, Message, OutgoingMessage, SendState

logger = logging.getLogger(__name__)

Transform = Callable[["CacheSnapshot"], "CacheSnapshot"]
Listener = Callable[["CacheSnapshot", str], None]


@dataclass(frozen=True)
class CacheSnapshot:
    """Read-only view of everything known for one local user."""
    user: CurrentUser
    version: int = 0
    messages: tuple[Message, ...] = ()                       # received ∪ sent
    threads: Mapping[int, tuple[Message, ...]] = field(default_factory=lambda: MappingProxyType({}))
    outgoing: tuple[OutgoingMessage, ...] = ()
    read_ids: frozenset[int] = frozenset()
    deleted_ids: frozenset[int] = frozenset()
    conversations: tuple[Conversation, ...] = ()

    def conversation(self, peer_id: int) -> Conversation | None:
        for conv in self.conversations:
            if conv.peer_id == peer_id:
                return conv
        return None

    def find_message(self, message_id: int) -> Message | None:
        for conv in self.conversations:
            for msg in conv.messages:
                if msg.id == message_id:
                    return msg
        return None

    @property
    def pending(self) -> tuple[Message, ...]:
        return tuple(o.message for o in self.outgoing if o.state is SendState.PENDING)


# ---------------------------------------------------------------------------
# Pure transformations
# ---------------------------------------------------------------------------

def with_messages(messages: list[Message]) -> Transform:
    """Replace the list-level message set (a completed list poll)."""
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        return replace(snap, messages=tuple(messages))
    return apply


def with_thread(peer_id: int, messages: list[Message]) -> Transform:
    """Store the authoritative thread for one peer (a completed thread poll)."""
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        threads = dict(snap.threads)
        threads[peer_id] = tuple(messages)
        return replace(snap, threads=MappingProxyType(threads))
    return apply


def without_thread(peer_id: int) -> Transform:
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        if peer_id not in snap.threads:
            return snap
        threads = {k: v for k, v in snap.threads.items() if k != peer_id}
        return replace(snap, threads=MappingProxyType(threads))
    return apply


def with_outgoing(outgoing: OutgoingMessage) -> Transform:
    """Insert or update an outgoing message by local id."""
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        others = tuple(o for o in snap.outgoing if o.local_id != outgoing.local_id)
        return replace(snap, outgoing=others + (outgoing,))
    return apply


def settle_outgoing(outgoing: OutgoingMessage) -> Transform:
    """
    Drop a finished outgoing message. A confirmed one hands its server record
    over to the list-level set (and to the peer's thread, when one is held).
    """
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        remaining = tuple(o for o in snap.outgoing if o.local_id != outgoing.local_id)
        snap = replace(snap, outgoing=remaining)
        record = outgoing.confirmed
        if outgoing.state is not SendState.CONFIRMED or record is None:
            return snap
        messages = tuple(m for m in snap.messages if record.id is None or m.id != record.id)
        snap = replace(snap, messages=messages + (record,))
        if outgoing.peer_id in snap.threads:
            thread = tuple(
                m for m in snap.threads[outgoing.peer_id]
                if record.id is None or m.id != record.id
            )
            threads = dict(snap.threads)
            threads[outgoing.peer_id] = thread + (record,)
            snap = replace(snap, threads=MappingProxyType(threads))
        return snap
    return apply


def with_read(message_ids: set[int] | frozenset[int]) -> Transform:
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        return replace(snap, read_ids=snap.read_ids | frozenset(message_ids))
    return apply


def with_received(message: Message) -> Transform:
    """
    Add one inbound message without waiting for the next poll. When the
    sender's thread is held it goes there too, or the thread would hide it.
    """
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        if message.id is not None and any(m.id == message.id for m in snap.messages):
            return snap
        snap = replace(snap, messages=snap.messages + (message,))
        peer = peer_id_of(message, snap.user.id)
        if peer in snap.threads:
            held = snap.threads[peer]
            if message.id is None or all(m.id != message.id for m in held):
                threads = dict(snap.threads)
                threads[peer] = held + (message,)
                snap = replace(snap, threads=MappingProxyType(threads))
        return snap
    return apply


def without_message(message_id: int) -> Transform:
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        return replace(snap, deleted_ids=snap.deleted_ids | {message_id})
    return apply


def restore_message(message_id: int) -> Transform:
    """Undo without_message() after the server refused the delete."""
    def apply(snap: CacheSnapshot) -> CacheSnapshot:
        return replace(snap, deleted_ids=snap.deleted_ids - {message_id})
    return apply


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------

class ConversationCache:
    """
    State container for one local user.
    apply() is the only way in; snapshot is the only way out.
    """

    def __init__(self, user: CurrentUser):
        self.user = user
        self._snapshot = CacheSnapshot(user=user)
        self._listeners: list[Listener] = []

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener(snapshot, source) after every change. Returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def apply(self, transform: Transform, source: str = "local") -> CacheSnapshot:
        """
        Run a transformation against the current snapshot, re-aggregate and
        publish. source tags who caused it ("poll", "send", "read", ...).
        """
        draft = transform(self._snapshot)
        conversations = build_view(
            draft.messages,
            self.user,
            threads=draft.threads,
            pending=draft.pending,
            read_ids=draft.read_ids,
            deleted_ids=draft.deleted_ids,
        )
        new = replace(
            draft,
            version=self._snapshot.version + 1,
            conversations=tuple(conversations),
        )
        self._snapshot = new
        logger.debug(
            "Cache v%d (%s): %d conversations, %d outgoing",
            new.version, source, len(new.conversations), len(new.outgoing),
        )
        for listener in list(self._listeners):
            try:
                listener(new, source)
            except Exception as e:
                logger.warning("Cache listener failed: %s", e)
        return new
