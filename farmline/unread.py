"""
Unread Tracker — read-state mutations on top of the conversation cache.

Read receipts are best effort: the local flip happens first, the server call
follows, and a failed server call is logged but never rolled back.
The badge count is always recomputed from the current snapshot.
"""

from __future__ import annotations

import asyncio
import logging

from farmline.errors import MessagingError
from farmline.models import Message
from farmline.state import CacheSnapshot, ConversationCache, with_read, with_received
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)


def badge_count(snapshot: CacheSnapshot) -> int:
    """Global unread badge: sum of per-conversation unread counts."""
    return sum(c.unread_count for c in snapshot.conversations)


class UnreadTracker:
    def __init__(self, cache: ConversationCache, store: MessageStore):
        self.cache = cache
        self.store = store
        # server errors from the last mark_all_read(), local state kept regardless
        self.last_failures: list[MessagingError] = []

    @property
    def user_id(self) -> int:
        return self.cache.user.id

    def badge_count(self) -> int:
        return badge_count(self.cache.snapshot)

    def unread_for(self, peer_id: int) -> int:
        conv = self.cache.snapshot.conversation(peer_id)
        return conv.unread_count if conv else 0

    def _is_markable(self, msg: Message | None) -> bool:
        return (
            msg is not None
            and msg.id is not None
            and not msg.pending
            and not msg.read
            and msg.recipient_id == self.user_id
            and msg.sender_id != self.user_id
        )

    async def _push(self, message_id: int) -> MessagingError | None:
        try:
            await self.store.mark_read(message_id)
            return None
        except MessagingError as e:
            logger.warning("mark_read(%s) failed on server, keeping local state: %s", message_id, e)
            return e

    async def mark_read(self, message_id: int) -> bool:
        """
        Flip one message to read and decrement its conversation.
        Returns True if the message actually transitioned locally.
        """
        msg = self.cache.snapshot.find_message(message_id)
        if not self._is_markable(msg):
            return False
        self.cache.apply(with_read({message_id}), source="read")
        await self._push(message_id)
        return True

    async def mark_all_read(self, peer_id: int | None = None) -> int:
        """
        Mark every unread inbound message read, in one conversation or all.
        Returns the number of records that transitioned; server errors
        end up in last_failures.
        """
        snap = self.cache.snapshot
        ids: list[int] = []
        for conv in snap.conversations:
            if peer_id is not None and conv.peer_id != peer_id:
                continue
            ids.extend(m.id for m in conv.messages if self._is_markable(m))
        self.last_failures = []
        if not ids:
            return 0

        self.cache.apply(with_read(set(ids)), source="read")
        results = await asyncio.gather(*(self._push(i) for i in ids))
        self.last_failures = [e for e in results if e is not None]
        if self.last_failures:
            logger.warning(
                "mark_all_read: %d/%d server updates failed", len(self.last_failures), len(ids),
            )
        return len(ids)

    def record_received(self, message: Message) -> bool:
        """
        Increment-on-receive: add an inbound message to the cache now instead
        of waiting for the next list poll. Ignores anything not addressed to us.
        """
        if message.recipient_id != self.user_id or message.sender_id in (None, self.user_id):
            return False
        if message.id is not None and self.cache.snapshot.find_message(message.id) is not None:
            return False
        self.cache.apply(with_received(message), source="receive")
        return True
