"""
MessagingSession — the one object a front end talks to.

Wires store, cache, unread tracker, send coordinator, scheduler and notifier
together for one logged-in user, and applies the notice policy: background
work only logs, foreground actions report success or failure to the
notifier, and 405s are never shown.

Usage:
    session = MessagingSession.from_config(get_config())
    await session.start()
    await session.open_conversation(12)
    await session.send("¿Tienen tomates esta semana?")
    await session.stop()
"""

from __future__ import annotations

import logging

from farmline.errors import MessagingError, ValidationError
from farmline.models import Conversation, CurrentUser, Message, OutgoingMessage
from farmline.notify import LogNotifier, Notifier, make_notifier
from farmline.outbox import SendCoordinator
from farmline.state import CacheSnapshot, ConversationCache, restore_message, without_message
from farmline.store import make_store
from farmline.store.base import MessageStore
from farmline.sync import LIST, THREAD, PollingScheduler, Synchronizer
from farmline.unread import UnreadTracker

logger = logging.getLogger(__name__)


def current_user_from_config(cfg: dict) -> CurrentUser:
    """Build the local identity from the user: block of config.yaml."""
    user_cfg = cfg.get("user", {}) or {}
    raw_id = user_cfg.get("id")
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        raise ValueError(f"user.id must be an integer, got {raw_id!r}") from None
    return CurrentUser(
        id=user_id,
        display_name=str(user_cfg.get("display_name") or ""),
        email=str(user_cfg.get("email") or ""),
        role=str(user_cfg.get("role") or "consumidor"),
    )


class MessagingSession:
    def __init__(
        self,
        user: CurrentUser,
        store: MessageStore,
        notifier: Notifier | None = None,
        synchronizer: Synchronizer | None = None,
        thread_interval: float = 5.0,
        list_interval: float = 15.0,
    ):
        self.user = user
        self.store = store
        self.notifier = notifier or LogNotifier()
        self.cache = ConversationCache(user)
        self.unread = UnreadTracker(self.cache, store)
        self.sync = synchronizer or PollingScheduler(
            store, self.cache,
            thread_interval=thread_interval,
            list_interval=list_interval,
        )
        self.outbox = SendCoordinator(self.cache, store, on_confirmed=self.refresh)
        self.open_peer: int | None = None

    @classmethod
    def from_config(
        cls,
        cfg: dict,
        store: MessageStore | None = None,
        notifier: Notifier | None = None,
    ) -> MessagingSession:
        user = current_user_from_config(cfg)
        poll_cfg = cfg.get("poll", {}) or {}
        return cls(
            user,
            store or make_store(cfg, user_id=user.id),
            notifier=notifier or make_notifier(cfg),
            thread_interval=float(poll_cfg.get("thread_interval", 5)),
            list_interval=float(poll_cfg.get("list_interval", 15)),
        )

    # ── Read side ────────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> CacheSnapshot:
        return self.cache.snapshot

    @property
    def conversations(self) -> tuple[Conversation, ...]:
        return self.cache.snapshot.conversations

    def conversation(self, peer_id: int | None = None) -> Conversation | None:
        peer = self.open_peer if peer_id is None else peer_id
        return self.cache.snapshot.conversation(peer) if peer is not None else None

    def thread(self, peer_id: int | None = None) -> list[Message]:
        """Messages with one peer (default: the open one), oldest first."""
        conv = self.conversation(peer_id)
        return conv.thread() if conv else []

    def badge_count(self) -> int:
        return self.unread.badge_count()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """View mounted: start polling and load the list right away."""
        await self.sync.start()
        await self.sync.refresh_now(LIST)

    async def stop(self) -> None:
        await self.sync.stop()

    async def set_visible(self, visible: bool) -> None:
        await self.sync.set_visible(visible)

    async def refresh(self) -> bool:
        return await self.sync.refresh_now()

    # ── Conversations ────────────────────────────────────────────────────────

    async def open_conversation(self, peer_id: int, mark_read: bool = True) -> Conversation | None:
        """
        Select a peer: start thread polling, fetch the authoritative thread,
        then (unless mark_read=False) mark everything inbound from that peer
        as read.
        """
        if peer_id != self.open_peer:
            draft = self.outbox.draft
            if draft.peer_id != peer_id:
                draft.clear()
                draft.peer_id = peer_id
        await self.sync.open_conversation(peer_id)
        self.open_peer = peer_id
        await self.sync.refresh_now(THREAD)
        if mark_read:
            await self.unread.mark_all_read(peer_id)
        return self.conversation(peer_id)

    async def close_conversation(self) -> None:
        self.open_peer = None
        await self.sync.close_conversation()

    def receive(self, message: Message) -> bool:
        """An inbound message arrived out of band (push, another tab)."""
        return self.unread.record_received(message)

    # ── Foreground actions ───────────────────────────────────────────────────

    async def _report(self, error: MessagingError, action: str) -> None:
        if not error.user_visible:
            logger.debug("%s: not shown to user: %s", action, error)
            return
        await self.notifier.notify("error", f"{action}: {error}")

    async def send(
        self,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        product_name: str = "",
        peer_id: int | None = None,
    ) -> OutgoingMessage:
        """Send to peer_id, or to the open conversation."""
        peer = self.open_peer if peer_id is None else peer_id
        try:
            outgoing = await self.outbox.send(peer, body, subject, linked_product_id, product_name)
        except MessagingError as e:
            await self._report(e, "Could not send message")
            raise
        await self.notifier.notify("success", "Message sent")
        return outgoing

    async def send_draft(self) -> OutgoingMessage:
        d = self.outbox.draft
        return await self.send(d.text, d.subject, d.linked_product_id, d.product_name, peer_id=d.peer_id)

    async def mark_read(self, message_id: int) -> bool:
        return await self.unread.mark_read(message_id)

    async def mark_all_read(self, peer_id: int | None = None) -> int:
        """
        Local state flips even when the server refuses; a server failure is
        still reported so the user knows the read state may come back.
        """
        count = await self.unread.mark_all_read(peer_id)
        failures = self.unread.last_failures
        if failures:
            visible = [e for e in failures if e.user_visible]
            if visible:
                await self._report(visible[0], f"Could not mark {len(failures)}/{count} message(s) as read")
            else:
                logger.debug("mark_all_read: %d failure(s), none shown to user", len(failures))
        elif count:
            await self.notifier.notify("success", f"{count} message(s) marked as read")
        return count

    async def delete(self, message_id: int) -> None:
        """Hide the message at once; bring it back if the server refuses."""
        msg = self.cache.snapshot.find_message(message_id)
        if msg is None or msg.pending:
            error = ValidationError(f"No message with id {message_id}")
            await self._report(error, "Could not delete message")
            raise error

        self.cache.apply(without_message(message_id), source="delete")
        try:
            await self.store.delete(message_id)
        except MessagingError as e:
            self.cache.apply(restore_message(message_id), source="delete")
            await self._report(e, "Could not delete message")
            raise
        await self.notifier.notify("success", "Message deleted")

    async def contact_producer(
        self,
        product_id: int,
        name: str,
        email: str,
        body: str,
        phone: str | None = None,
    ) -> None:
        try:
            await self.store.contact_producer(product_id, name, email, body, phone)
        except MessagingError as e:
            await self._report(e, "Could not contact the producer")
            raise
        await self.notifier.notify("success", "Your message was sent to the producer")

    async def server_unread_count(self) -> int:
        """The server's own unread total (may lag the local badge)."""
        return await self.store.count_unread()
