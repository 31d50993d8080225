"""
Optimistic Send Coordinator.

An outgoing message goes Composing -> Pending -> Confirmed | Failed:

  Composing  text sits in the ComposeDraft
  Pending    an optimistic copy is in the peer's conversation, newest
  Confirmed  the server record replaced the optimistic copy, draft cleared
  Failed     the optimistic copy is gone again, draft text kept for retry

Validation happens before anything touches the cache or the network.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from farmline.aggregator import reply_subject
from farmline.errors import ValidationError
from farmline.models import ComposeDraft, Message, OutgoingMessage
from farmline.state import ConversationCache, settle_outgoing, with_outgoing
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)


def _fill_from(record: Message, optimistic: Message) -> Message:
    """The send endpoint echoes the bare row; keep what we already knew."""
    return replace(
        record,
        pending=False,
        sent_at=record.sent_at or optimistic.sent_at,
        subject=record.subject or optimistic.subject,
        sender_name=record.sender_name or optimistic.sender_name,
        sender_email=record.sender_email or optimistic.sender_email,
        recipient_name=record.recipient_name or optimistic.recipient_name,
        recipient_email=record.recipient_email or optimistic.recipient_email,
        product_name=record.product_name or optimistic.product_name,
    )


class SendCoordinator:
    """
    Owns the compose draft and every outgoing message of one session.
    on_confirmed is awaited after a successful send (the session uses it to
    refetch the list and the open thread).
    """

    def __init__(
        self,
        cache: ConversationCache,
        store: MessageStore,
        on_confirmed: Callable[[], Awaitable[Any]] | None = None,
    ):
        self.cache = cache
        self.store = store
        self.on_confirmed = on_confirmed
        self.draft = ComposeDraft()
        self.last: OutgoingMessage | None = None
        self._local_ids = itertools.count(-1, -1)

    def _optimistic(
        self,
        peer_id: int,
        body: str,
        subject: str,
        linked_product_id: int | None,
        product_name: str,
    ) -> Message:
        user = self.cache.user
        conv = self.cache.snapshot.conversation(peer_id)
        now = datetime.now(timezone.utc)
        latest = conv.latest_message if conv else None
        # Chronologically last even if the server clock runs ahead of ours
        if latest is not None and latest.sent_at is not None and latest.sent_at >= now:
            now = latest.sent_at + timedelta(microseconds=1)
        return Message(
            id=next(self._local_ids),
            sender_id=user.id,
            recipient_id=peer_id,
            body=body,
            subject=subject,
            linked_product_id=linked_product_id,
            sent_at=now,
            read=False,
            kind="consulta" if linked_product_id else "general",
            sender_name=user.display_name,
            sender_email=user.email,
            recipient_name=conv.peer_display_name if conv else "",
            recipient_email=conv.peer_email if conv else "",
            product_name=product_name,
            pending=True,
        )

    async def send(
        self,
        peer_id: int | None,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        product_name: str = "",
    ) -> OutgoingMessage:
        """
        Send one message optimistically.

        Raises:
            ValidationError: no peer, or a blank body. Nothing else happened.
            TransientNetworkError / ServerError: the send failed and was
                rolled back; the draft still holds the text.
        """
        if peer_id is None:
            raise ValidationError("Select a conversation before sending")
        text = (body or "").strip()
        if not text:
            raise ValidationError("Message body is empty")

        conv = self.cache.snapshot.conversation(peer_id)
        final_subject = (subject or "").strip() or reply_subject(conv, product_name)
        optimistic = self._optimistic(peer_id, text, final_subject, linked_product_id, product_name)
        outgoing = OutgoingMessage(local_id=optimistic.id, peer_id=peer_id, message=optimistic)

        self.cache.apply(with_outgoing(outgoing), source="send")
        logger.debug("Pending message %d to %s", outgoing.local_id, peer_id)

        try:
            record = await self.store.send(
                peer_id, text, final_subject, linked_product_id, optimistic.kind,
            )
        except BaseException as e:
            failed = outgoing.fail(str(e) or e.__class__.__name__)
            self.cache.apply(settle_outgoing(failed), source="send")
            self.last = failed
            self._keep_draft(peer_id, body, subject or "", linked_product_id, product_name)
            logger.warning("Send to %s failed, rolled back: %s", peer_id, failed.error)
            raise

        confirmed = outgoing.confirm(_fill_from(record, optimistic) if record else None)
        self.cache.apply(settle_outgoing(confirmed), source="send")
        self.last = confirmed
        if self.draft.peer_id in (None, peer_id):
            self.draft.clear()
        logger.info(
            "Message to %s confirmed (local %d -> id %s)",
            peer_id, outgoing.local_id, confirmed.confirmed.id if confirmed.confirmed else None,
        )

        if self.on_confirmed is not None:
            await self.on_confirmed()
        return confirmed

    async def send_draft(self) -> OutgoingMessage:
        """Send whatever is in the compose field."""
        d = self.draft
        return await self.send(d.peer_id, d.text, d.subject, d.linked_product_id, d.product_name)

    def _keep_draft(
        self,
        peer_id: int,
        body: str,
        subject: str,
        linked_product_id: int | None,
        product_name: str,
    ) -> None:
        self.draft.peer_id = peer_id
        self.draft.text = body
        self.draft.subject = subject
        self.draft.linked_product_id = linked_product_id
        self.draft.product_name = product_name
