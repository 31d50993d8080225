"""
In-memory message store.

Behaves like the marketplace API for one logged-in user, without a network.
Used by the console's --demo mode and by the test-suite. Setting
`offline = True` makes every call fail with TransientNetworkError.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from farmline.errors import ServerError, TransientNetworkError, ValidationError
from farmline.models import Message
from farmline.store.base import MessageStore

logger = logging.getLogger(__name__)


class MemoryMessageStore(MessageStore):
    """Thread-unsafe, single-loop store; state lives in self.messages."""

    def __init__(
        self,
        user_id: int,
        messages: list[Message] | None = None,
        directory: dict[int, tuple[str, str]] | None = None,
    ):
        self.name = "memory"
        self.user_id = user_id
        self.messages: list[Message] = list(messages or [])
        self.directory = dict(directory or {})
        self.offline = False
        self.calls: list[str] = []
        self.enquiries: list[dict] = []
        start = max((m.id or 0 for m in self.messages), default=0) + 1
        self._ids = itertools.count(start)

    @classmethod
    def demo(cls, user_id: int = 1) -> MemoryMessageStore:
        """A small market inbox for trying the console without a server."""
        store = cls(
            user_id,
            directory={
                user_id: ("Ana Torres", "ana@example.com"),
                201: ("Granja La Esperanza", "esperanza@example.com"),
                202: ("Huerta Don Pepe", "donpepe@example.com"),
                203: ("Apiario Miel Pura", "mielpura@example.com"),
            },
        )
        now = datetime.now(timezone.utc)
        store.deliver(201, "Hola, tenemos tomate chonto a buen precio esta semana.",
                      subject="Consulta sobre Tomate chonto", sent_at=now - timedelta(hours=5),
                      linked_product_id=11)
        store.deliver(user_id, "¿Hacen envíos a domicilio?", subject="Re: Consulta sobre Tomate chonto",
                      recipient_id=201, sent_at=now - timedelta(hours=4), linked_product_id=11)
        store.deliver(201, "Sí, los martes y viernes.", subject="Re: Consulta sobre Tomate chonto",
                      sent_at=now - timedelta(minutes=30))
        store.deliver(202, "Ya llegaron las papas criollas.", subject="Consulta",
                      sent_at=now - timedelta(days=1))
        store.deliver(user_id, "Necesito 2 litros de miel.", subject="Pedido",
                      recipient_id=203, sent_at=now - timedelta(days=2))
        return store

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.offline:
            raise TransientNetworkError(f"{name}: network unreachable")

    def _who(self, user_id: int) -> tuple[str, str]:
        return self.directory.get(user_id, ("", ""))

    def deliver(
        self,
        sender_id: int,
        body: str,
        subject: str = "",
        recipient_id: int | None = None,
        sent_at: datetime | None = None,
        linked_product_id: int | None = None,
    ) -> Message:
        """Simulate someone else sending a message into the store."""
        recipient = self.user_id if recipient_id is None else recipient_id
        sender_name, sender_email = self._who(sender_id)
        recipient_name, recipient_email = self._who(recipient)
        msg = Message(
            id=next(self._ids),
            sender_id=sender_id,
            recipient_id=recipient,
            body=body,
            subject=subject,
            linked_product_id=linked_product_id,
            sent_at=sent_at or datetime.now(timezone.utc),
            kind="consulta" if linked_product_id else "general",
            sender_name=sender_name,
            sender_email=sender_email,
            recipient_name=recipient_name,
            recipient_email=recipient_email,
        )
        self.messages.append(msg)
        return msg

    async def fetch_received(self) -> list[Message]:
        self._call("fetch_received")
        return [m for m in self.messages if m.recipient_id == self.user_id]

    async def fetch_sent(self) -> list[Message]:
        self._call("fetch_sent")
        return [m for m in self.messages if m.sender_id == self.user_id]

    async def fetch_conversation(self, peer_id: int) -> list[Message]:
        self._call("fetch_conversation")
        pair = {self.user_id, peer_id}
        thread = [m for m in self.messages if {m.sender_id, m.recipient_id} == pair]
        return sorted(thread, key=lambda m: m.sort_key)

    async def send(
        self,
        peer_id: int,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        kind: str | None = None,
    ) -> Message | None:
        if not body or not body.strip():
            raise ValidationError("Message body is empty")
        self._call("send")
        msg = self.deliver(
            self.user_id,
            body,
            subject=subject or "Consulta",
            recipient_id=peer_id,
            linked_product_id=linked_product_id,
        )
        if kind:
            msg = replace(msg, kind=kind)
            self.messages[-1] = msg
        return msg

    async def mark_read(self, message_id: int) -> None:
        self._call("mark_read")
        for i, m in enumerate(self.messages):
            if m.id == message_id:
                self.messages[i] = m.mark_read()
                return
        raise ServerError("No se pudo marcar el mensaje como leído.", status_code=400)

    async def delete(self, message_id: int) -> None:
        self._call("delete")
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        if len(self.messages) == before:
            raise ServerError("No se encontró el mensaje a eliminar.", status_code=400)

    async def count_unread(self) -> int:
        self._call("count_unread")
        return sum(1 for m in self.messages if m.recipient_id == self.user_id and not m.read)

    async def contact_producer(
        self,
        product_id: int,
        name: str,
        email: str,
        body: str,
        phone: str | None = None,
    ) -> None:
        if not body or not body.strip():
            raise ValidationError("Message body is empty")
        if not name.strip() or not email.strip():
            raise ValidationError("Name and email are required")
        self._call("contact_producer")
        self.enquiries.append(
            {"product_id": product_id, "name": name, "email": email, "body": body, "phone": phone}
        )
