"""
Data models for the messaging core.
These define the shape of data flowing from the API to the console.

Raw API records are turned into Message exactly once, in normalize_message(),
at the store boundary. Nothing past that point looks at raw dict keys.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# Subject the API stores when none was given
NO_SUBJECT = "Sin asunto"

# Field aliases seen across the received / sent / conversation endpoints
_ID_KEYS = ("id_mensaje", "id")
_SENDER_KEYS = ("id_remitente", "id_usuario_remitente", "sender_id")
_RECIPIENT_KEYS = ("id_destinatario", "id_usuario_destinatario", "recipient_id")
_SENT_AT_KEYS = ("fecha_envio", "fecha_creacion", "fecha", "sent_at")
_BODY_KEYS = ("mensaje", "body", "contenido")
_SUBJECT_KEYS = ("asunto", "subject")
_PRODUCT_KEYS = ("id_producto", "linked_product_id")


@dataclass(frozen=True)
class Message:
    """A single message between two users. Immutable once created."""
    id: int | None
    sender_id: int | None
    recipient_id: int | None
    body: str = ""
    subject: str = ""
    linked_product_id: int | None = None
    sent_at: datetime | None = None
    read: bool = False
    kind: str = "general"    # "consulta", "pedido", "general"
    sender_name: str = ""
    sender_email: str = ""
    recipient_name: str = ""
    recipient_email: str = ""
    product_name: str = ""
    pending: bool = False    # optimistic copy, not yet confirmed by the server

    @property
    def sort_key(self) -> datetime:
        return self.sent_at or EPOCH

    def mark_read(self) -> Message:
        return self if self.read else replace(self, read=True)

    def to_payload(self) -> dict:
        """Export in the API's wire format."""
        payload: dict[str, Any] = {
            "id_destinatario": self.recipient_id,
            "asunto": self.subject,
            "mensaje": self.body,
            "tipo_mensaje": self.kind,
        }
        if self.linked_product_id is not None:
            payload["id_producto"] = self.linked_product_id
        return payload


@dataclass(frozen=True)
class Conversation:
    """
    All messages between the local user and one peer.
    Derived on every aggregation pass, never persisted.
    messages is ordered newest first.
    """
    peer_id: int
    messages: tuple[Message, ...] = ()
    unread_count: int = 0
    peer_display_name: str = ""
    peer_email: str = ""

    @property
    def latest_message(self) -> Message | None:
        return self.messages[0] if self.messages else None

    @property
    def last_activity(self) -> datetime:
        latest = self.latest_message
        return latest.sort_key if latest else EPOCH

    def thread(self) -> list[Message]:
        """Oldest first, for chat rendering."""
        return list(reversed(self.messages))


@dataclass(frozen=True)
class CurrentUser:
    """The logged-in identity, as handed over by the session provider."""
    id: int
    display_name: str = ""
    email: str = ""
    role: str = "consumidor"    # "consumidor" or "productor"


class SendState(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class OutgoingMessage:
    """
    One outgoing message moving through Pending -> Confirmed | Failed.
    local_id is negative so it can never collide with a server id.
    """
    local_id: int
    peer_id: int
    message: Message
    state: SendState = SendState.PENDING
    confirmed: Message | None = None
    error: str = ""

    def confirm(self, record: Message | None) -> OutgoingMessage:
        final = record or replace(self.message, pending=False)
        return replace(self, state=SendState.CONFIRMED, confirmed=final)

    def fail(self, error: str) -> OutgoingMessage:
        return replace(self, state=SendState.FAILED, error=error)


@dataclass
class ComposeDraft:
    """Contents of the compose field. Survives a failed send."""
    peer_id: int | None = None
    text: str = ""
    subject: str = ""
    linked_product_id: int | None = None
    product_name: str = ""

    def clear(self) -> None:
        self.text = ""
        self.subject = ""
        self.linked_product_id = None
        self.product_name = ""


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def _first(raw: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "si", "sí")
    return bool(value)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse the timestamp shapes the API emits: ISO strings (with or without
    'Z' / a space separator), epoch seconds or milliseconds, datetimes.
    Naive values are taken as UTC. Unparseable input returns None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_message(raw: Any) -> Message | None:
    """
    Map any raw API record onto a Message.
    Never raises: missing fields become None/"" and are dealt with by the
    aggregator. Returns None only for records that are not mappings at all.
    """
    if isinstance(raw, Message):
        return raw
    if not isinstance(raw, dict):
        logger.debug("Skipping non-mapping message record: %r", raw)
        return None

    product_id = _as_int(_first(raw, _PRODUCT_KEYS))
    kind = raw.get("tipo_mensaje") or raw.get("kind") or ("consulta" if product_id else "general")

    return Message(
        id=_as_int(_first(raw, _ID_KEYS)),
        sender_id=_as_int(_first(raw, _SENDER_KEYS)),
        recipient_id=_as_int(_first(raw, _RECIPIENT_KEYS)),
        body=str(_first(raw, _BODY_KEYS) or ""),
        subject=str(_first(raw, _SUBJECT_KEYS) or ""),
        linked_product_id=product_id,
        sent_at=parse_timestamp(_first(raw, _SENT_AT_KEYS)),
        read=_as_bool(raw.get("leido", raw.get("read", False))),
        kind=str(kind),
        sender_name=str(raw.get("nombre_remitente") or ""),
        sender_email=str(raw.get("email_remitente") or ""),
        recipient_name=str(raw.get("nombre_destinatario") or ""),
        recipient_email=str(raw.get("email_destinatario") or ""),
        product_name=str(raw.get("nombre_producto") or ""),
    )


def normalize_messages(records: Any) -> list[Message]:
    """Normalize a list of raw records, dropping the ones that aren't records."""
    if not isinstance(records, list):
        return []
    out = []
    for raw in records:
        msg = normalize_message(raw)
        if msg is not None:
            out.append(msg)
    return out
