"""
Conversation Aggregator — flat message records in, conversations out.

The API hands back directionless records from two endpoints (received, sent)
and, once a conversation is opened, a third authoritative per-pair endpoint.
Everything here is a pure, synchronous function of its inputs: aggregating
the same messages twice gives the same list.

  aggregate()      group received ∪ sent into per-peer conversations
  resolve_thread() let the per-pair endpoint supersede the derived list
  build_view()     the full projection the cache publishes
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping

from farmline.models import NO_SUBJECT, Conversation, CurrentUser, Message

logger = logging.getLogger(__name__)


def peer_id_of(message: Message, local_id: int) -> int | None:
    """The other side of a message, from the local user's point of view."""
    if message.sender_id == local_id:
        return message.recipient_id
    return message.sender_id


def _belongs_to(message: Message, local_id: int) -> int | None:
    """
    Return the peer id if the message is a valid one-to-one message involving
    the local user, else None. Never raises on malformed records.
    """
    if message.sender_id is None or message.recipient_id is None:
        return None
    if local_id not in (message.sender_id, message.recipient_id):
        return None
    peer = peer_id_of(message, local_id)
    if peer is None or peer == local_id:
        return None
    return peer


def count_unread(messages: Iterable[Message], peer_id: int) -> int:
    """Unread messages the peer sent. Our own messages are never unread."""
    return sum(1 for m in messages if not m.read and m.sender_id == peer_id)


def _resolve_peer_info(peer_id: int, messages: Iterable[Message], user: CurrentUser) -> tuple[str, str]:
    name = ""
    email = ""
    for m in messages:
        if m.sender_id == peer_id:
            cand_name, cand_email = m.sender_name, m.sender_email
        elif m.recipient_id == peer_id:
            cand_name, cand_email = m.recipient_name, m.recipient_email
        else:
            continue
        # Either direction carries both parties; skip fields that are really ours
        if not name and cand_name and cand_name != user.display_name:
            name = cand_name
        if not email and cand_email and cand_email != user.email:
            email = cand_email
        if name and email:
            break
    return name or f"Usuario #{peer_id}", email


def build_conversation(peer_id: int, messages: Iterable[Message], user: CurrentUser) -> Conversation:
    """Sort one peer's messages newest first and derive the summary fields."""
    ordered = tuple(sorted(messages, key=lambda m: m.sort_key, reverse=True))
    name, email = _resolve_peer_info(peer_id, ordered, user)
    return Conversation(
        peer_id=peer_id,
        messages=ordered,
        unread_count=count_unread(ordered, peer_id),
        peer_display_name=name,
        peer_email=email,
    )


def _sort_conversations(conversations: Iterable[Conversation]) -> list[Conversation]:
    # Tie-break on peer id so equal timestamps still give a stable order
    return sorted(conversations, key=lambda c: (c.last_activity, -c.peer_id), reverse=True)


def aggregate(messages: Iterable[Message], user: CurrentUser) -> list[Conversation]:
    """
    Group messages into conversations, most recently active first.
    Records with a missing participant, or whose peer would be the local
    user, are dropped.
    """
    grouped: dict[int, list[Message]] = {}
    dropped = 0
    for msg in messages:
        peer = _belongs_to(msg, user.id)
        if peer is None:
            dropped += 1
            continue
        grouped.setdefault(peer, []).append(msg)

    if dropped:
        logger.debug("Aggregation dropped %d malformed/self-referential records", dropped)

    return _sort_conversations(
        build_conversation(peer, msgs, user) for peer, msgs in grouped.items()
    )


def merge_sources(received: Iterable[Message], sent: Iterable[Message]) -> list[Message]:
    """
    Union of the received and sent lists, de-duplicated by message id.
    A later duplicate replaces an earlier one; id-less records are all kept.
    """
    by_id: dict[int, Message] = {}
    anonymous: list[Message] = []
    for msg in list(received) + list(sent):
        if msg.id is None:
            anonymous.append(msg)
        else:
            by_id[msg.id] = msg
    return list(by_id.values()) + anonymous


def resolve_thread(
    conversation: Conversation | None,
    authoritative: Iterable[Message],
    user: CurrentUser,
) -> Conversation | None:
    """
    Let the per-pair endpoint supersede the derived list for one conversation.
    An empty authoritative result leaves the derived conversation untouched.
    Pending (optimistic) messages from the derived side are carried over.
    """
    authoritative = list(authoritative)
    if not authoritative:
        return conversation

    peer_id = conversation.peer_id if conversation else None
    kept: list[Message] = []
    for msg in authoritative:
        peer = _belongs_to(msg, user.id)
        if peer is None:
            continue
        if peer_id is None:
            peer_id = peer
        if peer == peer_id:
            kept.append(msg)

    if peer_id is None or not kept:
        return conversation

    if conversation is not None:
        known = {m.id for m in kept if m.id is not None}
        kept.extend(m for m in conversation.messages if m.pending and m.id not in known)

    return build_conversation(peer_id, kept, user)


def build_view(
    messages: Iterable[Message],
    user: CurrentUser,
    threads: Mapping[int, Iterable[Message]] | None = None,
    pending: Iterable[Message] = (),
    read_ids: frozenset[int] = frozenset(),
    deleted_ids: frozenset[int] = frozenset(),
) -> list[Conversation]:
    """
    The projection the UI renders: aggregate the list-level messages plus any
    optimistic ones, then let each fetched authoritative thread win for its
    own peer. Locally-read and locally-deleted ids are overlaid so that a
    poll answered before the server caught up cannot resurrect them.
    """
    def overlay(source: Iterable[Message]) -> list[Message]:
        out = []
        for m in source:
            if m.id is not None and m.id in deleted_ids:
                continue
            if m.id is not None and m.id in read_ids:
                m = m.mark_read()
            out.append(m)
        return out

    base = overlay(messages) + list(pending)
    by_peer = {c.peer_id: c for c in aggregate(base, user)}

    for peer_id, thread in (threads or {}).items():
        thread = overlay(thread)
        current = by_peer.get(peer_id)
        if current is None:
            # Opened a peer we have no list-level history with yet
            own_pending = [m for m in pending if _belongs_to(m, user.id) == peer_id]
            current = build_conversation(peer_id, own_pending, user) if own_pending else None
        resolved = resolve_thread(current, thread, user)
        if resolved is not None and resolved.peer_id == peer_id:
            by_peer[peer_id] = resolved

    return _sort_conversations(by_peer.values())


def reply_subject(conversation: Conversation | None, product_name: str = "") -> str:
    """
    Subject for a message sent without one: "Re: <previous subject>" when the
    conversation already has a real subject, else an enquiry subject.
    """
    latest = conversation.latest_message if conversation else None
    if latest is not None:
        previous = latest.subject.strip()
        if previous and previous != NO_SUBJECT:
            if previous.startswith("Re: "):
                return previous
            return f"Re: {previous}"
    if product_name:
        return f"Consulta sobre {product_name}"
    return "Consulta"
