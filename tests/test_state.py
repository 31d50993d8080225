"""
Tests for the conversation cache and its transformations.
Run with: pytest tests/test_state.py
"""

from datetime import datetime, timedelta, timezone

import pytest

from farmline.models import CurrentUser, Message, OutgoingMessage
from farmline.state import (
    CacheSnapshot,
    ConversationCache,
    restore_message,
    settle_outgoing,
    with_messages,
    with_outgoing,
    with_read,
    with_received,
    with_thread,
    without_message,
    without_thread,
)

ME = CurrentUser(id=1, display_name="Ana")
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _msg(id, sender, recipient, minutes=0, **kw):
    return Message(id=id, sender_id=sender, recipient_id=recipient,
                   body=f"m{id}", sent_at=T0 + timedelta(minutes=minutes), **kw)


@pytest.fixture
def cache():
    c = ConversationCache(ME)
    c.apply(with_messages([_msg(1, 2, 1, 1), _msg(2, 3, 1, 2, read=True)]), source="poll")
    return c


# ---------------------------------------------------------------------------
# ConversationCache
# ---------------------------------------------------------------------------

def test_snapshot_defaults():
    """A bare snapshot builds, and each one gets its own read-only threads map."""
    a, b = CacheSnapshot(user=ME), CacheSnapshot(user=ME)
    assert dict(a.threads) == {}
    assert a.threads is not b.threads
    with pytest.raises(TypeError):
        a.threads[2] = ()


def test_apply_bumps_version_and_reaggregates(cache):
    """Every apply publishes a new snapshot with recomputed conversations."""
    snap = cache.snapshot
    assert snap.version == 1
    assert [c.peer_id for c in snap.conversations] == [3, 2]


def test_snapshots_are_not_mutated(cache):
    """An earlier snapshot is unaffected by later changes."""
    before = cache.snapshot
    cache.apply(with_read({1}), source="read")
    assert before.conversation(2).unread_count == 1
    assert cache.snapshot.conversation(2).unread_count == 0


def test_listeners_get_snapshot_and_source(cache):
    seen = []
    unsubscribe = cache.subscribe(lambda snap, source: seen.append((snap.version, source)))
    cache.apply(with_read({1}), source="read")
    unsubscribe()
    cache.apply(with_read({1}), source="read")
    assert seen == [(2, "read")]


def test_failing_listener_does_not_break_apply(cache):
    """A listener that raises is logged; the change still lands."""
    def boom(snap, source):
        raise RuntimeError("listener bug")

    cache.subscribe(boom)
    snap = cache.apply(with_read({1}), source="read")
    assert cache.snapshot is snap


def test_find_message(cache):
    assert cache.snapshot.find_message(2).sender_id == 3
    assert cache.snapshot.find_message(99) is None


# ---------------------------------------------------------------------------
# Transformations
# ---------------------------------------------------------------------------

def test_read_overlay_survives_stale_poll(cache):
    """A poll taken before the server saw the read cannot flip it back to unread."""
    cache.apply(with_read({1}), source="read")
    cache.apply(with_messages([_msg(1, 2, 1, 1, read=False)]), source="poll")
    assert cache.snapshot.conversation(2).unread_count == 0


def test_delete_and_restore(cache):
    cache.apply(without_message(1), source="delete")
    assert cache.snapshot.conversation(2) is None
    cache.apply(restore_message(1), source="delete")
    assert cache.snapshot.conversation(2).latest_message.id == 1


def test_thread_add_and_drop(cache):
    cache.apply(with_thread(2, [_msg(1, 2, 1, 1), _msg(7, 2, 1, 9)]), source="poll")
    assert cache.snapshot.conversation(2).latest_message.id == 7
    cache.apply(without_thread(2), source="poll")
    assert cache.snapshot.conversation(2).latest_message.id == 1


def test_outgoing_pending_then_confirmed(cache):
    """Settling a confirmed send swaps the optimistic copy for the server record."""
    optimistic = _msg(-1, 1, 2, 5, pending=True)
    out = OutgoingMessage(local_id=-1, peer_id=2, message=optimistic)
    cache.apply(with_outgoing(out), source="send")
    assert cache.snapshot.conversation(2).latest_message.pending

    record = _msg(40, 1, 2, 5)
    cache.apply(settle_outgoing(out.confirm(record)), source="send")
    conv = cache.snapshot.conversation(2)
    assert conv.latest_message.id == 40
    assert not any(m.pending for m in conv.messages)
    assert cache.snapshot.outgoing == ()


def test_confirmed_send_lands_in_held_thread(cache):
    cache.apply(with_thread(2, [_msg(1, 2, 1, 1)]), source="poll")
    out = OutgoingMessage(local_id=-1, peer_id=2, message=_msg(-1, 1, 2, 5, pending=True))
    cache.apply(with_outgoing(out), source="send")
    cache.apply(settle_outgoing(out.confirm(_msg(41, 1, 2, 5))), source="send")
    assert [m.id for m in cache.snapshot.threads[2]] == [1, 41]
    assert cache.snapshot.conversation(2).latest_message.id == 41


def test_failed_send_disappears(cache):
    out = OutgoingMessage(local_id=-1, peer_id=2, message=_msg(-1, 1, 2, 5, pending=True))
    cache.apply(with_outgoing(out), source="send")
    cache.apply(settle_outgoing(out.fail("offline")), source="send")
    assert all(m.id != -1 for m in cache.snapshot.conversation(2).messages)


def test_with_received_ignores_duplicates(cache):
    cache.apply(with_received(_msg(1, 2, 1, 1)), source="receive")
    assert len(cache.snapshot.conversation(2).messages) == 1
    cache.apply(with_received(_msg(8, 4, 1, 20)), source="receive")
    assert cache.snapshot.conversations[0].peer_id == 4


def test_received_message_shows_in_held_thread(cache):
    """An inbound message for a peer whose thread is held is not hidden by it."""
    cache.apply(with_thread(2, [_msg(1, 2, 1, 1)]), source="poll")
    cache.apply(with_received(_msg(9, 2, 1, 30)), source="receive")
    conv = cache.snapshot.conversation(2)
    assert [m.id for m in cache.snapshot.threads[2]] == [1, 9]
    assert conv.latest_message.id == 9
    assert conv.unread_count == 2


def test_received_message_already_in_thread_is_not_doubled(cache):
    cache.apply(with_thread(2, [_msg(1, 2, 1, 1), _msg(9, 2, 1, 30)]), source="poll")
    cache.apply(with_received(_msg(9, 2, 1, 30)), source="receive")
    assert [m.id for m in cache.snapshot.threads[2]] == [1, 9]
