"""
Tests for the optimistic send coordinator.
Run with: pytest tests/test_outbox.py
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock

from farmline.errors import NetworkError, ServerError, ValidationError
from farmline.models import CurrentUser, Message, SendState
from farmline.outbox import SendCoordinator
from farmline.state import ConversationCache, with_messages
from farmline.store.memory import MemoryMessageStore

ME = CurrentUser(id=1, display_name="Ana Torres", email="ana@example.com")
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _msg(id, sender, recipient, minutes=0, subject="", body=""):
    return Message(id=id, sender_id=sender, recipient_id=recipient, body=body or f"m{id}",
                   subject=subject, sent_at=T0 + timedelta(minutes=minutes))


@pytest.fixture
def setup():
    history = [_msg(1, 2, 1, 1, subject="Consulta sobre Miel"), _msg(2, 3, 1, 2)]
    store = MemoryMessageStore(user_id=1, messages=history)
    cache = ConversationCache(ME)
    cache.apply(with_messages(history), source="poll")
    return store, cache, SendCoordinator(cache, store)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "   ", "\n\t"])
async def test_blank_body_rejected_before_any_io(setup, body):
    """Empty or whitespace-only bodies never reach the network or the cache."""
    store, cache, outbox = setup
    version = cache.snapshot.version
    with pytest.raises(ValidationError):
        await outbox.send(2, body)
    assert store.calls == []
    assert cache.snapshot.version == version


@pytest.mark.asyncio
async def test_no_peer_rejected(setup):
    store, _cache, outbox = setup
    with pytest.raises(ValidationError):
        await outbox.send(None, "hola")
    assert store.calls == []


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_becomes_latest_message(setup):
    """After send(peer, 'hello') the peer's latest message is 'hello'."""
    store, cache, outbox = setup
    outgoing = await outbox.send(2, "hello")
    conv = cache.snapshot.conversation(2)
    assert outgoing.state is SendState.CONFIRMED
    assert conv.latest_message.body == "hello"
    assert conv.latest_message.pending is False
    assert conv.messages[1].id == 1
    assert cache.snapshot.conversations[0].peer_id == 2
    assert store.calls == ["send"]


@pytest.mark.asyncio
async def test_pending_visible_while_in_flight(setup):
    """The optimistic copy is in the conversation before the server answers."""
    store, cache, outbox = setup
    release = asyncio.Event()
    real_send = store.send

    async def slow_send(*args, **kwargs):
        await release.wait()
        return await real_send(*args, **kwargs)

    store.send = slow_send
    task = asyncio.create_task(outbox.send(2, "hello"))
    await asyncio.sleep(0)

    latest = cache.snapshot.conversation(2).latest_message
    assert latest.pending
    assert latest.id < 0
    assert latest.body == "hello"

    release.set()
    await task
    assert not cache.snapshot.conversation(2).latest_message.pending


@pytest.mark.asyncio
async def test_subject_is_reply_of_previous(setup):
    store, _cache, outbox = setup
    await outbox.send(2, "¿Cuánto cuesta?")
    assert store.messages[-1].subject == "Re: Consulta sobre Miel"


@pytest.mark.asyncio
async def test_product_link_makes_consulta(setup):
    store, _cache, outbox = setup
    await outbox.send(9, "¿Tienen?", linked_product_id=11, product_name="Papa criolla")
    sent = store.messages[-1]
    assert sent.kind == "consulta"
    assert sent.subject == "Consulta sobre Papa criolla"
    assert sent.linked_product_id == 11


@pytest.mark.asyncio
async def test_success_clears_draft_and_refreshes(setup):
    store, cache, _ = setup
    refresh = AsyncMock()
    outbox = SendCoordinator(cache, store, on_confirmed=refresh)
    outbox.draft.peer_id = 2
    outbox.draft.text = "hello"
    await outbox.send_draft()
    assert outbox.draft.text == ""
    assert outbox.draft.peer_id == 2
    refresh.assert_awaited_once()


@pytest.mark.asyncio
async def test_send_without_server_echo_keeps_optimistic_copy(setup):
    store, cache, outbox = setup
    store.send = AsyncMock(return_value=None)
    outgoing = await outbox.send(2, "hello")
    assert outgoing.confirmed.body == "hello"
    latest = cache.snapshot.conversation(2).latest_message
    assert latest.body == "hello"
    assert latest.pending is False


@pytest.mark.asyncio
async def test_optimistic_sorts_after_future_dated_history(setup):
    """Even if the server clock runs ahead, the new message is the newest."""
    store, cache, outbox = setup
    future = _msg(3, 2, 1, minutes=60 * 24 * 365 * 100)
    cache.apply(with_messages([future]), source="poll")
    store.send = AsyncMock(return_value=None)
    await outbox.send(2, "hello")
    assert cache.snapshot.conversation(2).latest_message.body == "hello"


# ---------------------------------------------------------------------------
# Failure path
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_offline_send_rolls_back_and_keeps_draft(setup):
    """Offline: NetworkError, optimistic message gone, compose keeps 'hello'."""
    store, cache, outbox = setup
    store.offline = True
    with pytest.raises(NetworkError):
        await outbox.send(2, "hello")

    conv = cache.snapshot.conversation(2)
    assert all(m.body != "hello" for m in conv.messages)
    assert conv.latest_message.id == 1
    assert cache.snapshot.outgoing == ()
    assert outbox.draft.text == "hello"
    assert outbox.draft.peer_id == 2
    assert outbox.last.state is SendState.FAILED


@pytest.mark.asyncio
async def test_server_error_rolls_back(setup):
    store, cache, outbox = setup
    store.send = AsyncMock(side_effect=ServerError("HTTP 500", status_code=500))
    with pytest.raises(ServerError):
        await outbox.send(3, "hola")
    assert cache.snapshot.conversation(3).latest_message.id == 2


@pytest.mark.asyncio
async def test_retry_after_failure_succeeds(setup):
    store, cache, outbox = setup
    store.offline = True
    with pytest.raises(NetworkError):
        await outbox.send(2, "hello")
    store.offline = False
    await outbox.send_draft()
    assert cache.snapshot.conversation(2).latest_message.body == "hello"
    assert outbox.draft.text == ""
