"""
Tests for terminal rendering and the textual console.
Run with: pytest tests/test_console.py
"""

from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import patch

from farmline.aggregator import aggregate
from farmline.models import CurrentUser, Message
from farmline.render import format_inbox, format_thread, format_time, preview
from farmline.session import MessagingSession
from farmline.store.memory import MemoryMessageStore
from farmline.tui.screens.base import escape
from farmline.tui.screens.inbox import conversation_markup
from farmline.tui.screens.thread import message_markup, thread_markup

ME = CurrentUser(id=1, display_name="Ana Torres")
NOW = datetime.now(timezone.utc)


def _msg(id, sender, recipient, minutes_ago=0, body="", read=False, **kw):
    return Message(id=id, sender_id=sender, recipient_id=recipient, body=body or f"m{id}",
                   sent_at=NOW - timedelta(minutes=minutes_ago), read=read, **kw)


# ---------------------------------------------------------------------------
# Plain rendering
# ---------------------------------------------------------------------------

def test_format_time():
    assert format_time(None) == "--:--"
    assert ":" in format_time(NOW)
    assert "/" in format_time(NOW - timedelta(days=3))


def test_preview_collapses_and_truncates():
    assert preview("hola\n  vecino") == "hola vecino"
    cut = preview("x" * 100, width=10)
    assert len(cut) == 10
    assert cut.endswith("…")


def test_format_inbox_plain():
    convs = aggregate([
        _msg(1, 2, 1, 5, body="¿Hay miel?", sender_name="Apiario"),
        _msg(2, 1, 3, 1, body="Gracias", recipient_name="Huerta"),
    ], ME)
    out = format_inbox(convs, ME.id, color=False)
    assert "\033[" not in out
    assert out.index("Huerta") < out.index("Apiario")
    assert "tú: Gracias" in out
    assert "(1)" in out


def test_format_inbox_empty():
    assert "No conversations" in format_inbox([], ME.id, color=False)


def test_format_thread_oldest_first():
    conv = aggregate([_msg(1, 2, 1, 10, body="primero"), _msg(2, 1, 2, 1, body="segundo")], ME)[0]
    out = format_thread(conv, ME.id, color=False)
    assert out.index("primero") < out.index("segundo")
    assert "nuevo" in out
    assert format_thread(None, ME.id, color=False).strip().startswith("No messages")


# ---------------------------------------------------------------------------
# Console markup
# ---------------------------------------------------------------------------

def test_escape_brackets():
    assert escape("[bold]x") == r"\[bold]x"


def test_conversation_markup_unread_badge():
    conv = aggregate([_msg(1, 2, 1, body="hola", sender_name="Granja")], ME)[0]
    markup = conversation_markup(conv, ME.id, is_open=True)
    assert "[bold green](1)[/bold green]" in markup
    assert "▶" in markup


def test_message_markup_pending_and_escaping():
    msg = _msg(-1, 1, 2, body="[precio] 5000", pending=True)
    markup = message_markup(msg, ME.id)
    assert "enviando" in markup
    assert r"\[precio]" in markup


def test_thread_markup_empty():
    assert "No messages yet" in thread_markup(None, ME.id)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_app_mounts_and_lists_conversations():
    """Mounting starts the session and fills the inbox."""
    from textual.widgets import OptionList
    from farmline.sync import SyncState
    from farmline.tui.app import FarmlineApp

    session = MessagingSession(ME, MemoryMessageStore.demo(user_id=1), list_interval=0)
    app = FarmlineApp(session)
    with patch("farmline.sync.get_runtime_config", return_value={}):
        async with app.run_test() as pilot:
            await pilot.pause()
            app.refresh_panes()
            assert app.query_one("#inbox-list", OptionList).option_count == 3
            assert session.sync.state is not SyncState.IDLE
