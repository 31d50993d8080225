"""
Inbox pane — the conversation list, most recent activity first.
Unread conversations are bold with a badge; selecting one opens it.
"""
from __future__ import annotations
from textual.app import ComposeResult
from textual.message import Message as TextualMessage
from textual.widgets import OptionList, Static
from textual.widgets.option_list import Option
from farmline.models import Conversation
from farmline.render import format_time, preview
from farmline.tui.screens.base import FarmlinePane, escape


def conversation_markup(conv: Conversation, user_id: int, is_open: bool = False) -> str:
    """Two-line Rich markup for one inbox row."""
    latest = conv.latest_message
    when = format_time(latest.sent_at if latest else None)
    text = ""
    if latest is not None:
        text = ("tú: " if latest.sender_id == user_id else "") + preview(latest.body, 36)
        if latest.pending:
            text += " [magenta]…[/magenta]"
    name = escape(conv.peer_display_name)
    if conv.unread_count:
        name = f"[bold]{name}[/bold] [bold green]({conv.unread_count})[/bold green]"
    marker = "[cyan]▶[/cyan] " if is_open else "  "
    return f"{marker}{name}  [dim]{when}[/dim]\n    [dim]{escape(text)}[/dim]"


class InboxPane(FarmlinePane):
    """Conversation list."""

    class Selected(TextualMessage):
        """A conversation was picked."""
        def __init__(self, peer_id: int) -> None:
            super().__init__()
            self.peer_id = peer_id

    def compose(self) -> ComposeResult:
        yield self.section("Inbox")
        yield Static("", id="inbox-status", markup=True)
        yield OptionList(id="inbox-list")

    def refresh_content(self) -> None:
        snapshot = self.session.snapshot
        options = self.query_one("#inbox-list", OptionList)
        status = self.query_one("#inbox-status", Static)

        highlighted = options.highlighted
        options.clear_options()
        open_peer = self.session.open_peer
        for conv in snapshot.conversations:
            options.add_option(Option(
                conversation_markup(conv, self.session.user.id, conv.peer_id == open_peer),
                id=str(conv.peer_id),
            ))
        if highlighted is not None and snapshot.conversations:
            options.highlighted = min(highlighted, len(snapshot.conversations) - 1)

        badge = self.session.badge_count()
        status.update(
            f"[dim]{len(snapshot.conversations)} conversations  │  [/dim]"
            + (f"[bold green]{badge} unread[/bold green]" if badge else "[dim]all read[/dim]")
        )

    def on_option_list_option_selected(self, event: OptionList.OptionSelected) -> None:
        if event.option.id is not None:
            self.post_message(self.Selected(int(event.option.id)))
