"""
Thread pane — the open conversation as chat bubbles, oldest at the top,
with a compose field at the bottom. Enter sends; a failed send leaves the
text in the field.
"""
from __future__ import annotations
from textual.app import ComposeResult
from textual.containers import ScrollableContainer
from textual.widgets import Input, Static
from farmline.errors import MessagingError
from farmline.models import Conversation, Message
from farmline.render import format_time
from farmline.tui.screens.base import FarmlinePane, escape


def message_markup(msg: Message, user_id: int) -> str:
    """Rich markup for one bubble."""
    mine = msg.sender_id == user_id
    who = "tú" if mine else escape(msg.sender_name or f"#{msg.sender_id}")
    style = "cyan" if mine else "yellow"
    arrow = "──▶" if mine else "◀──"
    header = f"[dim]{format_time(msg.sent_at)} {arrow}[/dim] [bold {style}]{who}[/bold {style}]"
    if msg.subject:
        header += f"  [dim]\\[{escape(msg.subject)}][/dim]"
    if msg.pending:
        header += "  [magenta]enviando…[/magenta]"
    elif not mine and not msg.read:
        header += "  [green]nuevo[/green]"
    body = "\n    ".join(escape(msg.body).split("\n"))
    return f"{header}\n    {body}"


def thread_markup(conv: Conversation | None, user_id: int) -> str:
    if conv is None or not conv.messages:
        return "[dim]No messages yet. Write the first one below.[/dim]"
    sep = "[dim]  " + "─" * 40 + "[/dim]"
    return f"\n{sep}\n".join(message_markup(m, user_id) for m in conv.thread())


class ThreadPane(FarmlinePane):
    """Open conversation plus compose field."""

    def compose(self) -> ComposeResult:
        yield Static("", id="thread-title", markup=True)
        with ScrollableContainer(id="thread-scroll"):
            yield Static(id="thread-body", markup=True)
        yield Input(placeholder="Escribe un mensaje…", id="compose")

    def refresh_content(self) -> None:
        conv = self.session.conversation()
        title = self.query_one("#thread-title", Static)
        body = self.query_one("#thread-body", Static)

        if self.session.open_peer is None:
            title.update("[dim]── no conversation open ──[/dim]")
            body.update("[dim]Pick a conversation on the left.[/dim]")
            return

        name = escape(conv.peer_display_name) if conv else f"#{self.session.open_peer}"
        email = f"  [dim]<{escape(conv.peer_email)}>[/dim]" if conv and conv.peer_email else ""
        title.update(f"[bold green]── {name} ──[/bold green]{email}")
        body.update(thread_markup(conv, self.session.user.id))
        self.query_one("#thread-scroll", ScrollableContainer).scroll_end(animate=False)

    def load_draft(self) -> None:
        """Put the session's draft into the compose field (after switching peer)."""
        self.query_one("#compose", Input).value = self.session.outbox.draft.text

    def on_input_changed(self, event: Input.Changed) -> None:
        self.session.outbox.draft.text = event.value

    async def on_input_submitted(self, event: Input.Submitted) -> None:
        field = event.input
        try:
            await self.session.send_draft()
        except MessagingError:
            # Already reported as a notice; the text stays in the field
            return
        field.value = ""
        self.refresh_content()
