"""
farmline Console — the marketplace inbox in a terminal.
Textual-based TUI: conversation list on the left, open thread on the right.
Mounting starts the sync scheduler, unmounting stops it, and losing
terminal focus suspends polling until the console is looked at again.
Entry point: farmline jack (alias: tui, console)
"""
from __future__ import annotations
from pathlib import Path
from typing import ClassVar
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal
from textual.timer import Timer
from textual.widgets import Footer, Header
from farmline.notify import Notice, Notifier
from farmline.session import MessagingSession
from farmline.tui.screens.base import FarmlinePane
from farmline.tui.screens.inbox import InboxPane
from farmline.tui.screens.thread import ThreadPane

# ---------------------------------------------------------------------------
# Pane registry — (id, pane_class), rendered left to right
# ---------------------------------------------------------------------------
PANE_REGISTRY: list[tuple[str, type[FarmlinePane]]] = [
    ("inbox",  InboxPane),
    ("thread", ThreadPane),
]

_SEVERITY = {"success": "information", "info": "information", "error": "error"}


class ToastNotifier(Notifier):
    """Shows notices as console toasts, then hands them to the configured sink."""

    def __init__(self, app: App, forward: Notifier):
        super().__init__(forward.keep)
        self.app = app
        self.forward = forward

    async def deliver(self, notice: Notice) -> None:
        self.app.notify(notice.text, severity=_SEVERITY.get(notice.level, "information"))
        await self.forward.deliver(notice)


class FarmlineApp(App):
    """farmline messaging console."""
    CSS_PATH = str(Path(__file__).parent / "styles" / "main.tcss")
    TITLE = "farmline"
    SUB_TITLE = "del campo a tu mesa"
    BINDINGS: ClassVar[list[Binding]] = [
        Binding("q", "quit", "Quit", priority=True),
        Binding("r", "refresh_all", "Refresh", show=True),
        Binding("a", "mark_all_read", "Mark all read", show=True),
        Binding("escape", "close_conversation", "Close", show=True),
    ]
    # How often the panes check the cache for a new version (seconds)
    RENDER_INTERVAL = 0.5

    def __init__(self, session: MessagingSession, **kwargs):
        super().__init__(**kwargs)
        self.session = session
        session.notifier = ToastNotifier(self, session.notifier)
        self._rendered_version = -1
        self._renderer: Timer | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Horizontal(id="main"):
            for pane_id, pane_cls in PANE_REGISTRY:
                yield pane_cls(id=pane_id)
        yield Footer()

    async def on_mount(self) -> None:
        self.refresh_panes()
        self._renderer = self.set_interval(self.RENDER_INTERVAL, self._render_if_changed)
        await self.session.start()

    async def on_unmount(self) -> None:
        await self.session.stop()

    async def on_app_blur(self) -> None:
        await self.session.set_visible(False)

    async def on_app_focus(self) -> None:
        await self.session.set_visible(True)

    def _render_if_changed(self) -> None:
        """Called every RENDER_INTERVAL — re-render only when the cache moved."""
        if self.session.snapshot.version != self._rendered_version:
            self.refresh_panes()

    def refresh_panes(self) -> None:
        self._rendered_version = self.session.snapshot.version
        for pane_id, _cls in PANE_REGISTRY:
            self.query_one(f"#{pane_id}", FarmlinePane).refresh_content()

    async def on_inbox_pane_selected(self, event: InboxPane.Selected) -> None:
        await self.session.open_conversation(event.peer_id)
        thread = self.query_one("#thread", ThreadPane)
        thread.load_draft()
        self.refresh_panes()
        thread.query_one("#compose").focus()

    async def action_refresh_all(self) -> None:
        await self.session.refresh()
        self.refresh_panes()

    async def action_mark_all_read(self) -> None:
        await self.session.mark_all_read()
        self.refresh_panes()

    async def action_close_conversation(self) -> None:
        await self.session.close_conversation()
        self.refresh_panes()
