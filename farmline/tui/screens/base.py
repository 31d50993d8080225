"""
Base class for the farmline console panes.
Every pane inherits from FarmlinePane, which provides:
  - refresh_content() hook (called by the app when the cache version moves)
  - access to the shared MessagingSession
  - markup helpers
"""
from __future__ import annotations
from textual.widget import Widget
from textual.widgets import Static


def escape(text: str) -> str:
    """Keep user text from being read as Rich markup."""
    return (text or "").replace("[", r"\[")


class FarmlinePane(Widget):
    """
    Base widget for console panes.
    Subclass this, implement compose() and refresh_content().
    """
    DEFAULT_CSS = """
    FarmlinePane {
        height: 1fr;
        width: 1fr;
    }
    """

    @property
    def session(self):
        return self.app.session

    def refresh_content(self) -> None:
        """Re-render from the current snapshot. Override in subclasses."""
        self.refresh()

    @staticmethod
    def section(title: str) -> Static:
        """Return a styled section header widget."""
        return Static(f"[bold green]── {title} ──[/bold green]", markup=True)
