"""
Terminal rendering for the CLI — inbox lines and chat bubbles with ANSI color.
Pure functions of the snapshot; nothing here touches the network.
"""

from __future__ import annotations

from datetime import datetime, timezone

from farmline.models import Conversation, Message

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_MINE = "\033[96m"      # cyan
C_THEIRS = "\033[93m"    # yellow
C_TIME = "\033[90m"      # gray
C_BORDER = "\033[90m"    # gray
C_UNREAD = "\033[92m"    # green
C_PENDING = "\033[95m"   # magenta
C_ERROR = "\033[91m"     # red

_NO_COLOR = {
    name: "" for name in (
        "reset", "bold", "dim", "mine", "theirs", "time", "border", "unread", "pending",
    )
}
_COLOR = {
    "reset": C_RESET, "bold": C_BOLD, "dim": C_DIM, "mine": C_MINE, "theirs": C_THEIRS,
    "time": C_TIME, "border": C_BORDER, "unread": C_UNREAD, "pending": C_PENDING,
}


def format_time(dt: datetime | None, now: datetime | None = None) -> str:
    """HH:MM for today, DD/MM otherwise, '--:--' when unknown."""
    if dt is None:
        return "--:--"
    now = now or datetime.now(timezone.utc)
    local = dt.astimezone()
    if local.date() == now.astimezone().date():
        return local.strftime("%H:%M")
    return local.strftime("%d/%m")


def preview(text: str, width: int = 48) -> str:
    """First line of a body, cut to width."""
    line = " ".join((text or "").split())
    if len(line) <= width:
        return line
    return line[: width - 1] + "…"


def format_conversation_line(conv: Conversation, user_id: int, color: bool = True) -> str:
    c = _COLOR if color else _NO_COLOR
    latest = conv.latest_message
    when = format_time(latest.sent_at if latest else None)
    text = ""
    if latest is not None:
        prefix = "tú: " if latest.sender_id == user_id else ""
        text = prefix + preview(latest.body)
    badge = f" {c['unread']}{c['bold']}({conv.unread_count}){c['reset']}" if conv.unread_count else ""
    name = f"{c['bold']}{conv.peer_display_name}{c['reset']}" if conv.unread_count else conv.peer_display_name
    return (
        f"  {c['dim']}#{conv.peer_id:<5}{c['reset']} {name}{badge}"
        f"  {c['time']}{when}{c['reset']}\n"
        f"         {c['dim']}{text}{c['reset']}"
    )


def format_inbox(conversations: tuple[Conversation, ...] | list[Conversation], user_id: int,
                 color: bool = True) -> str:
    if not conversations:
        return "  No conversations yet."
    c = _COLOR if color else _NO_COLOR
    sep = f"  {c['border']}{'─' * 60}{c['reset']}"
    return f"\n{sep}\n".join(format_conversation_line(conv, user_id, color) for conv in conversations)


def format_message(msg: Message, user_id: int, color: bool = True) -> str:
    """One chat bubble: header line plus indented body."""
    c = _COLOR if color else _NO_COLOR
    mine = msg.sender_id == user_id
    who_color = c["mine"] if mine else c["theirs"]
    who = "tú" if mine else (msg.sender_name or f"#{msg.sender_id}")
    arrow = "──▶" if mine else "◀──"

    header = f"  {c['time']}{format_time(msg.sent_at)}{c['reset']} {c['dim']}{arrow}{c['reset']} {who_color}{c['bold']}{who}{c['reset']}"
    if msg.subject:
        header += f"  {c['dim']}[{msg.subject}]{c['reset']}"
    if msg.product_name:
        header += f"  {c['dim']}producto: {msg.product_name}{c['reset']}"
    if msg.pending:
        header += f"  {c['pending']}enviando…{c['reset']}"
    elif not mine and not msg.read:
        header += f"  {c['unread']}nuevo{c['reset']}"
    if msg.id is not None and msg.id > 0:
        header += f"  {c['dim']}id:{msg.id}{c['reset']}"

    lines = [header]
    for body_line in (msg.body or "").split("\n"):
        lines.append(f"      {body_line}")
    return "\n".join(lines)


def format_thread(conv: Conversation | None, user_id: int, color: bool = True) -> str:
    if conv is None or not conv.messages:
        return "  No messages with this user yet."
    c = _COLOR if color else _NO_COLOR
    title = f"  {c['bold']}{conv.peer_display_name}{c['reset']}"
    if conv.peer_email:
        title += f"  {c['dim']}<{conv.peer_email}>{c['reset']}"
    lines = [title, f"  {c['border']}{'═' * 60}{c['reset']}"]
    lines.extend(format_message(m, user_id, color) for m in conv.thread())
    return "\n".join(lines)
