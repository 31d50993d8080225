#!/usr/bin/env python3
"""
farmline CLI — talk to the farmers' market from the terminal.

Every command has a short name and a standard alias:

    COMMAND         ALIAS           WHAT IT DOES
    -------         -----           ----------------------------------
    inbox           ls              List conversations, most recent first
    thread          open            Show one conversation (marks it read)
    send            say             Send a message to a peer
    read            ack             Mark one message (or everything) read
    unread          badge           Show the unread count
    delete          rm              Delete a message
    contact         ask             Ask a producer about a product, no account needed
    watch           tail            Follow new messages as they arrive
    interval        poll            Show or tune poll intervals live
    jack            tui, console    Launch the interactive console
    tone            banner          Print the banner

Global options: --config PATH, --demo (offline sample inbox, no server).
"""

import argparse
import asyncio
import logging
import sys

__version__ = "0.3.0"

BANNER = r"""
    ╔══════════════════════════════════════════════════╗
    ║                                                  ║
    ║   ███████  █████  ██████  ███    ███             ║
    ║   ██      ██   ██ ██   ██ ████  ████             ║
    ║   █████   ███████ ██████  ██ ████ ██             ║
    ║   ██      ██   ██ ██   ██ ██  ██  ██             ║
    ║   ██      ██   ██ ██   ██ ██      ██  line       ║
    ║                                                  ║
    ║   Del campo a tu mesa, sin intermediarios. v""" + __version__ + r"""║
    ║                                                  ║
    ╚══════════════════════════════════════════════════╝
"""

# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def _setup_logging(cfg: dict, verbose: bool = False):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    if verbose:
        level = logging.DEBUG
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _load_cfg(args) -> dict:
    from farmline.config import get_config, load_config

    try:
        return load_config(args.config) if args.config else get_config()
    except FileNotFoundError:
        if args.demo:
            return {}
        raise


def _make_session(args):
    """Build a MessagingSession from config (or the offline demo inbox)."""
    from farmline.models import CurrentUser
    from farmline.notify import make_notifier
    from farmline.session import MessagingSession
    from farmline.store.memory import MemoryMessageStore

    cfg = args.cfg
    if args.demo:
        store = MemoryMessageStore.demo(user_id=1)
        user = CurrentUser(id=1, display_name="Ana Torres", email="ana@example.com")
        return MessagingSession(user, store, notifier=make_notifier(cfg))
    return MessagingSession.from_config(cfg)


async def _load(session) -> None:
    """Fetch once; a failed fetch is an error here, not a skipped tick."""
    await session.refresh()
    if session.sync.last_error is not None:
        raise session.sync.last_error


def _color() -> bool:
    return sys.stdout.isatty()


def _run(coro) -> int:
    """Run one command coroutine; MessagingErrors become a one-line message."""
    from farmline.errors import MessagingError

    try:
        return asyncio.run(coro) or 0
    except MessagingError as e:
        print(f"  ✗  {e}")
        return 1
    except KeyboardInterrupt:
        print("\n  [line closed]")
        return 0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_inbox(args):
    """List conversations."""
    from farmline.render import format_inbox

    async def go():
        session = _make_session(args)
        await _load(session)
        convs = session.conversations
        if args.unread:
            convs = tuple(c for c in convs if c.unread_count)
        print(format_inbox(convs[: args.limit], session.user.id, color=_color()))
        print(f"\n  {len(session.conversations)} conversation(s), {session.badge_count()} unread")

    return _run(go())


def cmd_thread(args):
    """Show the conversation with one peer."""
    from farmline.render import format_thread

    async def go():
        session = _make_session(args)
        await _load(session)
        conv = await session.open_conversation(args.peer, mark_read=not args.keep_unread)
        print(format_thread(conv, session.user.id, color=_color()))

    return _run(go())


def cmd_send(args):
    """Send a message."""
    async def go():
        session = _make_session(args)
        await _load(session)
        outgoing = await session.send(
            " ".join(args.text),
            subject=args.subject,
            linked_product_id=args.product,
            peer_id=args.peer,
        )
        record = outgoing.confirmed
        print(f"  ✓  Sent to #{args.peer}" + (f"  (id {record.id})" if record and record.id else ""))
        if record and record.subject:
            print(f"     asunto: {record.subject}")

    return _run(go())


def cmd_read(args):
    """Mark messages read."""
    async def go():
        session = _make_session(args)
        await _load(session)
        if args.all or args.peer is not None:
            count = await session.mark_all_read(args.peer)
            print(f"  ✓  {count} message(s) marked as read")
        elif args.message_id is not None:
            changed = await session.mark_read(args.message_id)
            print("  ✓  Marked as read" if changed else "  ·  Nothing to mark (already read or not yours)")
        else:
            print("  Give a message id, --peer ID or --all")
            return 2
        print(f"     unread now: {session.badge_count()}")

    return _run(go())


def cmd_unread(args):
    """Show unread counts."""
    async def go():
        session = _make_session(args)
        await _load(session)
        print(f"  ✉  {session.badge_count()} unread")
        for conv in session.conversations:
            if conv.unread_count:
                print(f"     #{conv.peer_id:<5} {conv.peer_display_name}: {conv.unread_count}")
        if args.server:
            print(f"     server says: {await session.server_unread_count()}")

    return _run(go())


def cmd_delete(args):
    """Delete a message."""
    async def go():
        session = _make_session(args)
        await _load(session)
        await session.delete(args.message_id)
        print(f"  ✓  Message {args.message_id} deleted")

    return _run(go())


def cmd_contact(args):
    """Ask a producer about a product without an account."""
    async def go():
        session = _make_session(args)
        await session.contact_producer(
            args.product, args.name, args.email, " ".join(args.text), phone=args.phone,
        )
        print(f"  ✓  Your message about product #{args.product} was sent to its producer")

    return _run(go())


def cmd_watch(args):
    """Follow new messages as they land in the cache."""
    from farmline.render import C_DIM, C_RESET, format_message

    async def go():
        session = _make_session(args)
        seen: set[int] = set()
        color = _color()
        backlog = True

        def show(snapshot, source):
            nonlocal backlog
            new = []
            for conv in snapshot.conversations:
                if args.peer is not None and conv.peer_id != args.peer:
                    continue
                for msg in conv.messages:
                    if msg.id is not None and msg.id > 0 and msg.id not in seen:
                        seen.add(msg.id)
                        new.append(msg)
            new.sort(key=lambda m: m.sort_key)
            if backlog and new:
                new = new[-args.last:]
                backlog = False
            for msg in new:
                print(format_message(msg, session.user.id, color=color))

        session.cache.subscribe(show)
        await session.start()
        if args.peer is not None:
            await session.open_conversation(args.peer)
        dim, reset = (C_DIM, C_RESET) if color else ("", "")
        print(f"\n  {dim}[listening for new messages... Ctrl+C to hang up]{reset}\n")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await session.stop()

    return _run(go())


def cmd_interval(args):
    """Show or override the poll intervals of running consoles."""
    from farmline.config import POLL_CHANNELS, get_runtime_config, set_poll_interval

    wanted = {"thread": args.thread, "list": args.list}
    for channel in POLL_CHANNELS:
        if args.reset:
            set_poll_interval(channel, None)
        elif wanted[channel] is not None and not set_poll_interval(channel, wanted[channel]):
            print(f"  ✗  Could not write the {channel} interval")
            return 1

    poll = args.cfg.get("poll", {})
    defaults = {"thread": poll.get("thread_interval", 5), "list": poll.get("list_interval", 15)}
    runtime = get_runtime_config()
    for channel in POLL_CHANNELS:
        override = runtime.get(f"{channel}_interval")
        seconds = defaults[channel] if override is None else override
        source = "config" if override is None else "runtime"
        shown = "on demand" if float(seconds) == 0 else f"{seconds}s"
        print(f"  {channel:<8} {shown:<10} ({source})")
    return 0


def cmd_jack(args):
    """Launch the farmline console."""
    from farmline.tui.app import FarmlineApp
    app = FarmlineApp(_make_session(args))
    app.run()
    return 0


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)
    return 0


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="farmline",
        description="farmline — buyer/seller messaging for the farmers' market.",
        epilog=(
            "Each command has a short name and standard aliases.\n"
            "Example: 'farmline inbox' and 'farmline ls' do the same thing.\n"
            "Run 'farmline <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"farmline {__version__}",
    )
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    parser.add_argument("--demo", action="store_true", help="Use an offline sample inbox")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # inbox / ls
    def setup_inbox(p):
        p.add_argument("--unread", "-u", action="store_true", help="Only conversations with unread messages")
        p.add_argument("--limit", "-n", type=int, default=50, help="Show at most N conversations")

    _add_command(sub, ["inbox", "ls"], "List conversations", cmd_inbox, setup_inbox)

    # thread / open
    def setup_thread(p):
        p.add_argument("peer", type=int, help="Peer user id")
        p.add_argument("--keep-unread", action="store_true", help="Don't mark the conversation read")

    _add_command(sub, ["thread", "open"], "Show one conversation", cmd_thread, setup_thread)

    # send / say
    def setup_send(p):
        p.add_argument("peer", type=int, help="Recipient user id")
        p.add_argument("text", nargs="+", help="Message text")
        p.add_argument("--subject", "-s", default=None, help="Subject (default: derived from the conversation)")
        p.add_argument("--product", "-p", type=int, default=None, help="Link the message to a product id")

    _add_command(sub, ["send", "say"], "Send a message", cmd_send, setup_send)

    # read / ack
    def setup_read(p):
        p.add_argument("message_id", type=int, nargs="?", default=None, help="Message id")
        p.add_argument("--peer", type=int, default=None, help="Mark a whole conversation read")
        p.add_argument("--all", "-a", action="store_true", help="Mark everything read")

    _add_command(sub, ["read", "ack"], "Mark messages as read", cmd_read, setup_read)

    # unread / badge
    def setup_unread(p):
        p.add_argument("--server", action="store_true", help="Also ask the server for its own count")

    _add_command(sub, ["unread", "badge"], "Show the unread count", cmd_unread, setup_unread)

    # delete / rm
    def setup_delete(p):
        p.add_argument("message_id", type=int, help="Message id")

    _add_command(sub, ["delete", "rm"], "Delete a message", cmd_delete, setup_delete)

    # contact / ask
    def setup_contact(p):
        p.add_argument("product", type=int, help="Product id")
        p.add_argument("text", nargs="+", help="Message text")
        p.add_argument("--name", required=True, help="Your name")
        p.add_argument("--email", required=True, help="Your email")
        p.add_argument("--phone", default=None, help="Your phone (optional)")

    _add_command(sub, ["contact", "ask"], "Ask a producer about a product", cmd_contact, setup_contact)

    # watch / tail
    def setup_watch(p):
        p.add_argument("--peer", type=int, default=None, help="Only one conversation (polls its thread)")
        p.add_argument("--last", "-n", type=int, default=10, help="Show last N messages before following")

    _add_command(sub, ["watch", "tail"], "Follow new messages", cmd_watch, setup_watch)

    # interval / poll
    def setup_interval(p):
        p.add_argument("--thread", type=float, default=None, help="Seconds between thread polls (0 = off)")
        p.add_argument("--list", type=float, default=None, help="Seconds between list polls (0 = on demand)")
        p.add_argument("--reset", action="store_true", help="Drop runtime overrides, back to config.yaml")

    _add_command(sub, ["interval", "poll"], "Show or tune poll intervals", cmd_interval, setup_interval)

    # jack / tui / console
    _add_command(sub, ["jack", "tui", "console"], "Launch the interactive console", cmd_jack)

    # tone / banner
    _add_command(sub, ["tone", "banner"], "Print the banner", cmd_tone)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return 0

    if args.func is cmd_tone:
        return cmd_tone(args)

    try:
        args.cfg = _load_cfg(args)
    except FileNotFoundError as e:
        print(f"  ✗  {e}")
        print("     Point --config at a config.yaml, or try --demo")
        return 2
    _setup_logging(args.cfg, verbose=args.verbose)

    try:
        return args.func(args)
    except ValueError as e:
        # Bad config: missing api.url, non-numeric user.id, ...
        print(f"  ✗  {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
