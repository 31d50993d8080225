"""
Notification sinks — where user-facing feedback goes.

The session reports the outcome of foreground actions (send, delete,
mark-all-read) as notices. A sink turns them into something the user sees:
the console shows them as toasts, LogNotifier writes them to the log, and
WebhookNotifier forwards them to an external listener.

Usage:
    # Terminal 1: start a listener
    nc -lk 9999

    # config.yaml:
    notify:
      webhook_url: "tcp://localhost:9999"

If the endpoint is down, the notice is logged and skipped — never blocks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)


@dataclass
class Notice:
    level: str       # "success", "info", "error"
    text: str
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_json(self) -> dict:
        return {"ts": self.ts, "level": self.level, "text": self.text}


class Notifier:
    """Base sink: remembers recent notices and logs them."""

    def __init__(self, keep: int = 50):
        self.keep = keep
        self.recent: list[Notice] = []

    async def notify(self, level: str, text: str) -> Notice:
        notice = Notice(level=level, text=text)
        self.recent = (self.recent + [notice])[-self.keep:]
        log = logger.warning if level == "error" else logger.info
        log("[%s] %s", level, text)
        await self.deliver(notice)
        return notice

    async def deliver(self, notice: Notice) -> None:
        """Hand the notice to wherever the user will see it. Override in subclasses."""


class LogNotifier(Notifier):
    """Notices go to the log only."""


class WebhookNotifier(Notifier):
    """Sends notices to a webhook (http/https) or a raw TCP listener (tcp://)."""

    def __init__(self, webhook_url: str, keep: int = 50):
        super().__init__(keep)
        self.webhook_url = webhook_url.rstrip("/")
        logger.info("WebhookNotifier enabled: %s", self.webhook_url)

    async def deliver(self, notice: Notice) -> None:
        try:
            if self.webhook_url.startswith("http"):
                await self._send_http(notice.to_json())
            else:
                await self._send_tcp(notice.to_json())
        except (httpx.HTTPError, OSError, ValueError, asyncio.TimeoutError) as e:
            logger.debug("Webhook notify failed (non-fatal): %s", e)

    async def _send_http(self, payload: dict) -> None:
        async with httpx.AsyncClient(timeout=2.0) as client:
            await client.post(self.webhook_url, json=payload)

    async def _send_tcp(self, payload: dict) -> None:
        # Parse host:port from URL like "tcp://localhost:9999"
        addr = self.webhook_url.replace("tcp://", "")
        if ":" in addr:
            host, port_text = addr.rsplit(":", 1)
            port = int(port_text)
        else:
            host = addr
            port = 9999

        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=1.0)
        try:
            writer.write((json.dumps(payload, ensure_ascii=False) + "\n").encode())
            await writer.drain()
        finally:
            writer.close()
            await writer.wait_closed()


def make_notifier(cfg: dict) -> Notifier:
    url = cfg.get("notify", {}).get("webhook_url", "")
    return WebhookNotifier(url) if url else LogNotifier()
