"""
Message store factory.

Usage:
    from farmline.store import make_store
    store = make_store(cfg)            # cfg is the loaded config.yaml dict

api.provider picks the implementation ("http" by default, "memory" for the
offline demo). Reads are wrapped with RetryingMessageStore unless
retry.max_retries is 0.
"""

from __future__ import annotations

import logging

from farmline.store.base import MessageStore
from farmline.store.http import HttpMessageStore
from farmline.store.memory import MemoryMessageStore
from farmline.store.retry import RetryingMessageStore

logger = logging.getLogger(__name__)


def make_store(cfg: dict, user_id: int = 0) -> MessageStore:
    """
    Instantiate the configured store.

    Raises:
        ValueError: unknown provider, or http provider without a url.
    """
    api_cfg = cfg.get("api", {})
    provider = api_cfg.get("provider", "http")

    if provider == "http":
        url = api_cfg.get("url", "")
        if not url:
            raise ValueError("api.url is required for the http message store")
        store: MessageStore = HttpMessageStore(
            url=url,
            token=api_cfg.get("token", ""),
            timeout=api_cfg.get("timeout", 30),
        )
    elif provider == "memory":
        store = MemoryMessageStore(user_id=user_id)
    else:
        raise ValueError(f"Unknown message store provider: '{provider}'. Available: http, memory")

    retry_cfg = cfg.get("retry", {})
    max_retries = retry_cfg.get("max_retries", 1)
    if max_retries > 0:
        store = RetryingMessageStore(
            store,
            max_retries=max_retries,
            delay=retry_cfg.get("delay", 0.5),
            backoff_base=retry_cfg.get("backoff_base", 2.0),
            backoff_max=retry_cfg.get("backoff_max", 5.0),
        )

    logger.info("Message store: %r (retries=%d)", store, max_retries)
    return store


__all__ = [
    "MessageStore",
    "HttpMessageStore",
    "MemoryMessageStore",
    "RetryingMessageStore",
    "make_store",
]
