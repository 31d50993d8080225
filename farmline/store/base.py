"""
Base message store abstraction.
All stores implement this interface so the session can treat them uniformly.
A store is a pure I/O boundary: it returns normalized Message objects and
raises farmline.errors on failure. It never groups or sorts.
"""

from __future__ import annotations

import abc
import logging

from farmline.errors import MethodNotSupportedError
from farmline.models import Message

logger = logging.getLogger(__name__)


class MessageStore(abc.ABC):
    """
    Abstract base for message stores.
    Reads return lists (possibly empty); writes return None or the created record.
    """

    name: str = "store"

    @abc.abstractmethod
    async def fetch_received(self) -> list[Message]:
        """Messages addressed to the local user."""
        ...

    @abc.abstractmethod
    async def fetch_sent(self) -> list[Message]:
        """Messages the local user sent."""
        ...

    @abc.abstractmethod
    async def fetch_conversation(self, peer_id: int) -> list[Message]:
        """Every message between the local user and peer_id, both directions."""
        ...

    @abc.abstractmethod
    async def send(
        self,
        peer_id: int,
        body: str,
        subject: str | None = None,
        linked_product_id: int | None = None,
        kind: str | None = None,
    ) -> Message | None:
        """
        Create a message. Returns the server record when the API echoes one.
        Raises ValidationError on an empty body, TransientNetworkError or
        ServerError otherwise.
        """
        ...

    @abc.abstractmethod
    async def mark_read(self, message_id: int) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, message_id: int) -> None:
        ...

    @abc.abstractmethod
    async def count_unread(self) -> int:
        """Server-side unread total for the local user."""
        ...

    async def contact_producer(
        self,
        product_id: int,
        name: str,
        email: str,
        body: str,
        phone: str | None = None,
    ) -> None:
        """Enquiry about a product without an account. Optional per store."""
        raise MethodNotSupportedError(f"{self.name}: contact_producer not supported")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
