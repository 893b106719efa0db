"""Outbound side of the message channel."""
import logging
from abc import ABC, abstractmethod
from typing import Optional
import httpx

from config import CHANNEL_WEBHOOK_URL, CHANNEL_TOKEN, CHANNEL_TIMEOUT

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """Raised when a reply cannot be delivered (e.g. the channel is disconnected)."""


class Channel(ABC):
    """Interface the dispatcher uses to talk back to a sender."""

    @abstractmethod
    async def send(self, sender: str, text: str) -> None:
        """Deliver a message. Raises ChannelError on failure."""

    @abstractmethod
    async def set_typing(self, sender: str, typing: bool) -> None:
        """Show or hide the typing indicator."""

    async def aclose(self) -> None:
        return None


class WebhookChannel(Channel):
    """Posts replies to a channel gateway over HTTP."""

    def __init__(
        self,
        base_url: str = CHANNEL_WEBHOOK_URL,
        token: Optional[str] = CHANNEL_TOKEN,
        timeout: float = CHANNEL_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport
        )
        logger.info(f"WebhookChannel initialized for {base_url}")

    async def _post(self, path: str, payload: dict) -> None:
        try:
            response = await self.client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ChannelError(
                f"Channel rejected {path}: HTTP {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            raise ChannelError(f"Channel unavailable: {e}") from e

    async def send(self, sender: str, text: str) -> None:
        await self._post("/send", {"to": sender, "text": text})

    async def set_typing(self, sender: str, typing: bool) -> None:
        await self._post("/typing", {"to": sender, "typing": typing})

    async def aclose(self) -> None:
        await self.client.aclose()
