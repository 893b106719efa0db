"""Inbound message models delivered by the channel."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass
class QuotedMessage:
    """The message a user replied to."""
    text: str
    is_from_bot: bool = False


@dataclass
class InboundMessage:
    """Normalized message event received from the channel."""
    sender: str
    text: str
    id: str
    sender_name: str = ""
    is_group: bool = False
    quoted_message: Optional[QuotedMessage] = None
    has_quote: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return self.sender_name or self.sender
