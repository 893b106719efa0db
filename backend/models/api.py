"""API request/response models."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from models.message import InboundMessage, QuotedMessage


class QuotedMessageModel(BaseModel):
    """Quoted message attached to an inbound event."""
    text: str
    is_from_bot: bool = False


class InboundMessageRequest(BaseModel):
    """Normalized inbound message pushed by the channel transport."""
    sender: str = Field(..., min_length=1)
    text: str
    id: str
    sender_name: str = ""
    is_group: bool = False
    quoted_message: Optional[QuotedMessageModel] = None
    has_quote: bool = False
    timestamp: Optional[datetime] = None

    def to_message(self) -> InboundMessage:
        """Convert the request body into the dispatcher's event type."""
        quoted = None
        if self.quoted_message is not None:
            quoted = QuotedMessage(
                text=self.quoted_message.text,
                is_from_bot=self.quoted_message.is_from_bot
            )
        message = InboundMessage(
            sender=self.sender,
            text=self.text,
            id=self.id,
            sender_name=self.sender_name,
            is_group=self.is_group,
            quoted_message=quoted,
            has_quote=self.has_quote,
        )
        if self.timestamp is not None:
            message.timestamp = self.timestamp
        return message


class SubmitResponse(BaseModel):
    """Acknowledgement for a queued message."""
    status: str
    sender: str
    message_id: str


class ClearResponse(BaseModel):
    """Result of clearing a conversation."""
    sender: str
    cleared: bool
