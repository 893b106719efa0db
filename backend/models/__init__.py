"""Data models for the ChatFlow agent."""
from .conversation import Conversation, ConversationMetadata, Turn, USER, ASSISTANT, ROLES
from .message import InboundMessage, QuotedMessage
from .api import InboundMessageRequest, QuotedMessageModel, SubmitResponse, ClearResponse

__all__ = [
    "Conversation",
    "ConversationMetadata",
    "Turn",
    "USER",
    "ASSISTANT",
    "ROLES",
    "InboundMessage",
    "QuotedMessage",
    "InboundMessageRequest",
    "QuotedMessageModel",
    "SubmitResponse",
    "ClearResponse",
]
