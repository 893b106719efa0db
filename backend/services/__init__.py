"""Services for the ChatFlow agent."""
from .rate_limiter import RateLimiter, RateWindow
from .conversation_store import ConversationStore, StorageIOError
from .llm_client import (
    LLMClient,
    LLMResponse,
    LLMError,
    LLMClientError,
    TransientBackendError,
    FatalBackendError,
    BackendError,
    ErrorKind,
    CredentialSlot,
)
from .channel import Channel, ChannelError, WebhookChannel
from .content_assembler import ContentAssembler
from .persona import PersonaProvider, MoodAnalyzer, find_crisis_keyword
from .performance_monitor import PerformanceMonitor
from .message_dispatcher import MessageDispatcher

__all__ = [
    'RateLimiter', 'RateWindow', 'ConversationStore', 'StorageIOError', 'LLMClient', 'LLMResponse',
    'LLMError', 'LLMClientError', 'TransientBackendError', 'FatalBackendError', 'BackendError',
    'ErrorKind', 'CredentialSlot', 'Channel', 'ChannelError', 'WebhookChannel', 'ContentAssembler',
    'PersonaProvider', 'MoodAnalyzer', 'find_crisis_keyword', 'PerformanceMonitor', 'MessageDispatcher'
]
