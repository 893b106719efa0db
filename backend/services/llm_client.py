"""LLM Client for Groq API integration with a multi-credential pool."""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set
from groq import AsyncGroq
from groq import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)
import logging

from config import (
    GROQ_API_KEYS,
    GROQ_MODEL,
    GROQ_MAX_TOKENS,
    GROQ_TEMPERATURE,
    GROQ_TIMEOUT,
    GROQ_MAX_RETRIES,
    GROQ_RETRY_DELAY,
)
from models.conversation import Turn

logger = logging.getLogger(__name__)

# Fallback classification for provider errors that carry no status code
RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "rate_limit_exceeded",
    "internal",
    "unavailable",
    "deadline_exceeded",
    "temporarily unavailable",
)


class ErrorKind(str, Enum):
    """Failure classes for backend requests."""
    TRANSIENT = "transient"
    FATAL = "fatal"
    EXHAUSTED = "exhausted"


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str
    credential_index: int


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    kind = ErrorKind.FATAL

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class TransientBackendError(LLMClientError):
    """Timeout, rate limit or temporary unavailability; worth retrying."""
    kind = ErrorKind.TRANSIENT


class FatalBackendError(LLMClientError):
    """Authentication or invalid request; retrying will not help."""
    kind = ErrorKind.FATAL


class BackendError(LLMClientError):
    """Final failure of a generation call, after retries where allowed."""

    def __init__(
        self,
        error: LLMError,
        kind: ErrorKind,
        last_error: Optional[LLMClientError] = None
    ):
        super().__init__(error)
        self.kind = kind
        self.last_error = last_error


@dataclass
class CredentialSlot:
    """Usage statistics for one API key."""
    index: int
    api_key: str
    client: Any
    request_count: int = 0
    error_count: int = 0
    last_request_time: float = 0.0

    @property
    def error_rate(self) -> float:
        return self.error_count / max(self.request_count, 1)

    def score(self, now: float) -> float:
        """Higher is better: reliable keys first, then keys that rested longest."""
        idle_seconds = max(now - self.last_request_time, 0.0)
        return (1 - self.error_rate) * 100 + min(idle_seconds, 60.0)


class LLMClient:
    """
    Client for the Groq chat completions API spread over several API keys.

    Every attempt picks the credential with the best score, so keys that keep
    failing drift out of rotation while healthy keys share the load.
    """

    def __init__(
        self,
        api_keys: Optional[Sequence[str]] = None,
        model: str = GROQ_MODEL,
        max_tokens: int = GROQ_MAX_TOKENS,
        temperature: float = GROQ_TEMPERATURE,
        timeout: float = GROQ_TIMEOUT,
        max_retries: int = GROQ_MAX_RETRIES,
        retry_delay: float = GROQ_RETRY_DELAY,
        clock: Optional[Callable[[], float]] = None
    ):
        """
        Initialize the client pool.

        Args:
            api_keys: Groq API keys (defaults to GROQ_API_KEYS from environment)
            model: Chat model name
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature
            timeout: Per-attempt timeout in seconds
            max_retries: Retries after the first attempt
            retry_delay: Base delay in seconds for exponential backoff
            clock: Wall clock used for credential idle time (for tests)
        """
        keys = list(api_keys) if api_keys is not None else list(GROQ_API_KEYS or [])
        if not keys:
            raise ValueError("GROQ_API_KEYS must be provided or set in environment")

        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._clock = clock or time.time
        self._abandoned: Set[asyncio.Task] = set()

        # Retries are ours; the SDK must not retry underneath us
        self.slots: List[CredentialSlot] = [
            CredentialSlot(index=i, api_key=key, client=AsyncGroq(api_key=key, max_retries=0))
            for i, key in enumerate(keys)
        ]
        logger.info(f"LLMClient initialized with {len(self.slots)} credential(s), model {model}")

    def select_best(self, now: Optional[float] = None) -> CredentialSlot:
        """Return the highest scoring slot; ties go to the earliest registered."""
        now = self._clock() if now is None else now
        best = self.slots[0]
        best_score = best.score(now)
        for slot in self.slots[1:]:
            score = slot.score(now)
            if score > best_score:
                best, best_score = slot, score
        return best

    async def generate(
        self,
        history: Sequence[Turn],
        auxiliary_context: Optional[str] = None,
        max_retries: Optional[int] = None
    ) -> str:
        """
        Generate a reply to a conversation.

        Args:
            history: Conversation turns, oldest first, ending with the user turn
            auxiliary_context: Persona/memory text sent as the system message
            max_retries: Override for the configured retry budget

        Returns:
            Non-empty reply text

        Raises:
            BackendError: kind EXHAUSTED once every attempt has failed; its
                `last_error` keeps the final transient or fatal classification
        """
        messages = self.build_messages(history, auxiliary_context)
        if not messages:
            raise ValueError("Cannot generate a reply from an empty context")
        retries = self.max_retries if max_retries is None else max_retries
        return await self._generate_with_retry(messages, retries)

    async def generate_simple(self, prompt: str, max_retries: int = 2) -> str:
        """Single-shot generation with no conversation history, for analysis calls."""
        return await self._generate_with_retry([{"role": "user", "content": prompt}], max_retries)

    async def _generate_with_retry(self, messages: List[Dict[str, str]], retries: int) -> str:
        start_time = time.time()
        retries = max(retries, 0)
        attempts = retries + 1
        last_error: Optional[LLMClientError] = None

        for attempt in range(attempts):
            slot = self.select_best()
            slot.request_count += 1

            try:
                response = await self._request(slot, messages)
            except LLMClientError as e:
                last_error = e
            else:
                slot.last_request_time = self._clock()
                logger.debug(
                    f"Groq response generated (credential {slot.index}, attempt {attempt + 1}, "
                    f"{response.latency_ms}ms)"
                )
                return response.text

            slot.error_count += 1
            logger.warning(
                f"Groq request failed (attempt {attempt + 1}/{attempts}): {last_error.error.message}",
                extra={
                    "error_code": last_error.error.code,
                    "credential_index": slot.index,
                    "retryable": last_error.retryable
                }
            )

            # Non-retryable failures also use the remaining attempts
            if attempt < retries:
                await asyncio.sleep(self.retry_delay * (2 ** attempt))

        latency_ms = int((time.time() - start_time) * 1000)
        details = {
            "model": self.model,
            "attempts": attempts,
            "latency_ms": latency_ms,
            "last_error_code": last_error.error.code,
            "last_error_retryable": last_error.retryable,
        }

        logger.error(f"Groq request failed after {attempts} attempts: {last_error.error.message}")
        raise BackendError(
            LLMError(
                code="EXHAUSTED",
                message=f"Groq request failed: {last_error.error.message}",
                details=details
            ),
            kind=ErrorKind.EXHAUSTED,
            last_error=last_error
        )

    async def _request(self, slot: CredentialSlot, messages: List[Dict[str, str]]) -> LLMResponse:
        """Issue one request on a slot, bounded by the timeout."""
        start_time = time.time()
        request = asyncio.ensure_future(
            slot.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature
            )
        )
        try:
            done, _ = await asyncio.wait({request}, timeout=self.timeout)
        except asyncio.CancelledError:
            request.cancel()
            raise

        latency_ms = int((time.time() - start_time) * 1000)
        details = {"model": self.model, "credential_index": slot.index, "latency_ms": latency_ms}

        if not done:
            # No cancel contract with the provider: let it finish, discard the outcome
            self._abandon(request)
            raise TransientBackendError(LLMError(
                code="TIMEOUT_ERROR",
                message="Request timed out. Please try again.",
                details={**details, "timeout": self.timeout}
            ))

        try:
            response = request.result()
        except Exception as e:
            raise self._classify(e, details) from e

        text = response.choices[0].message.content if response.choices else None
        if not text or not text.strip():
            raise TransientBackendError(LLMError(
                code="EMPTY_RESPONSE",
                message="Empty response from Groq",
                details=details
            ))

        usage = response.usage
        result = LLMResponse(
            text=text,
            tokens_input=getattr(usage, "prompt_tokens", 0) if usage else 0,
            tokens_output=getattr(usage, "completion_tokens", 0) if usage else 0,
            latency_ms=latency_ms,
            model_used=self.model,
            credential_index=slot.index
        )
        logger.info(
            f"Generated response: model={self.model}, credential={slot.index}, "
            f"input_tokens={result.tokens_input}, output_tokens={result.tokens_output}, "
            f"latency={latency_ms}ms"
        )
        return result

    def _abandon(self, request: asyncio.Task) -> None:
        self._abandoned.add(request)

        def _discard(task: asyncio.Task) -> None:
            self._abandoned.discard(task)
            if not task.cancelled() and task.exception() is not None:
                logger.debug(f"Timed-out Groq request finished with error: {task.exception()}")

        request.add_done_callback(_discard)

    @staticmethod
    def _classify(exc: Exception, details: Dict[str, Any]) -> LLMClientError:
        """Map a provider exception onto a transient or fatal client error."""
        details = {**details, "original_error": str(exc)}

        if isinstance(exc, APITimeoutError):
            return TransientBackendError(LLMError(
                code="TIMEOUT_ERROR",
                message="Request timed out. Please try again.",
                details=details
            ))
        if isinstance(exc, RateLimitError):
            return TransientBackendError(LLMError(
                code="RATE_LIMIT_ERROR",
                message="Rate limit exceeded. Please try again in a few moments.",
                details={**details, "retry_after": 60}
            ))
        if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
            return FatalBackendError(LLMError(
                code="AUTHENTICATION_ERROR",
                message="Authentication failed. Please check your API key.",
                details=details
            ))
        if isinstance(exc, (BadRequestError, NotFoundError, UnprocessableEntityError)):
            return FatalBackendError(LLMError(
                code="INVALID_REQUEST_ERROR",
                message=f"Groq rejected the request: {exc}",
                details=details
            ))
        if isinstance(exc, InternalServerError):
            return TransientBackendError(LLMError(
                code="SERVICE_UNAVAILABLE",
                message="Groq service temporarily unavailable.",
                details=details
            ))
        if isinstance(exc, APIConnectionError):
            return TransientBackendError(LLMError(
                code="CONNECTION_ERROR",
                message=f"Could not reach Groq: {exc}",
                details=details
            ))
        if isinstance(exc, APIStatusError):
            error = LLMError(
                code="API_ERROR",
                message=f"Groq API error: {exc}",
                details={**details, "status_code": exc.status_code}
            )
            if exc.status_code in (408, 409, 429) or exc.status_code >= 500:
                return TransientBackendError(error)
            return FatalBackendError(error)
        if isinstance(exc, APIError):
            error = LLMError(code="API_ERROR", message=f"Groq API error: {exc}", details=details)
            message = str(exc).lower()
            if any(marker in message for marker in RETRYABLE_MARKERS):
                return TransientBackendError(error)
            return FatalBackendError(error)

        return FatalBackendError(LLMError(
            code="UNKNOWN_ERROR",
            message=f"Unexpected error during generation: {exc}",
            details={**details, "error_type": type(exc).__name__}
        ))

    @staticmethod
    def build_messages(
        history: Sequence[Turn],
        auxiliary_context: Optional[str] = None
    ) -> List[Dict[str, str]]:
        """
        Build the chat completion message list.

        Args:
            history: Conversation turns, oldest first
            auxiliary_context: Persona and memory context for the system message

        Returns:
            Messages in Groq chat format
        """
        messages: List[Dict[str, str]] = []
        if auxiliary_context and auxiliary_context.strip():
            messages.append({"role": "system", "content": auxiliary_context.strip()})
        for turn in history:
            messages.append({"role": turn.role, "content": turn.content})
        return messages

    def get_stats(self) -> Dict[str, Any]:
        """Per-credential usage statistics (API keys are never included)."""
        return {
            "total_clients": len(self.slots),
            "model": self.model,
            "clients": [
                {
                    "index": slot.index,
                    "request_count": slot.request_count,
                    "error_count": slot.error_count,
                    "last_request_time": slot.last_request_time,
                    "error_rate": round(slot.error_rate * 100, 2),
                }
                for slot in self.slots
            ],
        }

    def reset_stats(self) -> None:
        for slot in self.slots:
            slot.request_count = 0
            slot.error_count = 0
            slot.last_request_time = 0.0
        logger.info("Groq client statistics reset")

    async def health_check(self) -> Dict[str, Any]:
        """Ask the model for a fixed answer to confirm connectivity."""
        try:
            reply = await self.generate_simple(
                'Respond with exactly "OK" if you can understand this message.',
                max_retries=1
            )
        except LLMClientError as e:
            return {"healthy": False, "error": e.error.message, "stats": self.get_stats()}
        return {
            "healthy": "ok" in reply.strip().lower(),
            "response": reply,
            "stats": self.get_stats(),
        }
