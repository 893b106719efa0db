"""
Per-sender message dispatcher.

Each sender gets a FIFO of pending messages and at most one worker task
draining it. Workers for different senders run concurrently on the event
loop; within a sender, messages are stored, sent to the model and answered
strictly in arrival order.
"""
import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, Set

from config import (
    BACKGROUND_WAIT_SECONDS,
    PERSONA_NAME,
    THINKING_DELAY,
)
from models.conversation import ASSISTANT, USER
from models.message import InboundMessage
from services.channel import Channel
from services.content_assembler import ContentAssembler
from services.conversation_store import ConversationStore, StorageIOError
from services.llm_client import LLMClient
from services.performance_monitor import PerformanceMonitor
from services.persona import find_crisis_keyword
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ContextProvider = Callable[[str], str]
Analyzer = Callable[[str, str], Awaitable[Optional[str]]]


class MessageDispatcher:
    """Serializes message handling per sender and runs the reply pipeline."""

    def __init__(
        self,
        store: ConversationStore,
        llm_client: LLMClient,
        channel: Channel,
        rate_limiter: Optional[RateLimiter] = None,
        assembler: Optional[ContentAssembler] = None,
        context_providers: Sequence[ContextProvider] = (),
        analyzers: Sequence[Analyzer] = (),
        monitor: Optional[PerformanceMonitor] = None,
        persona_name: str = PERSONA_NAME,
        background_wait: float = BACKGROUND_WAIT_SECONDS,
        thinking_delay: float = THINKING_DELAY,
        drain_timeout: float = 10.0
    ):
        """
        Wire the dispatcher to its collaborators.

        Args:
            store: Conversation store for user and assistant turns
            llm_client: Backend used to generate replies
            channel: Outbound channel for replies and typing indicators
            rate_limiter: Per-sender limiter (default: 10 messages per minute)
            assembler: Builds user text and cleans replies
            context_providers: `(sender) -> str` callables joined into the system message
            analyzers: Async `(sender, text) -> Optional[str]` background analyses
            monitor: Performance counters
            persona_name: Name that must appear in group messages to trigger a reply
            background_wait: Seconds the reply path waits for analyzers
            thinking_delay: Pause in seconds before generating, for natural pacing
            drain_timeout: Seconds `cleanup()` waits for in-flight messages
        """
        self.store = store
        self.llm_client = llm_client
        self.channel = channel
        self.rate_limiter = rate_limiter or RateLimiter()
        self.assembler = assembler or ContentAssembler(persona_name)
        self.context_providers: List[ContextProvider] = list(context_providers)
        self.analyzers: List[Analyzer] = list(analyzers)
        self.monitor = monitor or PerformanceMonitor()
        self.persona_name = persona_name
        self.background_wait = background_wait
        self.thinking_delay = thinking_delay
        self.drain_timeout = drain_timeout

        self._queues: Dict[str, Deque[InboundMessage]] = {}
        self._active: Set[str] = set()
        self._workers: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, message: InboundMessage) -> None:
        """
        Queue a message and start a worker for its sender if none is running.

        Must be called on the event loop. Enqueue and the worker check happen
        without a suspension point in between, so a sender never has two
        workers and a message never waits without one.
        """
        if self._closed:
            raise RuntimeError("MessageDispatcher has been shut down")

        loop = asyncio.get_running_loop()
        self._loop = loop
        sender = message.sender

        queue = self._queues.setdefault(sender, deque())
        queue.append(message)
        logger.debug(f"Message from {message.display_name} queued. Queue size: {len(queue)}")

        if sender not in self._active:
            self._active.add(sender)
            self._workers[sender] = loop.create_task(self._drain(sender))

    def submit_threadsafe(self, message: InboundMessage) -> None:
        """Submit from a thread other than the event loop's."""
        if self._loop is None:
            raise RuntimeError("Dispatcher has no event loop yet; call bind_loop() first")
        self._loop.call_soon_threadsafe(self.submit, message)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the event loop that `submit_threadsafe` hands messages to."""
        self._loop = loop

    async def _drain(self, sender: str) -> None:
        logger.debug(f"Started processing queue for {sender}")
        try:
            while not self._closed:
                queue = self._queues.get(sender)
                if not queue:
                    break
                message = queue.popleft()
                try:
                    await self._handle_message(message)
                except Exception as e:
                    logger.error(
                        f"Unhandled error for message {message.id} from {sender}: {e}",
                        exc_info=True,
                        extra={"sender": sender, "message_id": message.id}
                    )
        finally:
            # Runs right after the empty check with no await in between
            self._active.discard(sender)
            self._workers.pop(sender, None)
            if not self._queues.get(sender):
                self._queues.pop(sender, None)
            logger.debug(f"Finished processing queue for {sender}")

    # ------------------------------------------------------------------
    # Reply pipeline
    # ------------------------------------------------------------------

    async def _handle_message(self, message: InboundMessage) -> None:
        """Process one message; failures end in an apology, never in the worker."""
        start_time = time.time()
        sender = message.sender
        name = message.display_name

        if message.is_group and self.persona_name.lower() not in message.text.lower():
            logger.debug(f"Skipping group message because \"{self.persona_name}\" was not mentioned")
            return

        if not self.rate_limiter.try_acquire(sender):
            logger.debug(f"Rate limited user: {name}, message dropped")
            return

        preview = message.text if len(message.text) <= 50 else message.text[:50] + "..."
        logger.info(f"Processing message from {name}: {preview}")

        try:
            await self._process(message)
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.error(
                f"Failed to process message from {name}: {e}",
                exc_info=True,
                extra={"sender": sender, "message_id": message.id}
            )
            self.monitor.record_message(duration_ms, success=False)
            await self._set_typing(sender, False)
            await self._send_apology(sender)
        else:
            duration_ms = int((time.time() - start_time) * 1000)
            self.monitor.record_message(duration_ms, success=True)
            logger.info(f"Reply sent to {name} ({duration_ms}ms)")

    async def _process(self, message: InboundMessage) -> None:
        sender = message.sender

        crisis_keyword = find_crisis_keyword(message.text)
        if crisis_keyword:
            logger.warning(
                f"Crisis keyword \"{crisis_keyword}\" detected for {message.display_name}",
                extra={"sender": sender}
            )

        quoted = message.quoted_message if message.has_quote else None
        text = self.assembler.assemble(message.text, quoted)

        analysis = await self._run_analyzers(sender, message.text)
        if analysis:
            text = f"{text}\n\n{analysis}"

        await self._set_typing(sender, True)
        if self.thinking_delay > 0:
            await asyncio.sleep(self.thinking_delay)

        metadata: Dict[str, Any] = {
            "sender_name": message.sender_name,
            "message_id": message.id,
            "has_quote": quoted is not None,
            "original_text": message.text,
        }
        if crisis_keyword:
            metadata["crisis_keyword"] = crisis_keyword

        # Providers see the conversation as it was before this message
        auxiliary_context = self._auxiliary_context(sender)
        self.store.append(sender, USER, text, metadata)

        reply = await self.llm_client.generate(self.store.read_recent(sender), auxiliary_context)
        clean_reply = self.assembler.clean_response(reply)
        self.store.append(sender, ASSISTANT, clean_reply)

        await self._set_typing(sender, False)
        await self.channel.send(sender, clean_reply)

    def _auxiliary_context(self, sender: str) -> str:
        parts = (provider(sender) for provider in self.context_providers)
        return "\n\n".join(part for part in parts if part)

    async def _run_analyzers(self, sender: str, text: str) -> Optional[str]:
        """
        Start every analyzer as a detached task and wait a bounded time.

        Tasks still running after `background_wait` keep running; their
        results are not used for this message.
        """
        if not self.analyzers:
            return None

        tasks = []
        for analyzer in self.analyzers:
            task = asyncio.ensure_future(self._run_analyzer(analyzer, sender, text))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            tasks.append(task)

        done, pending = await asyncio.wait(tasks, timeout=self.background_wait)
        if pending:
            logger.debug(f"{len(pending)} background analyses still running for {sender}")

        results = [
            task.result() for task in tasks
            if task in done and not task.cancelled() and task.result()
        ]
        return "\n".join(results) or None

    @staticmethod
    async def _run_analyzer(analyzer: Analyzer, sender: str, text: str) -> Optional[str]:
        try:
            return await analyzer(sender, text)
        except Exception as e:
            logger.warning(f"Background analysis failed for {sender}: {e}")
            return None

    async def _set_typing(self, sender: str, typing: bool) -> None:
        try:
            await self.channel.set_typing(sender, typing)
        except Exception as e:
            logger.debug(f"Typing indicator failed for {sender}: {e}")

    async def _send_apology(self, sender: str) -> None:
        try:
            await self.channel.send(sender, self.assembler.random_apology())
        except Exception as e:
            logger.error(f"Could not deliver apology to {sender}: {e}")

    # ------------------------------------------------------------------
    # Status and shutdown
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Aggregate counters for monitoring."""
        return {
            "active_senders": len(self._active),
            "queued_senders": sum(1 for queue in self._queues.values() if queue),
            "queued_messages": sum(len(queue) for queue in self._queues.values()),
            "rate_limited_senders": self.rate_limiter.limited_count(),
            "rate_limited_drops": self.rate_limiter.dropped_count,
            "background_tasks": len(self._background),
            "store": self.store.get_stats(),
            "backend": self.llm_client.get_stats(),
            "performance": self.monitor.get_stats(),
        }

    async def cleanup(self) -> None:
        """
        Drain and shut down.

        Stops accepting messages, lets in-flight messages finish (bounded by
        `drain_timeout`), stops store cleanup cycles, writes the store and
        clears all transient queues. A failed final write is logged and does
        not block shutdown.
        """
        logger.info("Cleaning up dispatcher resources...")
        self._closed = True

        workers = list(self._workers.values())
        if workers:
            _, still_running = await asyncio.wait(workers, timeout=self.drain_timeout)
            for worker in still_running:
                worker.cancel()
            if still_running:
                logger.warning(f"Cancelled {len(still_running)} workers still running at shutdown")
                await asyncio.gather(*still_running, return_exceptions=True)

        for task in list(self._background):
            task.cancel()

        self.store.stop_periodic_cleanup()
        try:
            await self.store.close()
        except StorageIOError as e:
            logger.error(f"Final chat history save failed, continuing shutdown: {e}")

        self._queues.clear()
        self._active.clear()
        self._workers.clear()
        self.rate_limiter.reset()
        logger.info("Dispatcher cleanup completed")
