"""Durable conversation log backed by an atomically replaced JSON snapshot."""
import asyncio
import json
import logging
import os
import time
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from config import (
    CHAT_HISTORY_FILE,
    MAX_CHAT_HISTORY,
    MAX_CONTEXT_TURNS,
    SAVE_DEBOUNCE_SECONDS,
    SAVE_MAX_RETRIES,
    SAVE_RETRY_DELAY,
    CLEANUP_INTERVAL_SECONDS,
    RETENTION_DAYS,
    RETENTION_KEEP_TURNS,
    MAX_EMOTIONAL_ENTRIES,
)
from models.conversation import (
    ASSISTANT,
    ROLES,
    USER,
    Conversation,
    ConversationMetadata,
    Turn,
)

logger = logging.getLogger(__name__)


class StorageIOError(Exception):
    """Raised when the conversation snapshot cannot be read or written."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore:
    """
    Keeps every conversation in memory and persists them as one JSON file.

    All mutations happen synchronously on the event loop and schedule a
    debounced save; a burst of appends coalesces into a single write. Writes
    go to a temporary file that is fsynced and then moved over the snapshot
    with `os.replace`, so the file on disk is always a complete snapshot.
    """

    def __init__(
        self,
        file_path: str = CHAT_HISTORY_FILE,
        max_history: int = MAX_CHAT_HISTORY,
        max_context: int = MAX_CONTEXT_TURNS,
        save_delay: float = SAVE_DEBOUNCE_SECONDS,
        max_save_retries: int = SAVE_MAX_RETRIES,
        save_retry_delay: float = SAVE_RETRY_DELAY,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS,
        retention_days: int = RETENTION_DAYS,
        keep_threshold: int = RETENTION_KEEP_TURNS,
        max_emotional_entries: int = MAX_EMOTIONAL_ENTRIES,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the store. Call `initialize()` before use to load the snapshot.

        Args:
            file_path: Path of the JSON snapshot
            max_history: Maximum turns kept per conversation (oldest trimmed)
            max_context: Hard cap on turns returned by `read_recent`
            save_delay: Quiet period in seconds before a scheduled save fires
            max_save_retries: Retries for a failed write (linear backoff)
            save_retry_delay: Base delay in seconds between write retries
            cleanup_interval: Seconds between retention cleanup runs
            retention_days: Age after which small conversations are deleted
            keep_threshold: Conversations with at least this many turns are kept
            max_emotional_entries: Bound on the emotional profile log
            clock: Returns the current aware datetime (for tests)
        """
        if max_history < 1:
            raise ValueError("max_history must be at least 1")

        self.file_path = Path(file_path)
        self.max_history = max_history
        self.max_context = max_context
        self.save_delay = save_delay
        self.max_save_retries = max_save_retries
        self.save_retry_delay = save_retry_delay
        self.cleanup_interval = cleanup_interval
        self.retention_days = retention_days
        self.keep_threshold = keep_threshold
        self.max_emotional_entries = max_emotional_entries
        self._clock = clock or _utcnow

        self._conversations: Dict[str, Conversation] = {}
        self._version = 0
        self._saved_version = 0
        self._flush_lock = asyncio.Lock()
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._closed = False
        self.is_initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, start_cleanup: bool = True) -> None:
        """Load the existing snapshot and start the periodic cleanup task."""
        start_time = time.time()
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Failed to create data directory: {e}") from e

        self._conversations = await asyncio.to_thread(self._load_snapshot)
        self._closed = False
        self.is_initialized = True

        if start_cleanup:
            self.start_periodic_cleanup()

        load_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Chat history loaded: {len(self._conversations)} conversations in {load_ms}ms"
        )

    def _load_snapshot(self) -> Dict[str, Conversation]:
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.info("No existing chat history found, starting fresh")
            return {}
        except (OSError, ValueError) as e:
            raise StorageIOError(f"Failed to load chat history from {self.file_path}: {e}") from e

        try:
            return {
                sender: Conversation.from_dict(sender, data)
                for sender, data in raw.items()
            }
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageIOError(f"Malformed chat history in {self.file_path}: {e}") from e

    async def close(self) -> None:
        """
        Stop background work and write any unsaved changes.

        Raises:
            StorageIOError: If the final write fails after all retries
        """
        self._closed = True
        self.stop_periodic_cleanup()
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        await self.flush()
        logger.info("Conversation store closed")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(
        self,
        sender: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Append a turn to the sender's conversation.

        Args:
            sender: Conversation key
            role: "user" or "assistant"
            content: Message text
            metadata: Optional per-turn metadata

        Returns:
            ID of the new turn
        """
        if role not in ROLES:
            raise ValueError(f"Invalid role: {role}")

        now = self._clock()
        conversation = self._conversations.get(sender)
        if conversation is None:
            conversation = Conversation(
                sender=sender,
                metadata=ConversationMetadata(first_turn_time=now)
            )
            self._conversations[sender] = conversation
        elif conversation.metadata.first_turn_time is None:
            conversation.metadata.first_turn_time = now

        turn = Turn(
            id=self._generate_turn_id(),
            role=role,
            content=content,
            timestamp=now,
            metadata=dict(metadata or {})
        )
        conversation.turns.append(turn)

        excess = len(conversation.turns) - self.max_history
        if excess > 0:
            del conversation.turns[:excess]
            logger.debug(f"Trimmed {excess} old turns for {sender}")

        conversation.metadata.last_turn_time = now
        conversation.metadata.turn_count = len(conversation.turns)

        self._mark_dirty()
        return turn.id

    def record_emotion(self, sender: str, data: Dict[str, Any]) -> None:
        """Add an entry to the sender's bounded emotional profile log."""
        conversation = self._conversations.get(sender)
        if conversation is None:
            conversation = Conversation(sender=sender)
            self._conversations[sender] = conversation

        profile = conversation.metadata.emotional_profile
        profile.append({**data, "timestamp": self._clock().isoformat()})
        if len(profile) > self.max_emotional_entries:
            del profile[:len(profile) - self.max_emotional_entries]

        self._mark_dirty()

    async def clear(self, sender: str) -> bool:
        """
        Delete a sender's conversation and persist immediately.

        Returns:
            True if a conversation was deleted
        """
        if sender not in self._conversations:
            return False

        del self._conversations[sender]
        self._version += 1
        await self.flush()
        logger.info(f"Cleared chat history for {sender}")
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_recent(self, sender: str, limit: Optional[int] = None) -> List[Turn]:
        """
        Return the sender's most recent turns in insertion order.

        At most min(max_history, max_context) turns are returned, further
        capped by `limit`. An unknown sender yields an empty list.
        """
        conversation = self._conversations.get(sender)
        if conversation is None:
            return []

        cap = min(self.max_history, self.max_context)
        if limit is not None:
            cap = min(cap, max(limit, 0))
        if cap == 0:
            return []
        return conversation.turns[-cap:]

    def get_conversation(self, sender: str) -> Optional[Conversation]:
        return self._conversations.get(sender)

    def get_conversation_stats(self, sender: str) -> Optional[Dict[str, Any]]:
        """Per-conversation counts and average response time in seconds."""
        conversation = self._conversations.get(sender)
        if conversation is None:
            return None

        turns = conversation.turns
        response_times = [
            (current.timestamp - previous.timestamp).total_seconds()
            for previous, current in zip(turns, turns[1:])
            if previous.role == USER and current.role == ASSISTANT
        ]
        average = round(sum(response_times) / len(response_times)) if response_times else 0

        metadata = conversation.metadata
        return {
            "total_turns": len(turns),
            "user_turns": sum(1 for t in turns if t.role == USER),
            "assistant_turns": sum(1 for t in turns if t.role == ASSISTANT),
            "first_turn_time": metadata.first_turn_time.isoformat() if metadata.first_turn_time else None,
            "last_turn_time": metadata.last_turn_time.isoformat() if metadata.last_turn_time else None,
            "average_response_seconds": average,
        }

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics over all conversations."""
        total_turns = 0
        oldest: Optional[datetime] = None
        newest: Optional[datetime] = None

        for conversation in self._conversations.values():
            total_turns += len(conversation.turns)
            first = conversation.metadata.first_turn_time
            last = conversation.metadata.last_turn_time
            if first and (oldest is None or first < oldest):
                oldest = first
            if last and (newest is None or last > newest):
                newest = last

        return {
            "total_conversations": len(self._conversations),
            "total_turns": total_turns,
            "oldest_turn": oldest.isoformat() if oldest else None,
            "newest_turn": newest.isoformat() if newest else None,
            "unsaved_changes": self.is_dirty,
            "is_initialized": self.is_initialized,
            "file_name": str(self.file_path),
        }

    def __len__(self) -> int:
        return len(self._conversations)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        return self._version != self._saved_version

    def _mark_dirty(self) -> None:
        self._version += 1
        self._schedule_save()

    def _schedule_save(self) -> None:
        """(Re)start the quiet-period timer for a background save."""
        if self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Used outside an event loop; the next explicit flush writes it
            return

        if self._save_handle is not None:
            self._save_handle.cancel()
        self._save_handle = loop.call_later(self.save_delay, self._start_background_save)

    def _start_background_save(self) -> None:
        self._save_handle = None
        self._save_task = asyncio.get_running_loop().create_task(self._background_save())

    async def _background_save(self) -> None:
        try:
            await self.flush()
        except StorageIOError as e:
            logger.error(f"Scheduled save failed, retrying next cycle: {e}")
            self._schedule_save()

    async def flush(self) -> bool:
        """
        Write the full snapshot if there are unsaved changes.

        Returns:
            True if a snapshot was written

        Raises:
            StorageIOError: If the write still fails after all retries
        """
        async with self._flush_lock:
            if not self.is_dirty:
                return False

            version = self._version
            payload = json.dumps(
                {sender: c.to_dict() for sender, c in self._conversations.items()},
                ensure_ascii=False,
                indent=2
            )

            for attempt in range(self.max_save_retries + 1):
                start_time = time.time()
                try:
                    await asyncio.to_thread(self._write_atomic, payload)
                except OSError as e:
                    if attempt < self.max_save_retries:
                        logger.warning(
                            f"Save failed, retrying ({attempt + 1}/{self.max_save_retries}): {e}"
                        )
                        await asyncio.sleep(self.save_retry_delay * (attempt + 1))
                        continue
                    logger.error(f"Failed to save chat history after {attempt + 1} attempts: {e}")
                    raise StorageIOError(f"Failed to save chat history: {e}") from e

                self._saved_version = version
                save_ms = int((time.time() - start_time) * 1000)
                logger.debug(
                    f"Chat history saved in {save_ms}ms ({len(self._conversations)} conversations)"
                )
                return True
        return False

    def _write_atomic(self, payload: str) -> None:
        tmp_path = self.file_path.with_name(self.file_path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.file_path)

    # ------------------------------------------------------------------
    # Retention cleanup
    # ------------------------------------------------------------------

    def start_periodic_cleanup(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    def stop_periodic_cleanup(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            self._cleanup_task = None

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.perform_cleanup()
            except Exception as e:
                logger.error(f"Conversation cleanup failed: {e}", exc_info=True)

    async def perform_cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Apply the retention horizon.

        Small conversations idle past the horizon are deleted. Conversations
        with at least `keep_threshold` turns are never deleted by age alone,
        but turns older than the horizon are pruned from every conversation
        that is kept. A save is triggered only when something was removed.

        Returns:
            Number of conversations deleted
        """
        start_time = time.time()
        now = now or self._clock()
        cutoff = now - timedelta(days=self.retention_days)

        expired = [
            sender
            for sender, conversation in self._conversations.items()
            if len(conversation.turns) < self.keep_threshold
            and (
                conversation.metadata.last_turn_time is None
                or conversation.metadata.last_turn_time < cutoff
            )
        ]
        for sender in expired:
            del self._conversations[sender]

        pruned_turns = 0
        for conversation in self._conversations.values():
            kept = [turn for turn in conversation.turns if turn.timestamp >= cutoff]
            if len(kept) != len(conversation.turns):
                pruned_turns += len(conversation.turns) - len(kept)
                conversation.turns = kept
                conversation.metadata.turn_count = len(kept)

        if not expired and not pruned_turns:
            return 0
        self._version += 1

        try:
            await self.flush()
        except StorageIOError as e:
            logger.error(f"Save after cleanup failed: {e}")
            self._schedule_save()

        cleanup_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Cleanup completed: {len(expired)} conversations, {pruned_turns} turns "
            f"removed in {cleanup_ms}ms"
        )
        return len(expired)

    @staticmethod
    def _generate_turn_id() -> str:
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"
