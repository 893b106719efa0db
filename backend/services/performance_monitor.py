"""In-process performance counters for message handling."""
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional


class PerformanceMonitor:
    """Keeps a bounded event log and running message metrics."""

    def __init__(self, max_events: int = 1000, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.time
        self.start_time = self._clock()
        self.events: Deque[Dict[str, Any]] = deque(maxlen=max_events)
        self.messages_processed = 0
        self.messages_failed = 0
        self.average_response_ms = 0.0

    def record_event(self, event_type: str, **data: Any) -> None:
        self.events.append({"type": event_type, "timestamp": self._clock(), "data": data})

    def record_message(self, duration_ms: int, success: bool) -> None:
        """Record one handled message and fold its duration into the average."""
        if success:
            self.messages_processed += 1
            count = self.messages_processed
            self.average_response_ms += (duration_ms - self.average_response_ms) / count
        else:
            self.messages_failed += 1
        self.record_event(
            "message_processed" if success else "message_failed",
            duration_ms=duration_ms
        )

    def messages_per_minute(self) -> float:
        cutoff = self._clock() - 60
        return float(sum(
            1 for event in self.events
            if event["type"] == "message_processed" and event["timestamp"] >= cutoff
        ))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": int(self._clock() - self.start_time),
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "average_response_ms": round(self.average_response_ms),
            "messages_per_minute": self.messages_per_minute(),
            "events_recorded": len(self.events),
        }
