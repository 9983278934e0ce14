import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

from loguru import logger

DEFAULT_EVENT_CAPACITY = 200


@dataclass(frozen=True)
class PipelineEvent:
    timestamp: float
    stage: str
    detail: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ts": round(self.timestamp * 1000),
            "stage": self.stage,
            "detail": self.detail,
            "error": self.error,
        }


class EventRecorder:
    """Process-wide timeline of pipeline stages, kept for failure triage.

    A bounded ring: once `capacity` events are stored, every new event
    silently drops the oldest one. Appends from any session (or any thread,
    e.g. FastAPI's sync handlers) go through a single lock so no event is
    lost except through capacity eviction.
    """

    def __init__(self, capacity: int = DEFAULT_EVENT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._events: deque[PipelineEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def record(
        self,
        stage: str,
        detail: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> PipelineEvent:
        """Append one event. Never raises into the caller."""
        event = PipelineEvent(
            timestamp=time.time(),
            stage=stage,
            detail=dict(detail) if detail else None,
            error=str(error) if error is not None else None,
        )
        with self._lock:
            self._events.append(event)

        if error is not None:
            logger.warning("[EVENT] {} {} error={}", stage, detail or "", error)
        else:
            logger.debug("[EVENT] {} {}", stage, detail or "")
        return event

    def snapshot(self, limit: Optional[int] = None) -> list[PipelineEvent]:
        """Return the most recent `limit` events, oldest first."""
        with self._lock:
            events = list(self._events)
        if limit is None:
            return events
        if limit <= 0:
            return []
        return events[-limit:]

    def for_user(self, user_id: str, limit: Optional[int] = None) -> list[PipelineEvent]:
        """Most recent events whose detail names `user_id`, oldest first."""
        events = [e for e in self.snapshot() if e.detail and e.detail.get("user_id") == user_id]
        if limit is None:
            return events
        return events[-limit:] if limit > 0 else []

    def stages(self, limit: Optional[int] = None) -> list[str]:
        return [e.stage for e in self.snapshot(limit)]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
