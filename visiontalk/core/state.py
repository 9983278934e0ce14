import threading
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from audio.device import AudioOutput
from vision.device import CaptureDevice

DEFAULT_HISTORY_CAPACITY = 10


class PipelineState(str, Enum):
    IDLE = "idle"              # Waiting for a button press
    CAPTURING = "capturing"    # Prompting + taking the photo
    ANALYZING = "analyzing"    # Vision model is looking at the photo
    SPEAKING = "speaking"      # Result is being spoken
    FAILED = "failed"          # A stage failed; apology in progress


@dataclass(frozen=True)
class PhotoRecord:
    request_id: str
    data: bytes = field(repr=False)
    timestamp: datetime
    mime_type: str
    size: int
    sha256: str
    user_id: str
    filename: Optional[str] = None

    def metadata(self) -> dict:
        return {
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "mime_type": self.mime_type,
            "size": self.size,
            "sha256": self.sha256,
            "filename": self.filename,
            "user_id": self.user_id,
        }


@dataclass(frozen=True)
class AnalysisRecord:
    text: str
    short_answer: Optional[str]
    timestamp: float

    def to_dict(self) -> dict:
        return {"text": self.text, "short_answer": self.short_answer, "timestamp": self.timestamp}


@dataclass
class DeviceSession:
    """The live device collaborators of one connected user."""

    camera: CaptureDevice
    audio: AudioOutput


@dataclass
class SessionState:
    """Everything the pipeline knows about one user.

    Mutated only by that user's pipeline run (the `processing` flag keeps it
    single-writer) and by the AudioQueue, which owns `audio_lane`.
    """

    user_id: str
    history_capacity: int = DEFAULT_HISTORY_CAPACITY
    processing: bool = False
    pipeline_state: PipelineState = PipelineState.IDLE

    photo_history: deque = field(default_factory=deque, init=False)
    analysis_by_request_id: "OrderedDict[str, AnalysisRecord]" = field(default_factory=OrderedDict)
    latest_analysis: Optional[AnalysisRecord] = None

    audio_lane: Any = None

    # Duplicate suppression: no prior utterance yet when both are None
    last_utterance_fingerprint: Optional[str] = None
    last_utterance_at: Optional[float] = None

    welcome_played: bool = False
    welcome_debounce_until: float = 0.0

    device: Optional[DeviceSession] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        self.photo_history = deque(maxlen=self.history_capacity)

    def set_state(self, state: PipelineState) -> None:
        self.pipeline_state = state

    @property
    def is_idle(self) -> bool:
        return not self.processing

    def add_photo(self, photo: PhotoRecord) -> None:
        """Append in capture order; the oldest photo falls off at capacity."""
        self.photo_history.append(photo)

    def latest_photo(self) -> Optional[PhotoRecord]:
        return self.photo_history[-1] if self.photo_history else None

    def find_photo(self, request_id: str) -> Optional[PhotoRecord]:
        for photo in self.photo_history:
            if photo.request_id == request_id:
                return photo
        return None

    def record_analysis(self, request_id: str, record: AnalysisRecord) -> None:
        self.analysis_by_request_id[request_id] = record
        self.analysis_by_request_id.move_to_end(request_id)
        while len(self.analysis_by_request_id) > self.history_capacity:
            self.analysis_by_request_id.popitem(last=False)
        self.latest_analysis = record

    def mark_utterance(self, fingerprint: str, at: float) -> None:
        self.last_utterance_fingerprint = fingerprint
        self.last_utterance_at = at

    def summary(self) -> dict:
        """Read-only view for diagnostics consumers."""
        latest = self.latest_photo()
        return {
            "user_id": self.user_id,
            "processing": self.processing,
            "state": self.pipeline_state.value,
            "has_device": self.device is not None,
            "photo_count": len(self.photo_history),
            "latest_photo": latest.metadata() if latest else None,
            "latest_analysis": self.latest_analysis.to_dict() if self.latest_analysis else None,
            "welcome_played": self.welcome_played,
            "last_error": self.last_error,
        }


class SessionRegistry:
    """Per-user SessionState keyed by user id, created lazily."""

    def __init__(self, history_capacity: int = DEFAULT_HISTORY_CAPACITY):
        self.history_capacity = history_capacity
        self._sessions: dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def ensure(self, user_id: str) -> SessionState:
        """Return the user's state, creating it on first contact."""
        with self._lock:
            state = self._sessions.get(user_id)
            if state is None:
                state = SessionState(user_id=user_id, history_capacity=self.history_capacity)
                self._sessions[user_id] = state
            return state

    def get(self, user_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.get(user_id)

    def evict(self, user_id: str) -> Optional[SessionState]:
        with self._lock:
            return self._sessions.pop(user_id, None)

    def user_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def active_user_ids(self) -> list[str]:
        with self._lock:
            return [uid for uid, s in self._sessions.items() if s.device is not None]

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
