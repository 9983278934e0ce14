from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from core.config import VoiceParams


@dataclass(frozen=True)
class PlaybackResult:
    """Outcome of one audio operation on the output device.

    `suppressed` marks a duplicate utterance that was skipped without any
    device I/O; it is reported as a success.
    """

    success: bool = True
    duration: Optional[float] = None
    suppressed: bool = False


class AudioOutput(ABC):
    """Speaker side of a device session (speech synthesis + playback)."""

    @abstractmethod
    async def speak(self, text: str, voice: Optional[VoiceParams] = None) -> PlaybackResult:
        """Synthesize and play one utterance. Raises on failure."""
        ...

    @abstractmethod
    async def play_audio(self, source: str, volume: float = 1.0) -> PlaybackResult:
        """Play a sound file or URL (chimes). Raises on failure."""
        ...

    async def stop(self) -> None:
        """Stop whatever is currently playing."""
        pass
