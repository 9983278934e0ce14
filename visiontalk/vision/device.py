from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

SIZE_HINTS = ("small", "medium", "large")


@dataclass(frozen=True)
class DeviceCapabilities:
    has_camera: bool = False
    has_speaker: bool = False
    has_microphone: bool = False
    model: Optional[str] = None


@dataclass
class PhotoPayload:
    """What the camera hands back for one photo request."""

    data: bytes
    mime_type: str = "image/jpeg"
    request_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data) if self.data else 0


class CaptureDevice(ABC):
    """Camera side of a device session."""

    @abstractmethod
    def capabilities(self) -> DeviceCapabilities:
        ...

    @abstractmethod
    async def request_photo(self, size_hint: str = "medium") -> PhotoPayload:
        """Take one photo. Raises on hardware failure or refusal."""
        ...

    def close(self) -> None:
        pass
