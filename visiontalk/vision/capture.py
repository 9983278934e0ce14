import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from core.errors import (
    CaptureError,
    CapturePermissionDenied,
    CaptureTransientFailure,
    DeviceUnavailable,
)
from core.events import EventRecorder
from core.state import PhotoRecord, SessionState
from vision.photos import build_photo_record

# Failure messages that retrying cannot fix
PERMISSION_MARKERS = ("permission", "denied", "not permitted", "not allowed", "unauthorized")
UNAVAILABLE_MARKERS = (
    "camera unavailable", "permanently unavailable", "no camera", "not supported", "camera disabled",
)
# Checked first: a temporary condition is retried whatever else the message says
TRANSIENT_MARKERS = ("temporar", "try again", "busy", "timed out", "timeout")


@dataclass(frozen=True)
class CaptureOptions:
    attempts: int = 3
    initial_timeout_ms: int = 20000
    backoff_ms: int = 750
    size_hint: str = "medium"


def classify_failure(error: BaseException) -> type[CaptureError]:
    """Map an attempt failure onto the capture error taxonomy."""
    if isinstance(error, CaptureError):
        return type(error)
    if isinstance(error, PermissionError):
        return CapturePermissionDenied
    message = str(error).lower()
    if any(m in message for m in TRANSIENT_MARKERS):
        return CaptureTransientFailure
    if any(m in message for m in PERMISSION_MARKERS):
        return CapturePermissionDenied
    if any(m in message for m in UNAVAILABLE_MARKERS):
        return DeviceUnavailable
    return CaptureTransientFailure


class CaptureController:
    """Gets one photo from the device, retrying transient failures.

    Every attempt races the camera against a timeout. Transient failures back
    off linearly (`backoff_ms * attempt`) so the third attempt still arrives
    within a tolerable wait; permission and unavailability failures end the
    capture at once.
    """

    def __init__(
        self,
        recorder: EventRecorder,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.recorder = recorder
        self._sleep = sleep

    async def capture(self, session: SessionState, options: CaptureOptions = CaptureOptions()) -> PhotoRecord:
        """Capture one photo for the session.

        Raises:
            DeviceUnavailable: no camera, or the camera reported itself gone.
            CapturePermissionDenied: the device refused the capture.
            CaptureError: every attempt failed transiently.
        """
        device = session.device
        if device is None or not device.camera.capabilities().has_camera:
            self.recorder.record("capture_unavailable", {"user_id": session.user_id}, error="no camera")
            raise DeviceUnavailable("Camera not available on this device.", attempts=0)

        attempts = max(1, options.attempts)
        last_error: BaseException = CaptureTransientFailure("no attempt made")

        for attempt in range(1, attempts + 1):
            timeout_ms = options.initial_timeout_ms
            self.recorder.record("capture_attempt_start", {"attempt": attempt, "timeout_ms": timeout_ms})
            try:
                payload = await asyncio.wait_for(
                    device.camera.request_photo(options.size_hint),
                    timeout=timeout_ms / 1000,
                )
                if payload is None or not payload.data:
                    raise CaptureTransientFailure("empty photo payload", attempts=attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    e = CaptureTransientFailure("photo_request_timeout", attempts=attempt)
                last_error = e
                message = str(e) or type(e).__name__
                self.recorder.record("capture_attempt_failed", {"attempt": attempt}, error=message)
                logger.warning("Photo request attempt {}/{} failed: {}", attempt, attempts, message)

                kind = classify_failure(e)
                if kind in (CapturePermissionDenied, DeviceUnavailable):
                    self.recorder.record("capture_aborted", {"attempt": attempt, "reason": kind.__name__})
                    raise kind(message, attempts=attempt) from e

                if attempt < attempts:
                    await self._sleep(options.backoff_ms * attempt / 1000)
                continue

            photo = build_photo_record(session.user_id, payload)
            self.recorder.record("capture_attempt_ok", {
                "attempt": attempt,
                "request_id": photo.request_id,
                "size": photo.size,
                "mime_type": photo.mime_type,
            })
            logger.debug("Photo captured: req={} size={}", photo.request_id, photo.size)
            return photo

        message = str(last_error) or type(last_error).__name__
        self.recorder.record("capture_exhausted", {"attempts": attempts}, error=message)
        logger.error("Photo capture failed after {} attempts: {}", attempts, message)
        raise CaptureError(f"Photo capture failed after {attempts} attempts: {message}",
                           attempts=attempts) from last_error
