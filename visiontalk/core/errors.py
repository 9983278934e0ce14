from typing import Optional


class PipelineError(Exception):
    """Base class for failures raised inside a capture-analyze-speak run."""

    stage: str = "pipeline"


class CaptureError(PipelineError):
    """Photo capture failed after the attempt budget was spent."""

    stage = "capture"

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class DeviceUnavailable(CaptureError):
    """The device has no usable camera. Terminal, never retried."""


class CapturePermissionDenied(CaptureError):
    """The device refused the capture. Terminal, retries are abandoned."""


class CaptureTransientFailure(CaptureError):
    """A single attempt failed (timeout, empty payload, flaky hardware)."""


class AnalysisFailure(PipelineError):
    """The vision collaborator failed or returned nothing usable."""

    stage = "analysis"


class SpeechFailure(PipelineError):
    """The audio collaborator failed to speak an utterance."""

    stage = "speech"

    def __init__(self, message: str, tag: Optional[str] = None):
        super().__init__(message)
        self.tag = tag


class AudioLaneClosed(SpeechFailure):
    """The user's audio lane was closed (session ended) before the operation ran to completion."""

    def __init__(self, message: str = "audio lane closed", tag: Optional[str] = None):
        super().__init__(message, tag=tag)
