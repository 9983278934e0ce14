"""Shared fakes for the device and vision collaborators."""
import asyncio
import time
from typing import Optional

import pytest

from audio.audio_queue import AudioQueue
from audio.device import AudioOutput, PlaybackResult
from audio.speech import SpeechDispatcher
from core.config import AppConfig
from core.events import EventRecorder
from core.pipeline import PipelineOrchestrator
from core.state import DeviceSession, SessionRegistry
from llm.base import AnalysisResult, BaseVisionAnalyzer
from vision.capture import CaptureController
from vision.device import CaptureDevice, DeviceCapabilities, PhotoPayload


class FakeAudio(AudioOutput):
    """Records every call; optional per-call delay and failure."""

    def __init__(self, delay: float = 0.0, fail_on: Optional[set] = None):
        self.delay = delay
        self.fail_on = fail_on or set()
        self.spoken: list[str] = []
        self.played: list[tuple[str, float]] = []
        self.stops = 0
        self.active = 0
        self.max_active = 0

    async def speak(self, text, voice=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if text in self.fail_on:
                raise RuntimeError(f"speak failed: {text}")
            self.spoken.append(text)
            return PlaybackResult(success=True, duration=self.delay)
        finally:
            self.active -= 1

    async def play_audio(self, source, volume=1.0):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if source in self.fail_on:
                raise RuntimeError(f"play failed: {source}")
            self.played.append((source, volume))
            return PlaybackResult(success=True, duration=self.delay)
        finally:
            self.active -= 1

    async def stop(self):
        self.stops += 1


class ScriptedCamera(CaptureDevice):
    """Each request pops the next step: bytes, an exception, or ("hang", seconds)."""

    def __init__(self, steps=None, has_camera: bool = True):
        self.steps = list(steps or [])
        self.has_camera = has_camera
        self.requests = 0
        self.closed = False

    def capabilities(self):
        return DeviceCapabilities(has_camera=self.has_camera, has_speaker=True)

    async def request_photo(self, size_hint="medium"):
        self.requests += 1
        step = self.steps.pop(0) if self.steps else b"\xff\xd8jpeg-bytes"
        if isinstance(step, tuple) and step[0] == "hang":
            await asyncio.sleep(step[1])
            step = b"\xff\xd8late"
        if isinstance(step, BaseException):
            raise step
        return PhotoPayload(data=step, mime_type="image/jpeg", request_id=f"req-{self.requests}")

    def close(self):
        self.closed = True


class FakeAnalyzer(BaseVisionAnalyzer):
    def __init__(self, result=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result or AnalysisResult(full_text="A red mug on a desk.", short_answer="It is a red mug.")
        self.error = error
        self.delay = delay
        self.calls: list[tuple[int, str]] = []

    async def analyze(self, image_bytes, mime_type="image/jpeg"):
        self.calls.append((len(image_bytes), mime_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def audio_queue(registry, recorder):
    return AudioQueue(registry, settle_delay=0.0, operation_timeout=5.0, recorder=recorder)


@pytest.fixture
def fast_config():
    config = AppConfig()
    config.capture.initial_timeout_ms = 200
    config.capture.backoff_ms = 1
    config.capture.prompt_delay_ms = 0
    config.audio.settle_delay_ms = 0
    return config


def make_orchestrator(config, registry, recorder, audio_queue, analyzer=None, clock=None):
    speech = SpeechDispatcher(
        audio_queue,
        recorder,
        suppress_window_ms=config.audio.duplicate_suppress_ms,
        max_chunk_chars=config.audio.max_chunk_chars,
        clock=clock or time.monotonic,
    )
    return PipelineOrchestrator(
        config=config,
        registry=registry,
        recorder=recorder,
        audio_queue=audio_queue,
        speech=speech,
        capture=CaptureController(recorder),
        analyzer=analyzer or FakeAnalyzer(),
        clock=clock or time.monotonic,
    )


def attach(registry, user_id="u1", camera=None, audio=None):
    session = registry.ensure(user_id)
    session.device = DeviceSession(camera=camera or ScriptedCamera(), audio=audio or FakeAudio())
    return session
