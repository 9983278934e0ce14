import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from loguru import logger

from audio.audio_queue import AudioQueue
from audio.speech import SpeechDispatcher
from core.config import AppConfig
from core.errors import AnalysisFailure, PipelineError
from core.events import EventRecorder
from core.state import AnalysisRecord, DeviceSession, PipelineState, SessionRegistry, SessionState
from llm.base import AnalysisResult, BaseVisionAnalyzer
from vision.capture import CaptureController, CaptureOptions
from vision.preprocess import CenterCropPreprocessor

WELCOME_TEXT = "VisionTalk ready."
CAPTURE_PROMPT_TEXT = "Stay still while I capture the image."
APOLOGY_TEXT = "Sorry, something went wrong."
FALLBACK_TEXT = "I took a picture."


class PipelineOrchestrator:
    """Button press → prompt → capture → analyze → speak, one run per user at a time.

    The `processing` flag on each SessionState is the only admission control:
    a press that arrives while a run is active is dropped, not queued, so the
    user never hears an answer about something they stopped looking at.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: SessionRegistry,
        recorder: EventRecorder,
        audio_queue: AudioQueue,
        speech: SpeechDispatcher,
        capture: CaptureController,
        analyzer: BaseVisionAnalyzer,
        preprocessor: Optional[CenterCropPreprocessor] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.registry = registry
        self.recorder = recorder
        self.audio_queue = audio_queue
        self.speech = speech
        self.capture = capture
        self.analyzer = analyzer
        self.preprocessor = preprocessor
        self._clock = clock
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()
        self.photos_captured = 0
        self.latest_capture_time: Optional[datetime] = None

    @property
    def capture_options(self) -> CaptureOptions:
        cfg = self.config.capture
        return CaptureOptions(
            attempts=cfg.attempts,
            initial_timeout_ms=cfg.initial_timeout_ms,
            backoff_ms=cfg.backoff_ms,
            size_hint=cfg.size_hint,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str, device: DeviceSession) -> SessionState:
        """Attach a user's device and greet them once."""
        session = self.registry.ensure(user_id)
        session.device = device
        logger.info("Session started for user {}", user_id)
        self.recorder.record("session_start", {"user_id": user_id})
        await self._play_welcome(session)
        return session

    async def _play_welcome(self, session: SessionState) -> None:
        now = self._clock()
        if session.welcome_played or now < session.welcome_debounce_until:
            logger.debug("Welcome already played for {}", session.user_id)
            return

        session.welcome_played = True
        session.welcome_debounce_until = now + self.config.audio.duplicate_suppress_ms / 1000

        audio_cfg = self.config.audio
        if audio_cfg.startup_chime:
            self.speech.play_chime(session, audio_cfg.chime_source, audio_cfg.chime_volume, tag="startup_chime")
            return
        try:
            await self.speech.speak(session, WELCOME_TEXT, tag="tts_welcome")
        except PipelineError as e:
            logger.warning("Welcome playback failed: {}", e)

    async def end_session(self, user_id: str) -> None:
        """Detach the device, drop queued audio and re-arm the welcome."""
        session = self.registry.get(user_id)
        if session is None:
            return
        device = session.device
        session.device = None
        await self.audio_queue.close_lane(user_id)

        if device is not None:
            try:
                await device.audio.stop()
            except Exception as e:
                logger.debug("Error stopping audio for {}: {}", user_id, e)
            device.camera.close()

        # Debounce still applies, so a quick reconnect does not greet twice
        session.welcome_played = False
        logger.info("Session stopped for user {}", user_id)
        self.recorder.record("session_end", {"user_id": user_id})

    # ------------------------------------------------------------------
    # Button press handling
    # ------------------------------------------------------------------

    def _try_accept(self, user_id: str, press_type: str) -> Optional[SessionState]:
        if press_type != "short":
            logger.debug("Ignoring {} press from {}", press_type, user_id)
            return None

        session = self.registry.ensure(user_id)
        if session.processing:
            logger.warning("Capture already in progress for {}, ignoring button press", user_id)
            self.recorder.record("button_press_ignored", {"user_id": user_id})
            return None

        session.processing = True
        session.set_state(PipelineState.CAPTURING)
        self.recorder.record("button_press_accepted", {"user_id": user_id})
        return session

    async def handle_button_press(self, user_id: str, press_type: str = "short") -> bool:
        """Run the pipeline for this press. Returns False if the press was dropped."""
        session = self._try_accept(user_id, press_type)
        if session is None:
            return False
        await self._run_accepted(session)
        return True

    def press_in_background(self, user_id: str, press_type: str = "short") -> bool:
        """Accept a press and run the pipeline as a task (for HTTP triggers)."""
        session = self._try_accept(user_id, press_type)
        if session is None:
            return False
        task = asyncio.create_task(self._run_accepted(session), name=f"pipeline-{user_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    async def _run_accepted(self, session: SessionState) -> None:
        t_start = time.monotonic()
        try:
            await asyncio.wait_for(self._run(session), timeout=self.config.pipeline.run_timeout_s)
        except asyncio.CancelledError:
            logger.info("Pipeline for {} cancelled", session.user_id)
            raise
        except Exception as e:
            await self._handle_failure(session, e)
        finally:
            session.processing = False
            session.set_state(PipelineState.IDLE)
            logger.info("[TIMING] Pipeline run for {}: {:.1f}s", session.user_id, time.monotonic() - t_start)

    async def _handle_failure(self, session: SessionState, error: Exception) -> None:
        stage = session.pipeline_state.value
        if isinstance(error, asyncio.TimeoutError):
            message = f"pipeline watchdog expired after {self.config.pipeline.run_timeout_s}s"
        else:
            message = str(error) or type(error).__name__

        session.set_state(PipelineState.FAILED)
        session.last_error = message
        logger.error("Pipeline error for {} during {}: {}", session.user_id, stage, message)
        self.recorder.record("pipeline_error", {"stage": stage, "kind": type(error).__name__}, error=message)
        await self._apologize(session)

    async def _apologize(self, session: SessionState) -> None:
        """Best effort: a failing apology must not replace the original error."""
        try:
            await asyncio.wait_for(
                self.speech.speak(session, APOLOGY_TEXT, tag="tts_error"),
                timeout=self.config.pipeline.apology_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Apology playback failed: {}", e)
            self.recorder.record("apology_failed", {"user_id": session.user_id}, error=str(e) or type(e).__name__)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(self, session: SessionState) -> None:
        capture_only = self.config.pipeline.capture_only
        self.recorder.record("capture_only_init" if capture_only else "capture_init",
                             {"user_id": session.user_id})

        if self.config.pipeline.capture_prompt and not capture_only:
            await self.speech.speak(session, CAPTURE_PROMPT_TEXT, tag="capture_prompt")

        delay_ms = self.config.capture.prompt_delay_ms
        if delay_ms:
            await self._sleep(delay_ms / 1000)

        photo = await self.capture.capture(session, self.capture_options)
        session.add_photo(photo)
        self.photos_captured += 1
        self.latest_capture_time = photo.timestamp
        self.recorder.record("photo_cached", {
            "request_id": photo.request_id,
            "size": photo.size,
            "mime_type": photo.mime_type,
            "history": len(session.photo_history),
        })

        audio_cfg = self.config.audio
        if audio_cfg.chime_enabled:
            self.speech.play_chime(session, audio_cfg.chime_source, audio_cfg.chime_volume)

        if capture_only:
            self.recorder.record("capture_only_complete", {"request_id": photo.request_id})
            return

        session.set_state(PipelineState.ANALYZING)
        image_bytes, mime_type = photo.data, photo.mime_type
        if self.preprocessor is not None:
            image_bytes, mime_type = await self.preprocessor.process(photo)

        self.recorder.record("analysis_start", {"request_id": photo.request_id, "bytes": len(image_bytes)})
        try:
            result = await self.analyzer.analyze(image_bytes, mime_type)
        except AnalysisFailure:
            raise
        except Exception as e:
            raise AnalysisFailure(str(e) or type(e).__name__) from e
        self.recorder.record("analysis_ok", {
            "request_id": photo.request_id,
            "length": len(result.full_text or ""),
            "has_short_answer": bool(result.short_answer),
        })

        session.record_analysis(photo.request_id, AnalysisRecord(
            text=result.full_text,
            short_answer=result.short_answer,
            timestamp=time.time(),
        ))

        session.set_state(PipelineState.SPEAKING)
        await self.speech.speak_chunks(session, self.select_speech_text(result), tag="speech")
        self.recorder.record("pipeline_complete", {"request_id": photo.request_id})

    def select_speech_text(self, result: AnalysisResult) -> str:
        """Short answer when it is short enough, otherwise the full text."""
        limit = self.config.pipeline.short_answer_max_chars
        if result.short_answer and len(result.short_answer) < limit:
            return result.short_answer
        return result.full_text or FALLBACK_TEXT

    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for user_id in self.registry.active_user_ids():
            await self.end_session(user_id)
        await self.audio_queue.close()
        await self.analyzer.close()
