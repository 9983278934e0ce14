import asyncio
import hashlib
import json
import time
from typing import Callable, Optional

from loguru import logger

from audio.audio_queue import AudioQueue
from audio.chunking import DEFAULT_MAX_CHUNK_CHARS, chunk_text
from audio.device import PlaybackResult
from core.config import VoiceParams
from core.errors import SpeechFailure
from core.events import EventRecorder
from core.state import SessionState


def fingerprint(text: str, voice: Optional[VoiceParams] = None) -> str:
    """Hash of the utterance text plus its synthesis parameters."""
    params = voice.model_dump() if voice is not None else {}
    payload = text + "\x00" + json.dumps(params, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SpeechDispatcher:
    """Turns text into spoken utterances through the user's AudioQueue lane.

    Two policies sit on top of the queue:
    - long text is chunked and spoken chunk by chunk, in order;
    - an utterance identical to the previous one (same text and voice) within
      `suppress_window_ms` is skipped with no device I/O.
    """

    def __init__(
        self,
        audio_queue: AudioQueue,
        recorder: EventRecorder,
        suppress_window_ms: int = 1200,
        max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
        voice: Optional[VoiceParams] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.audio_queue = audio_queue
        self.recorder = recorder
        self.suppress_window_ms = suppress_window_ms
        self.max_chunk_chars = max_chunk_chars
        self.voice = voice
        self.clock = clock

    def _is_duplicate(self, session: SessionState, fp: str, now: float) -> bool:
        if session.last_utterance_fingerprint != fp or session.last_utterance_at is None:
            return False
        return (now - session.last_utterance_at) * 1000 < self.suppress_window_ms

    async def speak(
        self,
        session: SessionState,
        text: str,
        tag: str = "tts",
        voice: Optional[VoiceParams] = None,
        detail: Optional[dict] = None,
    ) -> PlaybackResult:
        """Speak one utterance through the queue.

        Raises:
            SpeechFailure: the device failed, or no device is attached.
        """
        voice = voice if voice is not None else self.voice
        fp = fingerprint(text, voice)
        extra = detail or {}

        now = self.clock()
        if self._is_duplicate(session, fp, now):
            ms_since = round((now - session.last_utterance_at) * 1000)
            logger.debug("Suppressing duplicate TTS [{}] ({} ms since last)", tag, ms_since)
            self.recorder.record(f"{tag}_suppressed", {"text_excerpt": text[:80], "ms_since_last": ms_since, **extra})
            return PlaybackResult(success=True, suppressed=True)

        device = session.device
        if device is None:
            self.recorder.record(f"{tag}_error", extra, error="no audio device attached")
            raise SpeechFailure(f"No audio device for user {session.user_id}", tag=tag)

        self.recorder.record(f"{tag}_start", {"text_excerpt": text[:120], **extra})
        try:
            result = await self.audio_queue.enqueue(
                session.user_id, lambda: device.audio.speak(text, voice)
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("TTS speak failed [{}]: {}", tag, e)
            self.recorder.record(f"{tag}_error", extra, error=str(e) or type(e).__name__)
            if isinstance(e, SpeechFailure):
                raise
            raise SpeechFailure(str(e) or type(e).__name__, tag=tag) from e

        session.mark_utterance(fp, self.clock())
        self.recorder.record(
            f"{tag}_done",
            {"success": getattr(result, "success", None), "duration": getattr(result, "duration", None), **extra},
        )
        return result

    async def speak_chunks(
        self,
        session: SessionState,
        text: str,
        tag: str = "tts",
        voice: Optional[VoiceParams] = None,
    ) -> list[PlaybackResult]:
        """Speak arbitrarily long text, one chunk at a time, stopping at the first failure."""
        chunks = chunk_text(text, self.max_chunk_chars)
        results = []
        for i, chunk in enumerate(chunks, start=1):
            detail = {"chunk": i, "chunks": len(chunks)} if len(chunks) > 1 else None
            results.append(await self.speak(session, chunk, tag=tag, voice=voice, detail=detail))
        return results

    def play_chime(
        self,
        session: SessionState,
        source: str,
        volume: float = 0.6,
        tag: str = "chime",
    ) -> Optional[asyncio.Future]:
        """Queue a chime without waiting for it. Its failure is logged, never raised."""
        device = session.device
        if device is None:
            logger.debug("No device for {}, skipping chime", session.user_id)
            return None

        recorder = self.recorder

        async def _play():
            recorder.record(f"{tag}_play", {"source": source, "volume": volume})
            return await device.audio.play_audio(source, volume)

        def _done(fut: asyncio.Future):
            if fut.cancelled():
                return
            err = fut.exception()
            if err is not None:
                logger.warning("Chime playback failed: {}", err)
                recorder.record(f"{tag}_error", {"source": source}, error=str(err) or type(err).__name__)
            else:
                recorder.record(f"{tag}_done")

        future = self.audio_queue.submit(session.user_id, _play)
        future.add_done_callback(_done)
        return future

    async def stop(self, session: SessionState) -> None:
        """Queue a stop on the device (after anything already queued)."""
        device = session.device
        if device is None:
            return
        await self.audio_queue.enqueue(session.user_id, device.audio.stop)
        self.recorder.record("audio_stop", {"user_id": session.user_id})
