import time
from pathlib import Path
from typing import Optional

from loguru import logger

from audio.audio_player import AudioPlayer, PlaybackError
from audio.device import AudioOutput, PlaybackResult
from audio.tts import TextToSpeech
from core.config import VoiceParams


class LocalAudioOutput(AudioOutput):
    """Speaker attached to the Pi: Piper synthesis played with paplay."""

    def __init__(self, tts: TextToSpeech, player: AudioPlayer, sounds_dir: Path):
        self.tts = tts
        self.player = player
        self.sounds_dir = sounds_dir

    async def speak(self, text: str, voice: Optional[VoiceParams] = None) -> PlaybackResult:
        # Piper voices are fixed per model; voice params only matter for fingerprinting here
        wav = await self.tts.synthesize(text)
        await self.player.play(wav)
        return PlaybackResult(success=True, duration=self.tts.duration_of(wav))

    async def play_audio(self, source: str, volume: float = 1.0) -> PlaybackResult:
        path = Path(source)
        if not path.is_absolute():
            path = self.sounds_dir / path
        if not path.exists():
            raise PlaybackError(f"Sound file not found: {path}")
        t0 = time.monotonic()
        await self.player.play_file(path, volume)
        return PlaybackResult(success=True, duration=time.monotonic() - t0)

    async def stop(self) -> None:
        await self.player.stop()
        logger.debug("Local audio stopped.")
