import asyncio
import io
import wave
from pathlib import Path

import numpy as np
from loguru import logger


class TextToSpeech:
    """Text-to-speech using Piper TTS.

    Each call synthesizes one chunk; the SpeechDispatcher keeps chunks short
    enough that a single synthesis never stalls the audio lane for long.
    """

    def __init__(
        self,
        model_dir: Path,
        voice: str = "en_US-lessac-medium",
        sample_rate: int = 22050,
    ):
        self.model_dir = model_dir
        self.voice = voice
        self.sample_rate = sample_rate
        self._piper = None

    async def load(self):
        """Load the Piper TTS voice model."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._load_sync)

    def _load_sync(self):
        try:
            from piper import PiperVoice

            model_path = self.model_dir / f"{self.voice}.onnx"
            config_path = self.model_dir / f"{self.voice}.onnx.json"

            if model_path.exists():
                self._piper = PiperVoice.load(str(model_path), config_path=str(config_path))
                logger.info("Piper TTS loaded: {}", self.voice)
            else:
                logger.warning("Piper voice model not found at {}.", model_path)
        except ImportError:
            logger.warning("piper-tts not installed. TTS will be unavailable.")

    async def synthesize(self, text: str) -> bytes:
        """Synthesize text to WAV audio bytes.

        Raises:
            RuntimeError: the voice is not loaded or produced no audio.
        """
        if not text or not text.strip():
            return b""

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._synthesize_sync, text)

    def _synthesize_sync(self, text: str) -> bytes:
        if self._piper is None:
            raise RuntimeError("TTS voice not loaded")

        # Each AudioChunk carries float32 samples normalized to [-1, 1]
        all_audio = []
        for chunk in self._piper.synthesize(text):
            all_audio.append((chunk.audio_float_array * 32767).astype(np.int16))

        if not all_audio:
            raise RuntimeError(f"TTS produced no audio for '{text[:50]}'")

        audio_data = np.concatenate(all_audio)
        return self.to_wav(audio_data)

    def to_wav(self, samples: np.ndarray) -> bytes:
        """Wrap int16 mono samples in a WAV container."""
        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)  # 16-bit
            wav.setframerate(self.sample_rate)
            wav.writeframes(samples.astype(np.int16).tobytes())

        audio_bytes = wav_buffer.getvalue()
        logger.debug("TTS: {} bytes of WAV", len(audio_bytes))
        return audio_bytes

    def duration_of(self, wav_bytes: bytes) -> float:
        if not wav_bytes:
            return 0.0
        with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
            return wav.getnframes() / float(wav.getframerate())
