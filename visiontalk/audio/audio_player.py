import asyncio
import subprocess
import tempfile
from pathlib import Path

from loguru import logger

PLAYBACK_TIMEOUT_S = 30


class PlaybackError(RuntimeError):
    pass


class AudioPlayer:
    """Plays audio through PipeWire/PulseAudio (paplay).

    Playback failures raise PlaybackError so the caller (the audio lane) can
    report them; a kill via stop() is not a failure.
    """

    def __init__(self, command: str = "paplay"):
        self.command = command
        self._current_process: subprocess.Popen | None = None

    async def play(self, wav_bytes: bytes, volume: float = 1.0) -> None:
        """Play complete WAV bytes (with header) through the speaker."""
        if not wav_bytes:
            return

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._play_bytes_sync, wav_bytes, volume)

    def _play_bytes_sync(self, wav_bytes: bytes, volume: float) -> None:
        with tempfile.NamedTemporaryFile(suffix=".wav", delete=True) as tmp:
            tmp.write(wav_bytes)
            tmp.flush()
            self._run(tmp.name, volume)

    async def play_file(self, path: Path, volume: float = 1.0) -> None:
        """Play a sound file from disk."""
        if not path.exists():
            raise PlaybackError(f"Sound file not found: {path}")

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._run, str(path), volume)

    def _run(self, path: str, volume: float) -> None:
        # paplay volume: 0..65536 (linear)
        args = [self.command, f"--volume={int(max(0.0, min(1.0, volume)) * 65536)}", path]
        try:
            proc = subprocess.Popen(args, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise PlaybackError(f"{self.command} not found. Install pulseaudio-utils.")

        self._current_process = proc
        try:
            proc.wait(timeout=PLAYBACK_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            proc.kill()
            raise PlaybackError(f"Audio playback timed out ({PLAYBACK_TIMEOUT_S}s)")
        finally:
            self._current_process = None

        if proc.returncode not in (0, -9):
            stderr = proc.stderr.read().decode().strip() if proc.stderr else ""
            raise PlaybackError(f"{self.command} error ({proc.returncode}): {stderr}")

    async def stop(self) -> None:
        """Stop any currently playing audio immediately."""
        proc = self._current_process
        if proc is not None:
            try:
                proc.kill()
                logger.info("Audio playback stopped (killed {}).", self.command)
            except Exception as e:
                logger.debug("Error killing {}: {}", self.command, e)
            self._current_process = None

    def close(self):
        proc = self._current_process
        if proc is not None:
            try:
                proc.kill()
            except OSError:
                pass
            self._current_process = None
