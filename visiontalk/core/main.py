import asyncio
import sys
from pathlib import Path

from loguru import logger

from core.config import ConfigManager
from core.events import EventRecorder
from core.pipeline import PipelineOrchestrator
from core.state import DeviceSession, SessionRegistry

# Base directory for the visiontalk tree
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
MODELS_DIR = BASE_DIR / "models"
SOUNDS_DIR = BASE_DIR / "audio" / "sounds"

LOCAL_USER_ID = "local"


def setup_logging(level: str = "INFO", file_level: str = "DEBUG", log_dir: Path = DATA_DIR) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level, format="{time:HH:mm:ss} | {level:<7} | {message}")
    logger.add(log_dir / "visiontalk.log", rotation="10 MB", retention="7 days", level=file_level)


def build_orchestrator(config_manager: ConfigManager) -> PipelineOrchestrator:
    """Wire the pipeline components from config."""
    from audio.audio_queue import AudioQueue
    from audio.speech import SpeechDispatcher
    from llm.base import StaticAnalyzer
    from vision.capture import CaptureController
    from vision.preprocess import CenterCropPreprocessor

    config = config_manager.config
    recorder = EventRecorder(capacity=config.pipeline.event_capacity)
    registry = SessionRegistry(history_capacity=config.pipeline.history_capacity)
    audio_queue = AudioQueue(
        registry,
        settle_delay=config.audio.settle_delay_ms / 1000,
        operation_timeout=config.audio.operation_timeout_s,
        recorder=recorder,
    )
    speech = SpeechDispatcher(
        audio_queue,
        recorder,
        suppress_window_ms=config.audio.duplicate_suppress_ms,
        max_chunk_chars=config.audio.max_chunk_chars,
        voice=config.audio.voice,
    )

    if config_manager.has_openai_key:
        from llm.providers.openai_provider import OpenAIVisionAnalyzer
        analyzer = OpenAIVisionAnalyzer(
            api_key=config.api_keys.openai,
            model=config.vision.model,
            max_tokens=config.vision.max_tokens,
            temperature=config.vision.temperature,
            recorder=recorder,
        )
        logger.info("[VISION] Using OpenAI provider: {}", config.vision.model)
    else:
        logger.warning("OPENAI_API_KEY missing. Vision analysis will use a static reply.")
        analyzer = StaticAnalyzer()

    preprocessor = None
    if config.capture.center_crop:
        preprocessor = CenterCropPreprocessor(factor=config.capture.center_crop_factor, recorder=recorder)

    return PipelineOrchestrator(
        config=config,
        registry=registry,
        recorder=recorder,
        audio_queue=audio_queue,
        speech=speech,
        capture=CaptureController(recorder),
        analyzer=analyzer,
        preprocessor=preprocessor,
    )


class App:
    """Process bootstrap: local device + diagnostics API."""

    def __init__(self, data_dir: Path = DATA_DIR):
        self.config_manager = ConfigManager(data_dir)
        self.orchestrator = build_orchestrator(self.config_manager)
        self._server = None

    async def _local_device(self) -> DeviceSession:
        from audio.audio_player import AudioPlayer
        from audio.local_output import LocalAudioOutput
        from audio.tts import TextToSpeech
        from vision.camera import PiCamera

        tts = TextToSpeech(model_dir=MODELS_DIR / "tts")
        await tts.load()
        return DeviceSession(
            camera=PiCamera(),
            audio=LocalAudioOutput(tts, AudioPlayer(), SOUNDS_DIR),
        )

    async def start(self):
        logger.info("=== VisionTalk starting ===")
        await self._start_api_server()

        device = await self._local_device()
        await self.orchestrator.start_session(LOCAL_USER_ID, device)
        logger.info("=== Ready. Press the button (POST /api/control/press) to look. ===")

        while not self._server.should_exit:
            await asyncio.sleep(1)

    async def _start_api_server(self):
        """Start the FastAPI server in the background."""
        from api.server import create_app
        import uvicorn

        o = self.orchestrator
        app = create_app(self.config_manager, o.registry, o.recorder, o)
        server_cfg = self.config_manager.config.server
        self._server = uvicorn.Server(uvicorn.Config(
            app, host=server_cfg.host, port=server_cfg.port, log_level="warning"
        ))
        asyncio.create_task(self._server.serve())
        logger.info("API server started on port {}", server_cfg.port)

    async def shutdown(self):
        logger.info("Shutting down...")
        await self.orchestrator.shutdown()
        if self._server is not None:
            self._server.should_exit = True
        logger.info("Shutdown complete.")


def main():
    """Entry point."""
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    app = App()
    log_cfg = app.config_manager.config.logging
    setup_logging(log_cfg.level, log_cfg.file_level)

    loop = asyncio.new_event_loop()
    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        loop.run_until_complete(app.shutdown())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
