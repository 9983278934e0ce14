import json
import os
from pathlib import Path
from typing import Optional

from loguru import logger
from pydantic import BaseModel, Field


class VoiceParams(BaseModel):
    """Synthesis parameters; part of every utterance fingerprint."""

    voice_id: Optional[str] = None
    model_id: Optional[str] = None
    stability: Optional[float] = None
    similarity_boost: Optional[float] = None
    style: Optional[float] = None
    speed: Optional[float] = None


class AudioConfig(BaseModel):
    duplicate_suppress_ms: int = Field(default=1200, ge=0)
    settle_delay_ms: int = Field(default=100, ge=0)
    operation_timeout_s: float = Field(default=30.0, gt=0)
    max_chunk_chars: int = Field(default=350, ge=20)
    chime_enabled: bool = True
    chime_volume: float = Field(default=0.6, ge=0.0, le=1.0)
    chime_source: str = "chime.wav"
    startup_chime: bool = False  # Play a chime instead of the spoken greeting
    voice: VoiceParams = Field(default_factory=VoiceParams)


class CaptureConfig(BaseModel):
    attempts: int = Field(default=3, ge=1)
    initial_timeout_ms: int = Field(default=20000, gt=0)
    backoff_ms: int = Field(default=750, ge=0)
    size_hint: str = "medium"  # small | medium | large
    prompt_delay_ms: int = Field(default=250, ge=0)
    center_crop: bool = True
    center_crop_factor: float = Field(default=0.6, ge=0.1, le=1.0)


class PipelineConfig(BaseModel):
    capture_only: bool = False  # Capture + cache + chime, no analysis or speech
    capture_prompt: bool = True
    short_answer_max_chars: int = Field(default=600, ge=1)
    run_timeout_s: float = Field(default=120.0, gt=0)
    apology_timeout_s: float = Field(default=10.0, gt=0)
    history_capacity: int = Field(default=10, ge=1)
    event_capacity: int = Field(default=200, ge=1)


class VisionConfig(BaseModel):
    model: str = "gpt-4o"
    max_tokens: int = 600
    temperature: float = 0.7


class APIKeysConfig(BaseModel):
    openai: str = ""


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    http_log: str = "sampled"  # none | basic | sampled
    http_sample_rate: float = Field(default=0.033, ge=0.0, le=1.0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_level: str = "DEBUG"


class AppConfig(BaseModel):
    audio: AudioConfig = Field(default_factory=AudioConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    vision: VisionConfig = Field(default_factory=VisionConfig)
    api_keys: APIKeysConfig = Field(default_factory=APIKeysConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (section, field, parser)
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("api_keys", "openai", str),
    "OPENAI_MODEL": ("vision", "model", str),
    "VT_LOG_LEVEL": ("logging", "level", lambda v: v.upper()),
    "VT_HTTP_LOG": ("server", "http_log", lambda v: v.lower()),
    "VT_HTTP_SAMPLE_RATE": ("server", "http_sample_rate", lambda v: min(1.0, max(0.0, float(v)))),
    "PORT": ("server", "port", int),
    "CAPTURE_ONLY": ("pipeline", "capture_only", _env_bool),
    "STARTUP_CHIME": ("audio", "startup_chime", _env_bool),
    "AUDIO_DUPLICATE_SUPPRESS_MS": ("audio", "duplicate_suppress_ms", lambda v: max(0, int(v))),
    "CAPTURE_CHIME_ENABLED": ("audio", "chime_enabled", _env_bool),
    "PHOTO_CAPTURE_SIZE": ("capture", "size_hint", lambda v: v.lower()),
    "PHOTO_CENTER_CROP": ("capture", "center_crop", _env_bool),
    "PHOTO_CENTER_CROP_FACTOR": ("capture", "center_crop_factor", lambda v: min(1.0, max(0.1, float(v)))),
}


def apply_env_overrides(data: dict, environ: Optional[dict] = None) -> dict:
    """Overlay recognised environment variables onto a raw config dict."""
    environ = os.environ if environ is None else environ
    for name, (section, key, parse) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError:
            logger.warning("Ignoring invalid value for {}: '{}'", name, raw)
            continue
        data.setdefault(section, {})[key] = value
    return data


class ConfigManager:
    """Manages application configuration with JSON persistence."""

    def __init__(self, data_dir: Path, environ: Optional[dict] = None):
        self.data_dir = data_dir
        self.config_path = data_dir / "config.json"
        self._environ = environ
        self._config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            self._config = self._load()
        return self._config

    def _load(self) -> AppConfig:
        """Load config from disk, then apply env overrides. Defaults if no config exists."""
        data: dict = {}
        if self.config_path.exists():
            try:
                data = json.loads(self.config_path.read_text())
                logger.info("Configuration loaded from {}", self.config_path)
            except Exception as e:
                logger.error("Failed to load config: {}. Using defaults.", e)
                data = {}
        else:
            logger.info("No existing config found. Using defaults.")
        return AppConfig(**apply_env_overrides(data, self._environ))

    def save(self) -> None:
        """Persist current config to disk."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_path.write_text(self.config.model_dump_json(indent=2))
        logger.debug("Configuration saved to {}", self.config_path)

    def update_nested(self, section: str, **kwargs) -> AppConfig:
        """Update fields within a config section and save."""
        current = self.config.model_dump()
        if section not in current or not isinstance(current[section], dict):
            raise KeyError(f"Unknown config section: {section}")
        current[section].update(kwargs)
        self._config = AppConfig(**current)
        self.save()
        return self._config

    def reset(self) -> None:
        """Reset config to defaults and remove the persisted file."""
        self._config = AppConfig()
        if self.config_path.exists():
            self.config_path.unlink()
        logger.info("Configuration reset to defaults.")

    @property
    def is_capture_only(self) -> bool:
        return self.config.pipeline.capture_only

    @property
    def has_openai_key(self) -> bool:
        return bool(self.config.api_keys.openai)
