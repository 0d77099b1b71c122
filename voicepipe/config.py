"""Configuration management for voicepipe."""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class AudioConfig:
    """Audio capture configuration."""
    device: str = "default"
    capture_sample_rate: Optional[int] = None  # None = device default
    channels: int = 1
    block_duration_ms: int = 30
    queue_max_frames: int = 256
    target_sample_rate: int = 16000
    stall_timeout_s: float = 2.0
    always_on_microphone: bool = False


@dataclass
class VadConfig:
    """Voice activity detection configuration."""
    window_samples: int = 512
    speech_threshold: float = 0.5
    silence_threshold: float = 0.35
    open_debounce_windows: int = 3
    close_debounce_windows: int = 15
    pre_roll_windows: int = 0
    model_repo: str = "snakers4/silero-vad"
    onnx: bool = False


@dataclass
class SessionConfig:
    """Recording session configuration."""
    trigger_mode: str = "manual"  # manual | auto
    min_segment_ms: int = 250
    trim_silence: bool = True
    trim_padding_windows: int = 3


@dataclass
class TranscriptionConfig:
    """Inference engine configuration."""
    engine: str = "whisper"  # whisper | parakeet
    model: str = "small.en"
    device: str = "cuda"
    compute_type: str = "float16"
    language: Optional[str] = "en"
    beam_size: int = 5
    max_inference_s: Optional[float] = None
    model_unload_timeout_s: Optional[float] = None  # None = never, 0 = immediately
    idle_check_interval_s: float = 10.0
    preload: bool = True
    custom_words: list[str] = field(default_factory=list)
    word_correction_threshold: float = 0.18
    recent_results: int = 50
    partial_chunk_ms: Optional[int] = None  # stream chunks of an open recording; None = off


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "./logs/voicepipe.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Config:
    """Main configuration container."""
    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VadConfig = field(default_factory=VadConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls(
            audio=AudioConfig(**data.get("audio", {})),
            vad=VadConfig(**data.get("vad", {})),
            session=SessionConfig(**data.get("session", {})),
            transcription=TranscriptionConfig(**data.get("transcription", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "audio": asdict(self.audio),
            "vad": asdict(self.vad),
            "session": asdict(self.session),
            "transcription": asdict(self.transcription),
            "logging": asdict(self.logging),
        }

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        log_level = getattr(logging, self.logging.level.upper(), logging.INFO)

        handlers = [logging.StreamHandler()]

        if self.logging.file:
            log_path = Path(self.logging.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))

        logging.basicConfig(
            level=log_level,
            format=self.logging.format,
            handlers=handlers,
        )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from file or environment."""
    if path is None:
        path = os.environ.get("VOICEPIPE_CONFIG", "config/settings.yaml")
    return Config.from_yaml(path)
