"""Pytest configuration and shared fixtures."""

import tempfile
import threading
import time
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import numpy as np
import pytest


# ==================== Helpers ====================

def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or the timeout elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class EventRecorder:
    """Event bus subscriber that keeps everything it receives.

    Reads wait for the watched bus to deliver what has been emitted.
    """

    def __init__(self):
        self._events = []
        self._lock = threading.Lock()
        self._buses = []

    def watch(self, bus) -> None:
        bus.subscribe(self)
        self._buses.append(bus)

    def __call__(self, event) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list:
        for bus in self._buses:
            bus.drain(timeout=2.0)
        with self._lock:
            return list(self._events)

    def of_type(self, event_type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


# ==================== Path Fixtures ====================

@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config_file(temp_dir):
    """Create a temporary config file."""
    config_path = temp_dir / "settings.yaml"
    config_content = """
audio:
  device: "default"
  target_sample_rate: 16000
  block_duration_ms: 20

vad:
  speech_threshold: 0.6
  silence_threshold: 0.4
  open_debounce_windows: 2
  close_debounce_windows: 4

session:
  trigger_mode: "auto"
  min_segment_ms: 500

transcription:
  engine: "whisper"
  model: "tiny"
  device: "cpu"
  compute_type: "int8"
  max_inference_s: 30
  custom_words: ["Kubernetes", "voicepipe"]

logging:
  level: "DEBUG"
  file: null
"""
    config_path.write_text(config_content)
    return config_path


# ==================== Audio Fixtures ====================

@pytest.fixture
def speech_window():
    """One 32ms VAD window of noise at 16kHz."""
    return (np.random.randn(512) * 0.1).astype(np.float32)


@pytest.fixture
def silence_window():
    """One silent 32ms VAD window at 16kHz."""
    return np.zeros(512, dtype=np.float32)


@pytest.fixture
def make_segment():
    """Factory for finished segments of a given duration."""
    from voicepipe.audio.segment import Segment

    def _make(duration_ms: int = 1000, sample_rate: int = 16000, start_time: float = 0.0):
        samples = (np.random.randn(int(sample_rate * duration_ms / 1000)) * 0.1).astype(np.float32)
        return Segment(
            samples=samples,
            sample_rate=sample_rate,
            start_time=start_time,
            end_time=start_time + duration_ms / 1000,
        )

    return _make


# ==================== Config Fixtures ====================

@pytest.fixture
def vad_config():
    """Small debounce values for readable traces."""
    from voicepipe.config import VadConfig
    return VadConfig(
        speech_threshold=0.5,
        silence_threshold=0.5,
        open_debounce_windows=2,
        close_debounce_windows=2,
    )


@pytest.fixture
def test_config(vad_config):
    """Full config tuned for fast tests."""
    from voicepipe.config import Config, SessionConfig, TranscriptionConfig
    return Config(
        vad=vad_config,
        session=SessionConfig(trigger_mode="manual", min_segment_ms=100, trim_silence=False),
        transcription=TranscriptionConfig(
            model="tiny",
            device="cpu",
            compute_type="float32",
            preload=False,
        ),
    )


# ==================== Event Fixtures ====================

@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def event_bus(recorder):
    """Event bus with a recorder subscribed."""
    from voicepipe.events import EventBus
    bus = EventBus()
    recorder.watch(bus)
    yield bus
    bus.close()


# ==================== Engine Fixtures ====================

@pytest.fixture
def fake_engine():
    """Controllable in-memory inference engine."""
    from voicepipe.config import TranscriptionConfig
    from voicepipe.transcription.engine import InferenceEngine

    class FakeEngine(InferenceEngine):
        name = "fake"

        def __init__(self):
            super().__init__(TranscriptionConfig(model="fake-model", preload=False))
            self.text = "hello world"
            self.error: Optional[Exception] = None
            self.gate: Optional[threading.Event] = None
            self.started = threading.Event()
            self.calls: list[int] = []
            self.load_calls: list[str] = []
            self.load_error: Optional[Exception] = None
            self._loaded = False

        def load(self, model_id):
            self.load_calls.append(model_id)
            if self.load_error is not None:
                raise self.load_error
            self._loaded = True

        def unload(self):
            self._loaded = False

        @property
        def is_loaded(self):
            return self._loaded

        def transcribe(self, audio, cancel_event=None):
            self.calls.append(len(audio))
            self.started.set()
            if self.gate is not None:
                self.gate.wait(timeout=5.0)
            if self.error is not None:
                raise self.error
            return self.text

    return FakeEngine()


@pytest.fixture
def mock_whisper_model():
    """Create a mock Whisper model."""
    mock_model = MagicMock()
    mock_segment = MagicMock()
    mock_segment.text = " Test transcription "
    mock_segment.avg_logprob = -0.5
    mock_model.transcribe.return_value = (iter([mock_segment]), MagicMock())
    return mock_model


@pytest.fixture
def mock_vad_model():
    """Create a mock Silero VAD model."""
    mock_model = MagicMock()
    mock_model.return_value = MagicMock(item=MagicMock(return_value=0.8))
    mock_model.reset_states = MagicMock()
    return mock_model
