"""Voice Activity Detection: Silero scoring plus debounced speech edges."""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

from ..config import VadConfig
from ..errors import UnsupportedFormat
from .segment import Segment, SegmentBuilder

logger = logging.getLogger(__name__)

# Silero only accepts these window sizes per sample rate.
SILERO_WINDOW_SAMPLES = {16000: 512, 8000: 256}


class SileroVadScorer:
    """Per-window speech probability from the Silero VAD model."""

    def __init__(self, config: VadConfig, sample_rate: int = 16000):
        expected = SILERO_WINDOW_SAMPLES.get(sample_rate)
        if expected is None:
            raise UnsupportedFormat(f"Silero VAD does not support {sample_rate}Hz")
        if config.window_samples != expected:
            raise ValueError(
                f"Silero VAD needs {expected}-sample windows at {sample_rate}Hz, "
                f"got {config.window_samples}"
            )

        self.config = config
        self.sample_rate = sample_rate
        self.window_samples = config.window_samples

        self._model = None
        self._load_model()

    def _load_model(self) -> None:
        """Load the Silero VAD model."""
        logger.info("Loading Silero VAD model...")
        try:
            self._model, _ = torch.hub.load(
                repo_or_dir=self.config.model_repo,
                model="silero_vad",
                force_reload=False,
                onnx=self.config.onnx,
            )
            if hasattr(self._model, "eval"):
                self._model.eval()
            logger.info("Silero VAD model loaded")
        except Exception as e:
            logger.error(f"Failed to load Silero VAD: {e}")
            raise

    def score(self, window: np.ndarray) -> float:
        """Speech probability in [0, 1] for one window."""
        if len(window) != self.window_samples:
            raise ValueError(f"Expected {self.window_samples} samples, got {len(window)}")

        audio_tensor = torch.from_numpy(np.ascontiguousarray(window, dtype=np.float32))
        with torch.no_grad():
            speech_prob = self._model(audio_tensor, self.sample_rate).item()

        return float(min(1.0, max(0.0, speech_prob)))

    def reset(self) -> None:
        """Reset the model's recurrent state between streams."""
        if self._model is not None:
            self._model.reset_states()


@dataclass
class VadDecision:
    """Result of feeding one window to SmoothedVAD."""
    window_index: int
    probability: float
    is_speech: bool
    boundary: Optional[str] = None  # "start" | "end"
    segment: Optional[Segment] = None  # set on an "end" boundary


class SmoothedVAD:
    """Hysteresis and debounce over raw speech probabilities.

    Silence -> Speech after open_debounce_windows consecutive windows at or
    above speech_threshold; the windows of that run open the segment. A
    broken run is dropped (only pre_roll_windows of history survive).
    Speech holds through close_debounce_windows consecutive windows below
    silence_threshold and closes on the next one. Every window seen while in
    Speech, the closing one included, is part of the segment.
    """

    def __init__(self, config: VadConfig, sample_rate: int = 16000):
        self.config = config
        self.sample_rate = sample_rate
        self.speech_threshold = config.speech_threshold
        self.silence_threshold = min(config.silence_threshold, config.speech_threshold)
        self.open_debounce = max(1, config.open_debounce_windows)
        self.close_debounce = max(0, config.close_debounce_windows)

        self._is_speaking = False
        self._window_index = 0
        self._run: list[tuple[np.ndarray, float, float]] = []
        self._pre_roll: deque = deque(maxlen=max(0, config.pre_roll_windows))
        self._builder: Optional[SegmentBuilder] = None
        self._silence_run = 0

    def reset(self) -> None:
        """Reset VAD state, discarding any open segment."""
        self._is_speaking = False
        self._window_index = 0
        self._run.clear()
        self._pre_roll.clear()
        self._builder = None
        self._silence_run = 0

    def update(self, samples: np.ndarray, probability: float, timestamp: float) -> VadDecision:
        """Feed one window and its probability."""
        index = self._window_index
        self._window_index += 1
        window = (samples, timestamp, probability)

        if not self._is_speaking:
            return self._update_silence(window, index)
        return self._update_speech(window, index)

    def _update_silence(self, window, index: int) -> VadDecision:
        probability = window[2]
        if probability >= self.speech_threshold:
            self._run.append(window)
            if len(self._run) >= self.open_debounce:
                self._builder = SegmentBuilder(self.sample_rate)
                self._builder.extend(self._pre_roll)
                self._builder.extend(self._run)
                self._pre_roll.clear()
                self._run.clear()
                self._is_speaking = True
                self._silence_run = 0
                logger.debug(f"Speech started at window {index}")
                return VadDecision(index, probability, True, boundary="start")
            return VadDecision(index, probability, False)

        for pending in self._run:
            self._pre_roll.append(pending)
        self._run.clear()
        self._pre_roll.append(window)
        return VadDecision(index, probability, False)

    def _update_speech(self, window, index: int) -> VadDecision:
        probability = window[2]
        self._builder.append(*window)

        if probability >= self.silence_threshold:
            self._silence_run = 0
            return VadDecision(index, probability, True)

        self._silence_run += 1
        if self._silence_run <= self.close_debounce:
            return VadDecision(index, probability, True)

        segment = self._builder.build()
        self._builder = None
        self._is_speaking = False
        self._silence_run = 0
        logger.debug(f"Speech ended at window {index} ({segment.duration_ms}ms)")
        return VadDecision(index, probability, False, boundary="end", segment=segment)

    def flush(self) -> Optional[Segment]:
        """Close the open segment now and return it."""
        if not self._is_speaking or self._builder is None:
            return None

        segment = self._builder.build()
        self._builder = None
        self._is_speaking = False
        self._silence_run = 0
        return segment

    @property
    def is_speaking(self) -> bool:
        """Check if currently inside a speech segment."""
        return self._is_speaking

    @property
    def open_builder(self) -> Optional[SegmentBuilder]:
        """The segment being built while in Speech."""
        return self._builder

    @property
    def open_segment_ms(self) -> int:
        return self._builder.duration_ms if self._builder is not None else 0
