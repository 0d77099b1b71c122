"""Streaming conversion of device audio to mono at the inference rate."""

import logging
from typing import Optional

import numpy as np

from ..errors import UnsupportedFormat
from .capture import AudioFrame

logger = logging.getLogger(__name__)

MAX_CHANNELS = 32
MAX_RATIO = 16.0


class Resampler:
    """Downmix to mono and linearly interpolate to a fixed target rate.

    Works block by block: the last input sample and the fractional read
    position carry over between calls, so block boundaries neither drop nor
    repeat output samples. The same block sequence always produces the same
    output.
    """

    def __init__(self, target_rate: int = 16000):
        if target_rate <= 0:
            raise UnsupportedFormat(f"Invalid target sample rate: {target_rate}")
        self.target_rate = target_rate

        self._source_rate: Optional[int] = None
        self._source_channels: Optional[int] = None
        self._last_sample: Optional[float] = None
        self._position = 0.0

    def reset(self) -> None:
        """Drop filter history."""
        self._source_rate = None
        self._source_channels = None
        self._last_sample = None
        self._position = 0.0

    def _check_format(self, sample_rate: int, channels: int) -> None:
        if sample_rate <= 0:
            raise UnsupportedFormat(f"Invalid sample rate: {sample_rate}")
        if channels < 1 or channels > MAX_CHANNELS:
            raise UnsupportedFormat(f"Unsupported channel count: {channels}")
        ratio = sample_rate / self.target_rate
        if ratio > MAX_RATIO or ratio < 1.0 / MAX_RATIO:
            raise UnsupportedFormat(
                f"Cannot resample {sample_rate}Hz to {self.target_rate}Hz"
            )

    @staticmethod
    def _downmix(samples: np.ndarray) -> np.ndarray:
        if samples.ndim == 1:
            return samples.astype(np.float32, copy=False)
        if samples.shape[1] == 1:
            return samples[:, 0].astype(np.float32, copy=False)
        return samples.mean(axis=1, dtype=np.float32)

    def process(self, frame: AudioFrame) -> list[AudioFrame]:
        """Convert one frame; returns zero or one output frames."""
        self._check_format(frame.sample_rate, frame.channels)

        if (frame.sample_rate, frame.channels) != (self._source_rate, self._source_channels):
            if self._source_rate is not None:
                logger.info(
                    f"Input format changed to {frame.sample_rate}Hz/{frame.channels}ch, "
                    "resetting resampler"
                )
            self.reset()
            self._source_rate = frame.sample_rate
            self._source_channels = frame.channels

        mono = self._downmix(frame.samples)
        if len(mono) == 0:
            return []

        if frame.sample_rate == self.target_rate:
            return [AudioFrame(
                samples=mono.copy(),
                sample_rate=self.target_rate,
                channels=1,
                timestamp=frame.timestamp,
            )]

        # Index 0 of the extended buffer is the previous block's last sample.
        if self._last_sample is None:
            extended = mono
        else:
            extended = np.concatenate(([self._last_sample], mono)).astype(np.float32)

        step = frame.sample_rate / self.target_rate
        last_index = len(extended) - 1
        if self._position > last_index:
            count = 0
        else:
            count = int(np.floor((last_index - self._position) / step)) + 1

        positions = self._position + step * np.arange(count)
        output = np.interp(positions, np.arange(len(extended)), extended).astype(np.float32)

        self._position = self._position + step * count - last_index
        self._last_sample = float(extended[-1])

        if count == 0:
            return []

        return [AudioFrame(
            samples=output,
            sample_rate=self.target_rate,
            channels=1,
            timestamp=frame.timestamp,
        )]
