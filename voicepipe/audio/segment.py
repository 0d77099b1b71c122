"""Speech segments and the fixed-size windows they are assembled from."""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .capture import AudioFrame


@dataclass(frozen=True)
class Segment:
    """A finished span of mono audio at the inference sample rate."""
    samples: np.ndarray
    sample_rate: int
    start_time: float
    end_time: float

    def __post_init__(self):
        self.samples.setflags(write=False)

    @property
    def duration_ms(self) -> int:
        return int(len(self.samples) * 1000 / self.sample_rate)


class SegmentBuilder:
    """Mutable accumulator for the one segment currently open.

    Keeps every window with its timestamp and raw speech probability so the
    finished segment can be trimmed before it is built.
    """

    def __init__(self, sample_rate: int):
        self.sample_rate = sample_rate
        self._windows: list[tuple[np.ndarray, float, Optional[float]]] = []
        self._num_samples = 0

    def append(self, samples: np.ndarray, timestamp: float, probability: Optional[float] = None) -> None:
        self._windows.append((samples, timestamp, probability))
        self._num_samples += len(samples)

    def extend(self, windows) -> None:
        for samples, timestamp, probability in windows:
            self.append(samples, timestamp, probability)

    def __len__(self) -> int:
        return len(self._windows)

    @property
    def duration_ms(self) -> int:
        return int(self._num_samples * 1000 / self.sample_rate)

    @property
    def probabilities(self) -> list[Optional[float]]:
        return [p for _, _, p in self._windows]

    @property
    def num_samples(self) -> int:
        return self._num_samples

    def samples_from(self, offset: int) -> np.ndarray:
        """Untrimmed audio from sample offset to the end."""
        if offset >= self._num_samples:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate([w for w, _, _ in self._windows]).astype(np.float32)[offset:]

    def build(self, trim_threshold: Optional[float] = None, padding_windows: int = 0) -> Optional[Segment]:
        """Concatenate the windows into a Segment, or None if empty.

        With trim_threshold set, windows before the first and after the last
        window scoring at or above it are dropped (keeping padding_windows on
        each side). A recording with no window above the threshold is kept
        whole.
        """
        windows = self._windows
        if not windows:
            return None

        if trim_threshold is not None:
            first, last = trim_silence(
                [p for _, _, p in windows], trim_threshold, padding_windows
            )
            windows = windows[first:last + 1]

        samples = np.concatenate([w for w, _, _ in windows]).astype(np.float32)
        last_samples, last_ts, _ = windows[-1]
        return Segment(
            samples=samples,
            sample_rate=self.sample_rate,
            start_time=windows[0][1],
            end_time=last_ts + len(last_samples) / self.sample_rate,
        )


def trim_silence(
    probabilities: list[Optional[float]],
    threshold: float,
    padding_windows: int = 0,
) -> tuple[int, int]:
    """Return the inclusive (first, last) window range worth keeping."""
    voiced = [i for i, p in enumerate(probabilities) if p is not None and p >= threshold]
    if not voiced:
        return 0, len(probabilities) - 1

    first = max(0, voiced[0] - padding_windows)
    last = min(len(probabilities) - 1, voiced[-1] + padding_windows)
    return first, last


class WindowAccumulator:
    """Slice a stream of mono frames into fixed-size windows."""

    def __init__(self, window_samples: int, sample_rate: int):
        if window_samples <= 0:
            raise ValueError(f"window_samples must be positive, got {window_samples}")
        self.window_samples = window_samples
        self.sample_rate = sample_rate
        self._pending = np.zeros(0, dtype=np.float32)
        self._pending_time = 0.0

    def reset(self) -> None:
        self._pending = np.zeros(0, dtype=np.float32)
        self._pending_time = 0.0

    def push(self, frame: AudioFrame) -> list[tuple[np.ndarray, float]]:
        """Add a mono frame; return the windows it completes with start times."""
        if frame.channels != 1 or frame.sample_rate != self.sample_rate:
            raise ValueError(
                f"Expected mono {self.sample_rate}Hz frames, got "
                f"{frame.channels}ch {frame.sample_rate}Hz"
            )

        if len(self._pending) == 0:
            self._pending_time = frame.timestamp
        buffer = np.concatenate((self._pending, frame.samples)).astype(np.float32)

        windows = []
        offset = 0
        while offset + self.window_samples <= len(buffer):
            window = buffer[offset:offset + self.window_samples].copy()
            windows.append((window, self._pending_time + offset / self.sample_rate))
            offset += self.window_samples

        self._pending = buffer[offset:].copy()
        self._pending_time += offset / self.sample_rate
        return windows
