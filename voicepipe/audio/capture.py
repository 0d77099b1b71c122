"""Audio capture module exposing the microphone as a lazy frame stream."""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Iterator, Optional, Union

import numpy as np
import sounddevice as sd

from ..config import AudioConfig
from ..errors import DeviceLost, DeviceUnavailable

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


@dataclass(frozen=True)
class AudioFrame:
    """A block of samples as delivered by the device or the resampler."""
    samples: np.ndarray
    sample_rate: int
    channels: int
    timestamp: float  # time.monotonic() at capture

    def __post_init__(self):
        self.samples.setflags(write=False)

    @property
    def num_samples(self) -> int:
        return len(self.samples)

    @property
    def duration_ms(self) -> float:
        return self.num_samples * 1000.0 / self.sample_rate


class AudioStream:
    """An open input stream; iterate it to receive AudioFrames.

    The PortAudio callback only copies the block and enqueues it without
    blocking. Iteration ends cleanly after close(); if the device stops on
    its own the iterator raises DeviceLost once.
    """

    def __init__(
        self,
        device_id: str,
        device: Optional[Union[int, str]],
        sample_rate: int,
        channels: int,
        blocksize: int,
        queue_max_frames: int = 256,
        stall_timeout_s: float = 2.0,
    ):
        self.device_id = device_id
        self.device = device
        self.sample_rate = sample_rate
        self.channels = channels
        self.blocksize = blocksize
        self.stall_timeout_s = stall_timeout_s

        self._queue: queue.Queue = queue.Queue(maxsize=queue_max_frames)
        self._stream: Optional[sd.InputStream] = None
        self._closing = threading.Event()

        self.total_frames = 0
        self.dropped_frames = 0

    def _start(self) -> None:
        try:
            self._stream = sd.InputStream(
                device=self.device,
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype=np.float32,
                blocksize=self.blocksize,
                callback=self._audio_callback,
                finished_callback=self._on_finished,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise DeviceUnavailable(
                f"Failed to open input device {self.device_id}: {e}",
                device=self.device_id,
            ) from e

        logger.info(
            f"Audio stream opened on {self.device_id}: "
            f"{self.sample_rate}Hz, {self.channels}ch, {self.blocksize} samples/block"
        )

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,
        time_info,
        status: sd.CallbackFlags,
    ) -> None:
        """Callback for sounddevice stream."""
        if status:
            logger.warning(f"Audio callback status: {status}")

        frame = AudioFrame(
            samples=indata.copy(),
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp=time.monotonic(),
        )
        try:
            self._queue.put_nowait(frame)
        except queue.Full:
            self.dropped_frames += 1

    def _on_finished(self) -> None:
        """PortAudio reports the stream inactive (closed or failed)."""
        self._put_end()

    def _put_end(self) -> None:
        try:
            self._queue.put_nowait(_END_OF_STREAM)
        except queue.Full:
            # Consumer is behind; the oldest block goes so the end marker fits.
            try:
                self._queue.get_nowait()
            except queue.Empty:
                pass
            self._queue.put_nowait(_END_OF_STREAM)

    def __iter__(self) -> Iterator[AudioFrame]:
        return self.frames()

    def frames(self) -> Iterator[AudioFrame]:
        """Yield frames until close(); raise DeviceLost if the device stops."""
        while not self._closing.is_set():
            try:
                item = self._queue.get(timeout=self.stall_timeout_s)
            except queue.Empty:
                if self._closing.is_set():
                    return
                stream = self._stream
                if stream is not None and stream.active:
                    continue
                item = _END_OF_STREAM

            if item is _END_OF_STREAM:
                if self._closing.is_set():
                    return
                logger.error(f"Input device {self.device_id} stopped unexpectedly")
                raise DeviceLost(
                    f"Input device {self.device_id} stopped unexpectedly",
                    device=self.device_id,
                )

            self.total_frames += 1
            yield item

    def close(self) -> None:
        """Stop the stream and release the device."""
        if self._closing.is_set():
            return

        self._closing.set()
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except sd.PortAudioError as e:
                logger.warning(f"Error closing input stream: {e}")
            self._stream = None

        self._put_end()

        if self.dropped_frames:
            logger.warning(f"Audio stream dropped {self.dropped_frames} blocks (consumer too slow)")
        logger.info(f"Audio stream closed. Total frames: {self.total_frames}")

    @property
    def closed(self) -> bool:
        return self._closing.is_set()

    def __enter__(self) -> "AudioStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class AudioCapture:
    """Opens input devices as AudioStreams."""

    def __init__(self, config: AudioConfig):
        self.config = config

    @staticmethod
    def _resolve_device(device_id: str) -> Optional[Union[int, str]]:
        if device_id == "default":
            return None
        try:
            return int(device_id)
        except ValueError:
            return device_id

    def open(self, device_id: Optional[str] = None) -> AudioStream:
        """Open an input device at its native rate.

        Raises:
            DeviceUnavailable: the device does not exist, has no inputs or
                refuses to open.
        """
        device_id = device_id or self.config.device
        device = self._resolve_device(device_id)

        try:
            info = sd.query_devices(device, "input")
        except (ValueError, sd.PortAudioError) as e:
            raise DeviceUnavailable(
                f"Input device not available: {device_id} ({e})",
                device=device_id,
            ) from e

        max_channels = int(info["max_input_channels"])
        if max_channels < 1:
            raise DeviceUnavailable(f"Device has no input channels: {device_id}", device=device_id)

        sample_rate = int(self.config.capture_sample_rate or info["default_samplerate"])
        channels = max(1, min(self.config.channels, max_channels))
        blocksize = int(sample_rate * self.config.block_duration_ms / 1000)

        stream = AudioStream(
            device_id=device_id,
            device=device,
            sample_rate=sample_rate,
            channels=channels,
            blocksize=blocksize,
            queue_max_frames=self.config.queue_max_frames,
            stall_timeout_s=self.config.stall_timeout_s,
        )
        stream._start()
        return stream

    @staticmethod
    def list_devices() -> list[dict]:
        """List available audio input devices."""
        devices = []
        for i, device in enumerate(sd.query_devices()):
            if device["max_input_channels"] > 0:
                devices.append({
                    "id": i,
                    "name": device["name"],
                    "channels": device["max_input_channels"],
                    "sample_rate": device["default_samplerate"],
                })
        return devices
