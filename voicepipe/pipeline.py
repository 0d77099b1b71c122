"""Capture thread: device frames -> resampler -> VAD windows -> session."""

import logging
import threading
from typing import Optional

from .audio.capture import AudioCapture, AudioStream
from .audio.resampler import Resampler
from .audio.segment import WindowAccumulator
from .config import Config
from .errors import CaptureError, UnsupportedFormat, VoicePipeError

logger = logging.getLogger(__name__)


class CapturePipeline:
    """Runs one capture stream on a dedicated thread.

    Everything on this thread is bounded work per window (resampling, one
    VAD score, a state update); inference never happens here. Windows go to
    the attached sink via sink.process_window(samples, probability,
    timestamp); a failing stream ends with sink.handle_capture_error(error).
    """

    def __init__(self, config: Config, capture: AudioCapture, scorer):
        self.config = config
        self.capture = capture
        self.scorer = scorer

        self._sink = None
        self._lock = threading.Lock()
        self._stream: Optional[AudioStream] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.windows_processed = 0

    def attach(self, sink) -> None:
        """Set the consumer of VAD windows and capture errors."""
        self._sink = sink

    def start(self, device_id: Optional[str] = None) -> None:
        """Open the device and start the capture thread (no-op if running).

        Raises:
            DeviceUnavailable: the device could not be opened.
        """
        with self._lock:
            if self._stream is not None:
                return
            previous = self._thread

        # A stopped stream's thread may still be unwinding
        if previous is not None and previous is not threading.current_thread():
            previous.join(timeout=2.0)

        with self._lock:
            if self._stream is not None:
                return

            stream = self.capture.open(device_id)
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stream, stop_event),
                daemon=True,
                name="audio-capture",
            )
            self._stream = stream
            self._stop_event = stop_event
            self._thread = thread
            thread.start()

        logger.info("Capture pipeline started")

    def stop(self) -> None:
        """Close the stream and let the capture thread exit."""
        with self._lock:
            stream, thread = self._stream, self._thread
            if stream is None:
                return
            self._stream = None
            self._stop_event.set()

        stream.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)
            if thread.is_alive():
                logger.warning("Capture thread did not stop cleanly")
        logger.info("Capture pipeline stopped")

    def is_running(self) -> bool:
        """Check if a stream is open."""
        with self._lock:
            return self._stream is not None

    def _run(self, stream: AudioStream, stop_event: threading.Event) -> None:
        target_rate = self.config.audio.target_sample_rate
        resampler = Resampler(target_rate)
        windows = WindowAccumulator(self.config.vad.window_samples, target_rate)
        self.scorer.reset()

        error: Optional[VoicePipeError] = None
        try:
            for frame in stream:
                if stop_event.is_set():
                    break
                for mono in resampler.process(frame):
                    for samples, timestamp in windows.push(mono):
                        probability = self.scorer.score(samples)
                        self.windows_processed += 1
                        self._sink.process_window(samples, probability, timestamp)
        except (CaptureError, UnsupportedFormat) as e:
            error = e
        except Exception as e:
            logger.error(f"Capture pipeline error: {e}", exc_info=True)
            error = VoicePipeError(f"Capture pipeline error: {e}")
        finally:
            stream.close()

        if error is None or stop_event.is_set():
            return

        with self._lock:
            if self._stream is stream:
                self._stream = None
        self._sink.handle_capture_error(error)
