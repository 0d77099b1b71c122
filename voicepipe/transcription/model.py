"""Model lifecycle: on-demand loading, idle unloading and serialized inference."""

import logging
import threading
import time
from typing import Optional

import numpy as np

from ..config import TranscriptionConfig
from ..errors import ModelNotLoaded
from ..events import EventBus, ModelStateChanged
from .engine import InferenceEngine
from .words import apply_custom_words, clean_transcript

logger = logging.getLogger(__name__)

# 160ms of silence at 16kHz, fed three times to flush a streaming engine
FLUSH_CHUNK_SAMPLES = 2560
FLUSH_CHUNKS = 3


class ModelManager:
    """Owns the inference engine and the only lock around it."""

    def __init__(self, engine: InferenceEngine, config: TranscriptionConfig, event_bus: EventBus):
        self.engine = engine
        self.config = config
        self.event_bus = event_bus

        self._engine_lock = threading.Lock()
        self._loading = False
        self._loading_cond = threading.Condition()
        self._current_model: Optional[str] = None
        self._last_activity = time.monotonic()

        self._shutdown = threading.Event()
        self._watcher: Optional[threading.Thread] = None

        self._stream_lock = threading.Lock()
        self._streams: dict[str, str] = {}
        self._stream_session: Optional[str] = None

    @property
    def is_loaded(self) -> bool:
        return self.engine.is_loaded

    @property
    def current_model(self) -> Optional[str]:
        return self._current_model

    @property
    def is_loading(self) -> bool:
        with self._loading_cond:
            return self._loading

    def _touch(self) -> None:
        self._last_activity = time.monotonic()

    def _load_locked(self, model_id: str) -> list:
        """Load with the engine lock held; returns events to emit afterwards."""
        events = [ModelStateChanged("loading_started", model_id=model_id)]
        start = time.monotonic()
        try:
            self.engine.load(model_id)
        except Exception as e:
            logger.error(f"Failed to load model {model_id}: {e}")
            events.append(ModelStateChanged("loading_failed", model_id=model_id, error=str(e)))
            return events

        self._current_model = model_id
        self._touch()
        logger.info(f"Loaded transcription model {model_id} ({(time.monotonic() - start) * 1000:.0f}ms)")
        events.append(ModelStateChanged("loading_completed", model_id=model_id))
        return events

    def _emit_all(self, events: list) -> None:
        for event in events:
            self.event_bus.emit(event)

    def load_model(self, model_id: Optional[str] = None) -> None:
        """Load a model synchronously.

        Raises:
            ModelNotLoaded: the engine failed to load the model.
        """
        model_id = model_id or self.config.model
        with self._engine_lock:
            events = self._load_locked(model_id)
        self._emit_all(events)

        if events[-1].event_type == "loading_failed":
            raise ModelNotLoaded(f"Failed to load model {model_id}: {events[-1].error}")

    def unload_model(self) -> None:
        """Unload the current model, if any."""
        with self._engine_lock:
            unloaded = self._unload_locked()
        if unloaded:
            self.event_bus.emit(ModelStateChanged("unloaded"))

    def _unload_locked(self) -> bool:
        if not self.engine.is_loaded:
            return False
        self.engine.unload()
        logger.info(f"Unloaded transcription model {self._current_model}")
        self._current_model = None
        return True

    def initiate_load(self) -> None:
        """Start loading the configured model in the background if needed."""
        with self._loading_cond:
            if self._loading or self.engine.is_loaded:
                return
            self._loading = True

        thread = threading.Thread(target=self._background_load, daemon=True, name="model-loader")
        thread.start()

    def _background_load(self) -> None:
        try:
            self.load_model()
        except ModelNotLoaded as e:
            logger.error(f"Background model load failed: {e}")
        finally:
            with self._loading_cond:
                self._loading = False
                self._loading_cond.notify_all()

    def _wait_for_background_load(self) -> None:
        with self._loading_cond:
            while self._loading:
                self._loading_cond.wait()

    def ensure_loaded(self) -> None:
        """Wait for any background load, then load the configured model if needed.

        Returns at once when the model is already in memory, without taking
        the engine lock.

        Raises:
            ModelNotLoaded: the engine failed to load the model.
        """
        self._touch()
        self._wait_for_background_load()
        if self.engine.is_loaded:
            return

        events = []
        with self._engine_lock:
            if not self.engine.is_loaded:
                events = self._load_locked(self.config.model)
            loaded = self.engine.is_loaded
        self._emit_all(events)

        if not loaded:
            raise ModelNotLoaded(f"Model {self.config.model} is not loaded")

    def transcribe(self, audio: np.ndarray, cancel_event: Optional[threading.Event] = None) -> str:
        """Run one blocking inference call, loading the model first if needed."""
        self._touch()
        self._wait_for_background_load()

        events = []
        with self._engine_lock:
            if not self.engine.is_loaded:
                events = self._load_locked(self.config.model)
            if self.engine.is_loaded:
                text = self.engine.transcribe(audio, cancel_event)
            else:
                text = None
            self._touch()
        self._emit_all(events)

        if text is None:
            raise ModelNotLoaded(f"Model {self.config.model} is not loaded")

        if self.config.model_unload_timeout_s == 0:
            logger.debug("Unloading model immediately after transcription")
            self.unload_model()

        return text

    # ==================== Streaming ====================

    def reset_streaming_accumulation(self, session_id: Optional[str] = None) -> None:
        """Start collecting chunk text for session_id; without one, drop all."""
        with self._stream_lock:
            if session_id is None:
                self._streams.clear()
            else:
                self._streams[session_id] = ""
            self._stream_session = session_id

    def discard_streaming(self, session_id: str) -> None:
        with self._stream_lock:
            self._streams.pop(session_id, None)

    def get_accumulated_text(self, session_id: Optional[str] = None) -> str:
        """Text streamed so far for session_id, or for the latest session."""
        with self._stream_lock:
            return self._streams.get(session_id or self._stream_session, "")

    def append_streaming_text(self, session_id: str, text: str) -> Optional[str]:
        """Append one chunk's text; returns the accumulated text.

        Returns None when session_id is not collecting.
        """
        with self._stream_lock:
            if session_id not in self._streams:
                return None
            if text:
                current = self._streams[session_id]
                self._streams[session_id] = f"{current} {text}" if current else text
            return self._streams[session_id]

    def finalize_transcription(self, session_id: str, cancel_event: Optional[threading.Event] = None) -> str:
        """Take the session's accumulated text, or flush the engine with silence.

        The accumulation is cleared either way.
        """
        with self._stream_lock:
            text = self._streams.pop(session_id, "")

        if text:
            logger.debug(f"Finalized streamed transcript ({len(text)} chars)")
            return text

        logger.debug("No streamed text, flushing engine with silence")
        silence = np.zeros(FLUSH_CHUNK_SAMPLES, dtype=np.float32)
        parts = []
        for _ in range(FLUSH_CHUNKS):
            part = clean_transcript(self.transcribe(silence, cancel_event))
            if part:
                parts.append(part)
        text = " ".join(parts)
        if self.config.custom_words:
            text = apply_custom_words(text, self.config.custom_words, self.config.word_correction_threshold)
        return text.strip()

    def start(self) -> None:
        """Start the idle watcher when a positive unload timeout is configured."""
        timeout = self.config.model_unload_timeout_s
        if timeout is None or timeout <= 0 or self._watcher is not None:
            return

        self._shutdown.clear()
        self._watcher = threading.Thread(target=self._watch_idle, daemon=True, name="model-idle-watcher")
        self._watcher.start()

    def _watch_idle(self) -> None:
        while not self._shutdown.wait(self.config.idle_check_interval_s):
            self.check_idle()
        logger.debug("Idle watcher shutting down")

    def check_idle(self) -> bool:
        """Unload the model if it has been idle past the timeout."""
        timeout = self.config.model_unload_timeout_s
        if timeout is None or timeout <= 0:
            return False
        if time.monotonic() - self._last_activity <= timeout:
            return False

        # Skip this round if an inference call holds the engine
        if not self._engine_lock.acquire(blocking=False):
            return False
        try:
            unloaded = self._unload_locked()
        finally:
            self._engine_lock.release()

        if unloaded:
            logger.info(f"Model unloaded after {timeout:.0f}s of inactivity")
            self.event_bus.emit(ModelStateChanged("unloaded"))
        return unloaded

    def shutdown(self) -> None:
        """Stop the idle watcher."""
        self._shutdown.set()
        if self._watcher is not None:
            self._watcher.join(timeout=2.0)
            self._watcher = None
