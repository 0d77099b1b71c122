"""Recording session state machine: triggers, segment ownership and handoff."""

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np

from .audio.segment import Segment, SegmentBuilder
from .audio.vad import SmoothedVAD
from .config import Config
from .errors import CaptureError, DeviceLost, DeviceUnavailable, SessionBusy, UnsupportedFormat
from .events import CaptureFailed, EventBus, SegmentBoundary, SessionStateChanged

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    FINALIZING = "finalizing"


class TriggerMode(Enum):
    MANUAL = "manual"
    AUTO = "auto"

    @classmethod
    def parse(cls, value) -> "TriggerMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown trigger mode '{value}', expected 'manual' or 'auto'") from None


@dataclass
class RecordingSession:
    """Descriptor of the one active recording."""
    session_id: str
    mode: TriggerMode
    device_id: str
    started_at: datetime
    state: SessionState = SessionState.ARMED


class SessionController:
    """Owns the current RecordingSession and the segment it is building.

    Manual mode records between start_recording() and stop_recording(); the
    raw VAD scores only trim leading and trailing silence. Auto mode arms on
    start_recording() and lets SmoothedVAD open and close the segment. A
    finished segment is handed to the orchestrator and the session returns
    to IDLE. All state lives under one lock; events are emitted after it is
    released and the orchestrator is never called while holding it.

    With transcription.partial_chunk_ms set, every chunk of that length
    added to the open segment is handed to the orchestrator for a partial
    transcript while recording continues.
    """

    def __init__(self, config: Config, pipeline, orchestrator, event_bus: EventBus):
        self.config = config
        self.pipeline = pipeline
        self.orchestrator = orchestrator
        self.event_bus = event_bus

        self.sample_rate = config.audio.target_sample_rate
        self._lock = threading.Lock()
        self._session: Optional[RecordingSession] = None
        self._vad = SmoothedVAD(config.vad, self.sample_rate)
        self._builder: Optional[SegmentBuilder] = None

        chunk_ms = config.transcription.partial_chunk_ms
        self._chunk_samples = int(self.sample_rate * chunk_ms / 1000) if chunk_ms else 0
        self._streamed_samples = 0

    # ==================== Queries ====================

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._session.state if self._session is not None else SessionState.IDLE

    @property
    def current_session(self) -> Optional[RecordingSession]:
        """Snapshot of the active session, if any."""
        with self._lock:
            return replace(self._session) if self._session is not None else None

    # ==================== Internal transitions ====================

    def _set_state_locked(self, new_state: SessionState) -> SessionStateChanged:
        session = self._session
        previous = session.state
        session.state = new_state
        logger.info(f"Session {session.session_id[:8]}: {previous.value} -> {new_state.value}")
        return SessionStateChanged(session.session_id, previous, new_state, session.mode)

    def _end_session_locked(self) -> SessionStateChanged:
        session = self._session
        self._session = None
        self._builder = None
        self._streamed_samples = 0
        self._vad.reset()
        logger.info(f"Session {session.session_id[:8]}: {session.state.value} -> idle")
        return SessionStateChanged(session.session_id, session.state, SessionState.IDLE, session.mode)

    def _emit(self, events: list) -> None:
        for event in events:
            self.event_bus.emit(event)

    def _release_capture(self) -> None:
        if not self.config.audio.always_on_microphone:
            self.pipeline.stop()

    def _discard_stream(self, session: Optional[RecordingSession]) -> None:
        if self._chunk_samples and session is not None:
            self.orchestrator.discard_stream(session.session_id)

    # ==================== Triggers ====================

    def start_recording(self, mode=None, device_id: Optional[str] = None) -> RecordingSession:
        """Begin a recording cycle.

        Raises:
            SessionBusy: another session is not yet IDLE.
            DeviceUnavailable: the input device could not be opened.
        """
        mode = TriggerMode.parse(mode or self.config.session.trigger_mode)

        with self._lock:
            if self._session is not None:
                raise SessionBusy(
                    f"Session {self._session.session_id[:8]} is {self._session.state.value}"
                )
            session = RecordingSession(
                session_id=uuid.uuid4().hex,
                mode=mode,
                device_id=device_id or self.config.audio.device,
                started_at=datetime.now(),
            )
            self._session = session
            self._builder = None
            self._streamed_samples = 0
            self._vad.reset()

        logger.info(f"Session {session.session_id[:8]}: idle -> armed ({mode.value})")
        self.event_bus.emit(SessionStateChanged(session.session_id, SessionState.IDLE, SessionState.ARMED, mode))
        self.orchestrator.prepare(session.session_id if self._chunk_samples else None)

        try:
            self.pipeline.start(session.device_id)
        except CaptureError as e:
            with self._lock:
                events = [self._end_session_locked()] if self._session is session else []
            events.append(CaptureFailed(
                reason="device_unavailable",
                message=str(e),
                device=session.device_id,
                session_id=session.session_id,
            ))
            self._emit(events)
            self._discard_stream(session)
            raise

        if mode is TriggerMode.MANUAL:
            with self._lock:
                events = []
                if self._session is session and session.state is SessionState.ARMED:
                    self._builder = SegmentBuilder(self.sample_rate)
                    events.append(self._set_state_locked(SessionState.RECORDING))
            self._emit(events)

        return replace(session)

    def stop_recording(self) -> Optional[str]:
        """End the current recording; returns the job id if a segment was submitted."""
        with self._lock:
            session = self._session
            if session is None:
                logger.warning("No recording in progress")
                return None
            if session.state is SessionState.FINALIZING:
                return None

            if session.state is SessionState.ARMED:
                events = [self._end_session_locked()]
                segment = tail = None
                finalize = False
            else:
                segment, tail = self._take_segment_locked(session)
                events = [self._set_state_locked(SessionState.FINALIZING)]
                finalize = True

        self._emit(events)
        if not finalize:
            self._release_capture()
            self._discard_stream(session)
            return None
        return self._finalize(session, segment, tail)

    def _take_segment_locked(self, session: RecordingSession) -> tuple[Optional[Segment], Optional[np.ndarray]]:
        """Close the open segment; also returns the audio not yet streamed."""
        if session.mode is TriggerMode.AUTO:
            segment = self._vad.flush()
            return segment, self._tail_locked(segment)

        builder, self._builder = self._builder, None
        if builder is None:
            return None, None
        tail = builder.samples_from(self._streamed_samples) if self._chunk_samples else None
        if self.config.session.trim_silence:
            segment = builder.build(
                trim_threshold=self.config.vad.speech_threshold,
                padding_windows=self.config.session.trim_padding_windows,
            )
        else:
            segment = builder.build()
        return segment, tail

    def _tail_locked(self, segment: Optional[Segment]) -> Optional[np.ndarray]:
        if not self._chunk_samples or segment is None:
            return None
        return segment.samples[self._streamed_samples:].copy()

    def _take_chunk_locked(self, builder: Optional[SegmentBuilder]) -> Optional[np.ndarray]:
        if not self._chunk_samples or builder is None:
            return None
        if builder.num_samples - self._streamed_samples < self._chunk_samples:
            return None
        chunk = builder.samples_from(self._streamed_samples)
        self._streamed_samples = builder.num_samples
        return chunk

    def toggle_recording(self, mode=None) -> Optional[str]:
        """Start when idle, otherwise stop."""
        if self.state is SessionState.IDLE:
            self.start_recording(mode)
            return None
        return self.stop_recording()

    def cancel_active(self) -> list[str]:
        """Abort the recording and every pending transcription."""
        with self._lock:
            session = self._session
            events = [self._end_session_locked()] if session is not None else []

        self._emit(events)
        if session is not None:
            logger.info(f"Session {session.session_id[:8]} cancelled")
            self._release_capture()
        return self.orchestrator.cancel_all()

    # ==================== Capture thread ====================

    def process_window(self, samples: np.ndarray, probability: float, timestamp: float) -> None:
        """Consume one scored window from the capture thread."""
        events = []
        finished: Optional[Segment] = None
        tail: Optional[np.ndarray] = None
        chunk: Optional[np.ndarray] = None

        with self._lock:
            session = self._session
            if session is None:
                return

            if session.mode is TriggerMode.MANUAL:
                if session.state is SessionState.RECORDING and self._builder is not None:
                    self._builder.append(samples, timestamp, probability)
                    chunk = self._take_chunk_locked(self._builder)
            elif session.state in (SessionState.ARMED, SessionState.RECORDING):
                decision = self._vad.update(samples, probability, timestamp)
                if decision.boundary == "start":
                    events.append(SegmentBoundary("start", decision.window_index, timestamp, session.session_id))
                    if session.state is SessionState.ARMED:
                        events.append(self._set_state_locked(SessionState.RECORDING))
                elif decision.boundary == "end":
                    events.append(SegmentBoundary("end", decision.window_index, timestamp, session.session_id))
                    events.append(self._set_state_locked(SessionState.FINALIZING))
                    finished = decision.segment
                    tail = self._tail_locked(finished)
                chunk = self._take_chunk_locked(self._vad.open_builder)

        self._emit(events)
        if chunk is not None:
            self.orchestrator.submit_chunk(session.session_id, chunk)
        if finished is not None:
            self._finalize(session, finished, tail)

    def handle_capture_error(self, error: Exception) -> None:
        """Force IDLE after a device or pipeline failure and report it once."""
        with self._lock:
            session = self._session
            events = [self._end_session_locked()] if session is not None else []

        if isinstance(error, DeviceLost):
            reason = "device_lost"
        elif isinstance(error, DeviceUnavailable):
            reason = "device_unavailable"
        elif isinstance(error, UnsupportedFormat):
            reason = "unsupported_format"
        else:
            reason = "pipeline_error"

        logger.error(f"Capture failed ({reason}): {error}")
        events.append(CaptureFailed(
            reason=reason,
            message=str(error),
            device=getattr(error, "device", None),
            session_id=session.session_id if session is not None else None,
        ))
        self._emit(events)
        self._discard_stream(session)

    # ==================== Handoff ====================

    def _finalize(
        self,
        session: RecordingSession,
        segment: Optional[Segment],
        tail: Optional[np.ndarray] = None,
    ) -> Optional[str]:
        """Submit the segment (or drop it) and return to IDLE.

        When chunks are streamed, the unstreamed tail goes out as the last
        chunk and the job takes the session's accumulated text.
        """
        min_ms = self.config.session.min_segment_ms
        job_id = None

        with self._lock:
            still_active = self._session is session

        if not still_active:
            segment = None
        elif segment is None or segment.duration_ms < min_ms:
            duration = segment.duration_ms if segment is not None else 0
            logger.info(f"Dropping segment of {duration}ms (minimum {min_ms}ms)")
        elif self._chunk_samples:
            if tail is not None and len(tail):
                self.orchestrator.submit_chunk(session.session_id, tail)
            job_id = self.orchestrator.submit(segment, session_id=session.session_id)
        else:
            job_id = self.orchestrator.submit(segment)

        with self._lock:
            events = [self._end_session_locked()] if self._session is session else []

        self._emit(events)
        self._release_capture()
        if job_id is None:
            self._discard_stream(session)
        return job_id

    def get_status(self) -> dict:
        with self._lock:
            session = self._session
            if session is not None and session.mode is TriggerMode.AUTO:
                open_ms = self._vad.open_segment_ms
            else:
                open_ms = self._builder.duration_ms if self._builder is not None else 0
            return {
                "state": session.state.value if session else SessionState.IDLE.value,
                "session_id": session.session_id if session else None,
                "mode": session.mode.value if session else None,
                "device": session.device_id if session else None,
                "is_speaking": self._vad.is_speaking,
                "open_segment_ms": open_ms,
            }
