"""Pipeline events and the in-process event bus that delivers them."""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from .session import SessionState, TriggerMode
    from .transcription.orchestrator import TranscriptionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionStateChanged:
    """Recording session moved between states."""
    session_id: str
    previous: "SessionState"
    current: "SessionState"
    mode: "TriggerMode"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class SegmentBoundary:
    """Debounced speech edge (diagnostic)."""
    kind: str  # "start" | "end"
    window_index: int
    stream_time: float  # monotonic seconds of the triggering window
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TranscriptionCompleted:
    job_id: str
    result: "TranscriptionResult"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TranscriptionCancelled:
    job_id: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TranscriptionFailed:
    job_id: str
    reason: str  # "engine_failure" | "timeout" | "model_not_loaded"
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class TranscriptPartial:
    """Text of one streamed chunk of a recording that is still open.

    Not a job outcome: the recording's job still ends with its own terminal
    event.
    """
    session_id: str
    text: str
    accumulated_text: str
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class CaptureFailed:
    """Capture stopped because of a device or pipeline error."""
    reason: str  # "device_lost" | "device_unavailable" | "unsupported_format" | "pipeline_error"
    message: str
    device: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class ModelStateChanged:
    event_type: str  # loading_started | loading_completed | loading_failed | unloaded
    model_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


_STOP = object()


class EventBus:
    """Fan-out of events to subscribers on one dispatcher thread.

    emit() only enqueues, so a slow subscriber never blocks the capture or
    inference threads. All subscribers see events in the single global order
    in which they were emitted.
    """

    def __init__(self):
        self._subscribers: list[Callable[[object], None]] = []
        self._lock = threading.Lock()

        self._cond = threading.Condition()
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._emitted = 0
        self._delivered = 0

    def subscribe(self, callback: Callable[[object], None]) -> None:
        """Register a callback that receives every event."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[object], None]) -> None:
        """Unregister a callback."""
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: object) -> None:
        """Queue an event for delivery to all subscribers."""
        with self._cond:
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._dispatch_loop,
                    args=(self._queue,),
                    daemon=True,
                    name="event-dispatcher",
                )
                self._thread.start()
            self._emitted += 1
            self._queue.put(event)

    def _dispatch_loop(self, events: queue.Queue) -> None:
        while True:
            event = events.get()
            if event is _STOP:
                break
            self._deliver(event)
            with self._cond:
                self._delivered += 1
                self._cond.notify_all()

    def _deliver(self, event: object) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber error ({type(event).__name__}): {e}")

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until every event emitted so far has been delivered."""
        with self._cond:
            if threading.current_thread() is self._thread:
                return True
            target = self._emitted
            return self._cond.wait_for(lambda: self._delivered >= target, timeout=timeout)

    def close(self, timeout: float = 2.0) -> None:
        """Deliver pending events and stop the dispatcher.

        A later emit() starts a fresh dispatcher.
        """
        with self._cond:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
            self._queue = queue.Queue()
            self._thread = None

        if thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Event dispatcher did not stop cleanly")
