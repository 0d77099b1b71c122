"""Serialized transcription of finished segments on a worker thread."""

import itertools
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import numpy as np

from ..audio.segment import Segment
from ..config import TranscriptionConfig
from ..errors import InferenceTimeout, ModelNotLoaded
from ..events import (
    EventBus,
    TranscriptionCancelled,
    TranscriptionCompleted,
    TranscriptionFailed,
    TranscriptPartial,
)
from .model import ModelManager
from .words import apply_custom_words, clean_transcript

logger = logging.getLogger(__name__)


class JobState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.CANCELLED, JobState.FAILED)


@dataclass
class TranscriptionJob:
    """A segment waiting for, or going through, inference.

    With session_id set the job's text is the session's streamed chunks.
    Chunk jobs (partial=True) carry an open recording's audio and have no
    terminal event of their own.
    """
    job_id: str
    segment: Optional[Segment] = None
    session_id: Optional[str] = None
    partial: bool = False
    samples: Optional[np.ndarray] = None
    submitted_at: datetime = field(default_factory=datetime.now)
    state: JobState = JobState.QUEUED
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True)
class TranscriptionResult:
    """Final text for one job."""
    text: str
    job_id: str
    model_id: str
    duration_s: float
    timestamp: datetime = field(default_factory=datetime.now)


class TranscriptionOrchestrator:
    """FIFO job queue drained by a single inference worker.

    Every submitted job ends with exactly one terminal event, and terminal
    events go out in submission order because only the worker emits them.
    Cancelling a queued job marks it CANCELLED at once; the worker skips the
    engine for it and emits the event when it reaches the job. Cancelling a
    running job is advisory: the engine may finish anyway and its text is
    discarded. With max_inference_s set, an overrunning call is abandoned on
    its own thread and the job fails with reason "timeout". The clock starts
    once the model is in memory.

    Chunks of a recording that is still open go through the same queue.
    Each one emits a TranscriptPartial and grows the session's accumulated
    text, which the recording's own job then takes as its result.
    """

    def __init__(self, model_manager: ModelManager, config: TranscriptionConfig, event_bus: EventBus):
        self.model_manager = model_manager
        self.config = config
        self.event_bus = event_bus

        self._cond = threading.Condition()
        self._queue: deque[TranscriptionJob] = deque()
        self._jobs: dict[str, TranscriptionJob] = {}
        self._active_job_id: Optional[str] = None
        self._recent_results: deque[TranscriptionResult] = deque(maxlen=config.recent_results)
        self._ids = itertools.count(1)
        self._chunk_ids = itertools.count(1)

        self._running = False
        self._thread: Optional[threading.Thread] = None

    # ==================== Lifecycle ====================

    def start(self) -> None:
        """Start the inference worker."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        self._running = True
        self.model_manager.start()
        if self.config.preload:
            self.model_manager.initiate_load()

        self._thread = threading.Thread(target=self._worker_loop, daemon=True, name="transcription-worker")
        self._thread.start()
        logger.info("Transcription orchestrator started")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker; queued jobs end as cancelled."""
        if not self._running:
            return

        logger.info("Stopping transcription orchestrator")
        with self._cond:
            self._running = False
            for job in self._queue:
                self._mark_cancelled(job)
            self._cond.notify_all()

        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Transcription worker did not stop cleanly")
            self._thread = None

        self.model_manager.shutdown()
        logger.info("Transcription orchestrator stopped")

    def is_running(self) -> bool:
        return self._running

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted job has finished."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._jobs, timeout=timeout)

    def prepare(self, session_id: Optional[str] = None) -> None:
        """Warm the model ahead of a recording.

        With session_id, start collecting streamed chunk text for it.
        """
        if session_id is not None:
            self.model_manager.reset_streaming_accumulation(session_id)
        self.model_manager.initiate_load()

    # ==================== Jobs ====================

    def submit(self, segment: Segment, session_id: Optional[str] = None) -> str:
        """Queue a finished segment for transcription and return its job id.

        With session_id the result is the text streamed for that session
        through submit_chunk(), not a fresh pass over the segment.
        """
        with self._cond:
            job_id = f"job-{next(self._ids)}"
            job = TranscriptionJob(job_id=job_id, segment=segment, session_id=session_id)
            self._jobs[job_id] = job
            self._queue.append(job)
            queued = len(self._queue)
            self._cond.notify_all()

        logger.info(f"Queued {job_id}: {segment.duration_ms}ms of audio ({queued} waiting)")
        return job_id

    def submit_chunk(self, session_id: str, samples: np.ndarray) -> None:
        """Queue a chunk of an open recording for a partial transcript."""
        with self._cond:
            job = TranscriptionJob(
                job_id=f"chunk-{next(self._chunk_ids)}",
                session_id=session_id,
                partial=True,
                samples=samples,
            )
            self._queue.append(job)
            self._cond.notify_all()

        logger.debug(f"Queued {job.job_id} for session {session_id[:8]}: {len(samples)} samples")

    def discard_stream(self, session_id: str) -> None:
        """Forget a session that ended without a job: drop its chunks and text."""
        with self._cond:
            self._cancel_chunks_locked(session_id)
        self.model_manager.discard_streaming(session_id)

    @staticmethod
    def _mark_cancelled(job: TranscriptionJob) -> None:
        job.cancel_event.set()
        if job.state is JobState.QUEUED:
            job.state = JobState.CANCELLED

    def _cancel_chunks_locked(self, session_id: Optional[str]) -> None:
        for job in self._queue:
            if job.partial and (session_id is None or job.session_id == session_id):
                self._mark_cancelled(job)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or running job. Returns False if unknown or finished."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state.is_terminal or job.cancel_requested:
                return False
            self._mark_cancelled(job)
            if job.session_id is not None:
                self._cancel_chunks_locked(job.session_id)
            state = job.state

        if state is JobState.RUNNING:
            logger.info(f"Cancellation requested for running {job_id}; its result will be discarded")
        else:
            logger.info(f"Cancelled queued {job_id}")
        return True

    def cancel_all(self) -> list[str]:
        """Cancel every job that has not finished, and every queued chunk."""
        with self._cond:
            cancelled = []
            for job in self._jobs.values():
                if not job.state.is_terminal and not job.cancel_requested:
                    self._mark_cancelled(job)
                    cancelled.append(job.job_id)
            self._cancel_chunks_locked(None)
        self.model_manager.reset_streaming_accumulation()

        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} transcription job(s)")
        return cancelled

    def get_job(self, job_id: str) -> Optional[TranscriptionJob]:
        """Look up a job that has not yet finished."""
        with self._cond:
            return self._jobs.get(job_id)

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._jobs)

    @property
    def active_job_id(self) -> Optional[str]:
        with self._cond:
            return self._active_job_id

    def get_recent_results(self, clear: bool = False) -> list[TranscriptionResult]:
        """Get recent results, optionally clearing the buffer."""
        with self._cond:
            results = list(self._recent_results)
            if clear:
                self._recent_results.clear()
        return results

    # ==================== Worker ====================

    def _worker_loop(self) -> None:
        """Run jobs one at a time in submission order."""
        while True:
            with self._cond:
                while self._running and not self._queue:
                    self._cond.wait()
                if not self._queue:
                    break

                job = self._queue.popleft()
                if not self._running:
                    self._mark_cancelled(job)
                if job.state is JobState.QUEUED:
                    job.state = JobState.RUNNING
                    if not job.partial:
                        self._active_job_id = job.job_id

            if job.partial:
                if job.state is JobState.RUNNING:
                    self._run_chunk(job)
                continue

            if job.state is JobState.CANCELLED:
                self._finish(job, JobState.CANCELLED, TranscriptionCancelled(job.job_id))
                continue

            self._run_job(job)

    def _run_chunk(self, job: TranscriptionJob) -> None:
        try:
            self.model_manager.ensure_loaded()
            text = self._call_timed(
                job, lambda: self.model_manager.transcribe(job.samples, job.cancel_event)
            )
        except Exception as e:
            job.cancel_event.set()
            logger.warning(f"Partial transcription of {job.job_id} failed: {e}")
            return

        text = clean_transcript(text)
        if self.config.custom_words:
            text = apply_custom_words(text, self.config.custom_words, self.config.word_correction_threshold)

        accumulated = self.model_manager.append_streaming_text(job.session_id, text)
        if accumulated is None:
            logger.debug(f"Dropping {job.job_id}: session {job.session_id[:8]} is no longer streaming")
            return
        if text:
            self.event_bus.emit(TranscriptPartial(job.session_id, text, accumulated))

    def _run_job(self, job: TranscriptionJob) -> None:
        start = time.monotonic()
        try:
            text = self._invoke_engine(job)
        except InferenceTimeout as e:
            job.cancel_event.set()
            logger.error(f"{job.job_id} timed out: {e}")
            self._finish(job, JobState.FAILED, TranscriptionFailed(job.job_id, "timeout", str(e)))
            return
        except ModelNotLoaded as e:
            logger.error(f"{job.job_id} failed, model not loaded: {e}")
            self._finish(job, JobState.FAILED, TranscriptionFailed(job.job_id, "model_not_loaded", str(e)))
            return
        except Exception as e:
            logger.error(f"{job.job_id} transcription error: {e}")
            self._finish(job, JobState.FAILED, TranscriptionFailed(job.job_id, "engine_failure", str(e)))
            return

        elapsed = time.monotonic() - start

        if job.cancel_requested:
            logger.info(f"Discarding result of cancelled {job.job_id}")
            self._finish(job, JobState.CANCELLED, TranscriptionCancelled(job.job_id))
            return

        text = clean_transcript(text)
        if self.config.custom_words:
            text = apply_custom_words(text, self.config.custom_words, self.config.word_correction_threshold)

        result = TranscriptionResult(
            text=text,
            job_id=job.job_id,
            model_id=self.model_manager.current_model or self.config.model,
            duration_s=elapsed,
        )
        logger.info(f"Transcribed {job.job_id} in {elapsed * 1000:.0f}ms: '{text[:50]}'")
        self._finish(job, JobState.COMPLETED, TranscriptionCompleted(job.job_id, result), result)

    def _invoke_engine(self, job: TranscriptionJob) -> str:
        if job.session_id is not None:
            return self._call_timed(
                job, lambda: self.model_manager.finalize_transcription(job.session_id, job.cancel_event)
            )

        # Loading is not inference: only the engine call is timed
        self.model_manager.ensure_loaded()
        samples = job.segment.samples
        return self._call_timed(job, lambda: self.model_manager.transcribe(samples, job.cancel_event))

    def _call_timed(self, job: TranscriptionJob, fn: Callable[[], str]) -> str:
        timeout = self.config.max_inference_s
        if not timeout:
            return fn()

        future: Future = Future()

        def call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn())
            except Exception as e:
                future.set_exception(e)

        thread = threading.Thread(target=call, daemon=True, name=f"inference-{job.job_id}")
        thread.start()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            # The engine call cannot be interrupted; it finishes in the
            # background and its output is dropped with the future.
            raise InferenceTimeout(f"Inference exceeded {timeout:.1f}s") from None

    def _finish(
        self,
        job: TranscriptionJob,
        state: JobState,
        event: object,
        result: Optional[TranscriptionResult] = None,
    ) -> None:
        with self._cond:
            job.state = state
            if self._active_job_id == job.job_id:
                self._active_job_id = None
            if result is not None:
                self._recent_results.append(result)

        self.event_bus.emit(event)

        # wait_idle() returns only once the terminal event is queued
        with self._cond:
            self._jobs.pop(job.job_id, None)
            self._cond.notify_all()
