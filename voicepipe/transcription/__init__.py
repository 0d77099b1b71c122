"""Transcription: inference engines, model lifecycle and the job orchestrator."""

from .engine import InferenceEngine, ParakeetEngine, WhisperEngine, create_engine
from .model import ModelManager
from .orchestrator import JobState, TranscriptionJob, TranscriptionOrchestrator, TranscriptionResult

__all__ = [
    "InferenceEngine",
    "ParakeetEngine",
    "WhisperEngine",
    "create_engine",
    "ModelManager",
    "JobState",
    "TranscriptionJob",
    "TranscriptionOrchestrator",
    "TranscriptionResult",
]
