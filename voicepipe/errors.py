"""Exception hierarchy for the capture, session and transcription stages."""

from typing import Optional


class VoicePipeError(Exception):
    """Base class for all pipeline errors."""


class CaptureError(VoicePipeError):
    """Audio input device failure."""

    def __init__(self, message: str, device: Optional[str] = None):
        super().__init__(message)
        self.device = device


class DeviceUnavailable(CaptureError):
    """The requested input device could not be opened."""


class DeviceLost(CaptureError):
    """An open input stream stopped without being closed."""


class UnsupportedFormat(VoicePipeError):
    """Sample rate / channel layout the resampler cannot convert."""


class SessionBusy(VoicePipeError):
    """A recording session is already active."""


class EngineFailure(VoicePipeError):
    """The inference engine raised or returned an unusable result."""


class ModelNotLoaded(EngineFailure):
    """No transcription model is loaded and loading failed."""


class InferenceTimeout(VoicePipeError):
    """An inference call ran longer than max_inference_s."""
