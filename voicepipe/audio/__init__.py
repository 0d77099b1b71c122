"""Audio pipeline components: capture, resampling and voice activity detection."""

from .capture import AudioCapture, AudioFrame, AudioStream
from .resampler import Resampler
from .segment import Segment, SegmentBuilder, WindowAccumulator
from .vad import SileroVadScorer, SmoothedVAD, VadDecision

__all__ = [
    "AudioCapture",
    "AudioFrame",
    "AudioStream",
    "Resampler",
    "Segment",
    "SegmentBuilder",
    "WindowAccumulator",
    "SileroVadScorer",
    "SmoothedVAD",
    "VadDecision",
]
