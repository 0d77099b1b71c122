"""voicepipe - live microphone to text with VAD-gated segmentation."""

__version__ = "0.1.0"
