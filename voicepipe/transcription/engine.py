"""Speech-to-text inference engines behind a common blocking interface."""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import torch
from faster_whisper import WhisperModel

from ..config import TranscriptionConfig
from ..errors import ModelNotLoaded

logger = logging.getLogger(__name__)


class InferenceEngine(ABC):
    """A loaded acoustic model that turns mono float32 audio into text.

    Engines are not assumed to be reentrant; callers serialize access.
    """

    name = "engine"

    def __init__(self, config: TranscriptionConfig):
        self.config = config

    @abstractmethod
    def load(self, model_id: str) -> None:
        """Load model weights; raises on failure."""

    @abstractmethod
    def unload(self) -> None:
        """Drop the model and free its memory."""

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """Whether a model is ready for transcribe()."""

    @abstractmethod
    def transcribe(self, audio: np.ndarray, cancel_event: Optional[threading.Event] = None) -> str:
        """Transcribe 16kHz mono audio.

        cancel_event is advisory: engines check it where they can stop early
        and return whatever text they have.
        """


class WhisperEngine(InferenceEngine):
    """Whisper models through faster-whisper (CTranslate2)."""

    name = "whisper"

    def __init__(self, config: TranscriptionConfig):
        super().__init__(config)
        self._model: Optional[WhisperModel] = None

    def load(self, model_id: str) -> None:
        logger.info(f"Loading Whisper model: {model_id} on {self.config.device}")
        self._model = WhisperModel(
            model_id,
            device=self.config.device,
            compute_type=self.config.compute_type,
        )
        logger.info("Whisper model loaded")

    def unload(self) -> None:
        self._model = None

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def transcribe(self, audio: np.ndarray, cancel_event: Optional[threading.Event] = None) -> str:
        if self._model is None:
            raise ModelNotLoaded("Whisper model is not loaded")

        segments, _info = self._model.transcribe(
            audio,
            beam_size=self.config.beam_size,
            language=self.config.language,
            vad_filter=False,  # segments are already VAD-gated
        )

        # faster-whisper decodes lazily, so stopping here skips the remaining work
        texts = []
        for seg in segments:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Whisper decoding stopped early on cancellation")
                break
            text = seg.text.strip()
            if text:
                texts.append(text)

        return " ".join(texts)


class ParakeetEngine(InferenceEngine):
    """NVIDIA Parakeet models through NeMo."""

    name = "parakeet"

    def __init__(self, config: TranscriptionConfig):
        super().__init__(config)
        self._model = None

    def load(self, model_id: str) -> None:
        # NeMo is an optional, heavy dependency (the "parakeet" extra)
        import nemo.collections.asr as nemo_asr

        logger.info(f"Loading Parakeet model: {model_id}")
        model = nemo_asr.models.ASRModel.from_pretrained(model_name=model_id)
        model.eval()

        if self.config.device == "cuda" and torch.cuda.is_available():
            model = model.cuda()
            if self.config.compute_type == "float16":
                model = model.half()
            logger.info("Parakeet model loaded on GPU")
        else:
            logger.info("Parakeet model loaded on CPU")

        self._model = model

    def unload(self) -> None:
        self._model = None
        if torch.cuda.is_available():
            torch.cuda.empty_cache()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def transcribe(self, audio: np.ndarray, cancel_event: Optional[threading.Event] = None) -> str:
        if self._model is None:
            raise ModelNotLoaded("Parakeet model is not loaded")

        with torch.inference_mode():
            output = self._model.transcribe([np.asarray(audio, dtype=np.float32)])

        first = output[0]
        if hasattr(first, "text"):
            return first.text
        if isinstance(first, list):
            return " ".join(first)
        return str(first)


ENGINES = {
    WhisperEngine.name: WhisperEngine,
    ParakeetEngine.name: ParakeetEngine,
}


def create_engine(config: TranscriptionConfig) -> InferenceEngine:
    """Instantiate the engine family named in the config (unloaded)."""
    try:
        engine_cls = ENGINES[config.engine.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown transcription engine '{config.engine}', "
            f"expected one of {sorted(ENGINES)}"
        ) from None
    return engine_cls(config)
