"""Tests for model lifecycle management."""

import threading
import time

import numpy as np
import pytest

from conftest import wait_until
from voicepipe.config import TranscriptionConfig
from voicepipe.errors import ModelNotLoaded
from voicepipe.events import ModelStateChanged
from voicepipe.transcription.model import ModelManager


AUDIO = np.zeros(1600, dtype=np.float32)


def _manager(fake_engine, event_bus, **overrides):
    config = TranscriptionConfig(model="fake-model", preload=False, **overrides)
    return ModelManager(fake_engine, config, event_bus)


def _model_events(recorder):
    return [e.event_type for e in recorder.of_type(ModelStateChanged)]


class TestModelManager:
    """Tests for ModelManager class."""

    def test_load_model(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus)

        manager.load_model()

        assert manager.is_loaded
        assert manager.current_model == "fake-model"
        assert _model_events(recorder) == ["loading_started", "loading_completed"]

    def test_load_failure(self, fake_engine, event_bus, recorder):
        fake_engine.load_error = RuntimeError("no weights")
        manager = _manager(fake_engine, event_bus)

        with pytest.raises(ModelNotLoaded):
            manager.load_model()

        assert not manager.is_loaded
        failed = recorder.of_type(ModelStateChanged)[-1]
        assert failed.event_type == "loading_failed"
        assert "no weights" in failed.error

    def test_transcribe_loads_on_demand(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus)

        assert manager.transcribe(AUDIO) == "hello world"

        assert fake_engine.load_calls == ["fake-model"]
        assert fake_engine.calls == [1600]
        assert "loading_completed" in _model_events(recorder)

    def test_transcribe_load_failure(self, fake_engine, event_bus):
        fake_engine.load_error = RuntimeError("no weights")
        manager = _manager(fake_engine, event_bus)

        with pytest.raises(ModelNotLoaded):
            manager.transcribe(AUDIO)
        assert fake_engine.calls == []

    def test_transcribe_engine_error_propagates(self, fake_engine, event_bus):
        fake_engine.error = RuntimeError("cuda oom")
        manager = _manager(fake_engine, event_bus)

        with pytest.raises(RuntimeError):
            manager.transcribe(AUDIO)

        # the lock is released again
        fake_engine.error = None
        assert manager.transcribe(AUDIO) == "hello world"

    def test_unload_immediately(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus, model_unload_timeout_s=0)

        manager.transcribe(AUDIO)

        assert not manager.is_loaded
        assert manager.current_model is None
        assert _model_events(recorder)[-1] == "unloaded"

    def test_never_unload(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.transcribe(AUDIO)
        manager._last_activity -= 3600

        assert not manager.check_idle()
        assert manager.is_loaded

    def test_check_idle_unloads(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus, model_unload_timeout_s=5)
        manager.load_model()

        assert not manager.check_idle()

        manager._last_activity -= 10
        assert manager.check_idle()
        assert not manager.is_loaded
        assert _model_events(recorder)[-1] == "unloaded"

    def test_check_idle_skips_busy_engine(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus, model_unload_timeout_s=5)
        manager.load_model()
        fake_engine.gate = threading.Event()

        worker = threading.Thread(target=manager.transcribe, args=(AUDIO,))
        worker.start()
        assert fake_engine.started.wait(2.0)
        manager._last_activity -= 10

        assert not manager.check_idle()
        assert manager.is_loaded

        fake_engine.gate.set()
        worker.join(2.0)

    def test_idle_watcher(self, fake_engine, event_bus):
        manager = _manager(
            fake_engine, event_bus, model_unload_timeout_s=0.05, idle_check_interval_s=0.02
        )
        manager.load_model()
        manager.start()
        try:
            assert wait_until(lambda: not manager.is_loaded)
        finally:
            manager.shutdown()

    def test_start_without_timeout_has_no_watcher(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.start()
        assert manager._watcher is None

    def test_initiate_load(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)

        manager.initiate_load()

        assert wait_until(lambda: manager.is_loaded and not manager.is_loading)
        manager.initiate_load()
        assert fake_engine.load_calls == ["fake-model"]

    def test_transcribe_waits_for_background_load(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        release = threading.Event()
        original_load = fake_engine.load

        def slow_load(model_id):
            release.wait(2.0)
            original_load(model_id)

        fake_engine.load = slow_load
        manager.initiate_load()
        assert wait_until(lambda: manager.is_loading)

        result = []
        worker = threading.Thread(target=lambda: result.append(manager.transcribe(AUDIO)))
        worker.start()
        time.sleep(0.05)
        assert result == []

        release.set()
        worker.join(2.0)

        assert result == ["hello world"]
        assert fake_engine.load_calls == ["fake-model"]

    def test_unload_model_when_not_loaded(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus)
        manager.unload_model()
        assert _model_events(recorder) == []

    def test_ensure_loaded(self, fake_engine, event_bus, recorder):
        manager = _manager(fake_engine, event_bus)

        manager.ensure_loaded()
        manager.ensure_loaded()

        assert fake_engine.load_calls == ["fake-model"]
        assert fake_engine.calls == []
        assert _model_events(recorder) == ["loading_started", "loading_completed"]

    def test_ensure_loaded_failure(self, fake_engine, event_bus):
        fake_engine.load_error = RuntimeError("no weights")
        manager = _manager(fake_engine, event_bus)

        with pytest.raises(ModelNotLoaded):
            manager.ensure_loaded()

    def test_ensure_loaded_skips_lock_when_loaded(self, fake_engine, event_bus):
        """A loaded model is reported at once even while inference holds the engine."""
        manager = _manager(fake_engine, event_bus)
        manager.load_model()

        with manager._engine_lock:
            manager.ensure_loaded()


class TestStreamingAccumulation:
    """Chunk text collected per recording session."""

    def test_append_and_reset(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.reset_streaming_accumulation("s1")

        assert manager.append_streaming_text("s1", "hello") == "hello"
        assert manager.append_streaming_text("s1", "") == "hello"
        assert manager.append_streaming_text("s1", "there") == "hello there"
        assert manager.get_accumulated_text() == "hello there"

        manager.reset_streaming_accumulation("s2")
        assert manager.get_accumulated_text() == ""
        assert manager.get_accumulated_text("s1") == "hello there"

    def test_unknown_session_not_collected(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)

        assert manager.append_streaming_text("s1", "hello") is None
        assert manager.get_accumulated_text("s1") == ""

    def test_reset_all(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.reset_streaming_accumulation("s1")
        manager.append_streaming_text("s1", "hello")

        manager.reset_streaming_accumulation()

        assert manager.append_streaming_text("s1", "again") is None

    def test_discard(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.reset_streaming_accumulation("s1")
        manager.append_streaming_text("s1", "hello")

        manager.discard_streaming("s1")

        assert manager.get_accumulated_text("s1") == ""

    def test_finalize_takes_accumulated_text(self, fake_engine, event_bus):
        manager = _manager(fake_engine, event_bus)
        manager.reset_streaming_accumulation("s1")
        manager.append_streaming_text("s1", "hello there")

        assert manager.finalize_transcription("s1") == "hello there"

        assert fake_engine.calls == []
        assert manager.get_accumulated_text() == ""
        assert manager.append_streaming_text("s1", "late") is None

    def test_finalize_flushes_with_silence(self, fake_engine, event_bus):
        """Nothing streamed: three 160ms silent chunks go through the engine."""
        fake_engine.text = "bye EOU"
        manager = _manager(fake_engine, event_bus, custom_words=["Bye"])
        manager.reset_streaming_accumulation("s1")

        assert manager.finalize_transcription("s1") == "Bye Bye Bye"

        assert fake_engine.calls == [2560, 2560, 2560]

    def test_finalize_flush_all_empty(self, fake_engine, event_bus):
        fake_engine.text = "<|endoftext|>"
        manager = _manager(fake_engine, event_bus)

        assert manager.finalize_transcription("s1") == ""
        assert len(fake_engine.calls) == 3
