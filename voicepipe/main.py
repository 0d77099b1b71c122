"""Main application wiring for voicepipe."""

import argparse
import logging
import signal
import sys
import threading
import time
from typing import Optional

import uvicorn

from .audio.capture import AudioCapture
from .audio.vad import SileroVadScorer
from .config import Config, load_config
from .errors import VoicePipeError
from .events import (
    CaptureFailed,
    EventBus,
    ModelStateChanged,
    TranscriptionCompleted,
    TranscriptionFailed,
    TranscriptPartial,
)
from .pipeline import CapturePipeline
from .session import SessionController, TriggerMode
from .transcription.engine import create_engine
from .transcription.model import ModelManager
from .transcription.orchestrator import TranscriptionOrchestrator
from .web.api import create_app

logger = logging.getLogger(__name__)


class VoicePipe:
    """Owns every pipeline component and exposes the trigger interface."""

    def __init__(self, config: Config):
        self.config = config
        self._running = False
        self.event_bus = EventBus()

        # Initialize components
        self._init_transcription()
        self._init_audio()

        # Web server
        self._web_thread: Optional[threading.Thread] = None
        self._web_server: Optional[uvicorn.Server] = None

    def _init_transcription(self) -> None:
        """Initialize the inference side."""
        logger.info("Initializing transcription...")
        self.engine = create_engine(self.config.transcription)
        self.model_manager = ModelManager(self.engine, self.config.transcription, self.event_bus)
        self.orchestrator = TranscriptionOrchestrator(
            self.model_manager, self.config.transcription, self.event_bus
        )

    def _init_audio(self) -> None:
        """Initialize audio pipeline components."""
        logger.info("Initializing audio pipeline...")
        self.audio_capture = AudioCapture(self.config.audio)
        self.vad_scorer = SileroVadScorer(self.config.vad, self.config.audio.target_sample_rate)
        self.pipeline = CapturePipeline(self.config, self.audio_capture, self.vad_scorer)
        self.session = SessionController(self.config, self.pipeline, self.orchestrator, self.event_bus)

        # Wire up the capture thread and the log sink
        self.pipeline.attach(self.session)
        self.event_bus.subscribe(self._on_event)

    def _on_event(self, event) -> None:
        """Log results and failures."""
        if isinstance(event, TranscriptionCompleted):
            logger.info(f"Transcript [{event.job_id}]: {event.result.text}")
        elif isinstance(event, TranscriptPartial):
            logger.debug(f"Partial [{event.session_id[:8]}]: {event.accumulated_text}")
        elif isinstance(event, TranscriptionFailed):
            logger.warning(f"Transcription {event.job_id} failed ({event.reason}): {event.message}")
        elif isinstance(event, CaptureFailed):
            logger.warning(f"Capture failed ({event.reason}): {event.message}")
        elif isinstance(event, ModelStateChanged) and event.error:
            logger.warning(f"Model {event.model_id} {event.event_type}: {event.error}")

    # ==================== Trigger interface ====================

    def start_recording(self, mode=None):
        return self.session.start_recording(mode)

    def stop_recording(self) -> Optional[str]:
        return self.session.stop_recording()

    def cancel_active(self) -> list[str]:
        return self.session.cancel_active()

    def toggle_recording(self, mode=None) -> Optional[str]:
        return self.session.toggle_recording(mode)

    # ==================== Lifecycle ====================

    def _start_web_server(self, host: str = "127.0.0.1", port: int = 8080) -> None:
        """Start the web server in a background thread."""
        logger.info(f"Starting web server on {host}:{port}...")

        app = create_app(self)

        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="warning",
            access_log=False,
        )
        self._web_server = uvicorn.Server(config)

        def run_server():
            self._web_server.run()

        self._web_thread = threading.Thread(target=run_server, daemon=True)
        self._web_thread.start()

        logger.info(f"Web server started at http://{host}:{port}")

    def _stop_web_server(self) -> None:
        """Stop the web server."""
        if self._web_server is not None:
            logger.info("Stopping web server...")
            self._web_server.should_exit = True
            if self._web_thread is not None:
                self._web_thread.join(timeout=5.0)

    def start(self, enable_web: bool = True, web_host: str = "127.0.0.1", web_port: int = 8080) -> None:
        """Start all components."""
        if self._running:
            logger.warning("voicepipe already running")
            return

        logger.info("Starting voicepipe...")
        self._running = True

        self.orchestrator.start()
        if self.config.audio.always_on_microphone:
            self.pipeline.start(self.config.audio.device)

        if enable_web:
            self._start_web_server(host=web_host, port=web_port)

        logger.info("voicepipe started successfully")

    def stop(self) -> None:
        """Stop all components gracefully."""
        if not self._running:
            return

        logger.info("Stopping voicepipe...")
        self._running = False

        self._stop_web_server()

        # Hand any open recording to the orchestrator before it shuts down
        self.session.stop_recording()
        self.pipeline.stop()
        if not self.orchestrator.wait_idle(timeout=10.0):
            logger.warning("Pending transcriptions did not finish, cancelling")
        self.orchestrator.stop()
        self.event_bus.close()

        logger.info("voicepipe stopped")

    def get_status(self) -> dict:
        """Get current status of all components."""
        return {
            "running": self._running,
            "session": self.session.get_status(),
            "capture": {
                "running": self.pipeline.is_running(),
                "windows_processed": self.pipeline.windows_processed,
                "always_on": self.config.audio.always_on_microphone,
            },
            "transcription": {
                "engine": self.engine.name,
                "model": self.model_manager.current_model,
                "model_loaded": self.model_manager.is_loaded,
                "model_loading": self.model_manager.is_loading,
                "worker_running": self.orchestrator.is_running(),
                "pending_jobs": self.orchestrator.pending_count,
                "active_job": self.orchestrator.active_job_id,
                "partial_text": self.model_manager.get_accumulated_text(),
            },
        }


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="voicepipe - live speech to text")
    parser.add_argument(
        "-c", "--config",
        default="config/settings.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=8080,
        help="Web server port (default: 8080)",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Web server host (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--no-web",
        action="store_true",
        help="Disable web server",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in TriggerMode],
        help="Trigger mode (overrides the config file)",
    )
    parser.add_argument(
        "--list-audio",
        action="store_true",
        help="List available audio devices",
    )
    args = parser.parse_args()

    # List devices if requested
    if args.list_audio:
        print("Available audio devices:")
        for dev in AudioCapture.list_devices():
            print(f"  [{dev['id']}] {dev['name']} ({dev['channels']}ch, {dev['sample_rate']:.0f}Hz)")
        return

    # Load configuration
    config = load_config(args.config)
    if args.mode:
        config.session.trigger_mode = args.mode
    config.setup_logging()

    logger.info("=" * 50)
    logger.info("voicepipe - live speech to text")
    logger.info("=" * 50)

    # Create application
    app = VoicePipe(config)

    # Signal handlers
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}")
        app.stop()
        sys.exit(0)

    def toggle_handler(signum, frame):
        logger.info("USR1 received - toggling recording")
        try:
            app.toggle_recording()
        except VoicePipeError as e:
            logger.error(f"Could not toggle recording: {e}")

    def cancel_handler(signum, frame):
        logger.info("USR2 received - cancelling")
        app.cancel_active()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # USR1/USR2 triggers (Unix only)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, toggle_handler)
    if hasattr(signal, "SIGUSR2"):
        signal.signal(signal.SIGUSR2, cancel_handler)

    # Start application
    app.start(enable_web=not args.no_web, web_host=args.host, web_port=args.port)

    if not args.no_web:
        logger.info(f"Trigger API available at http://{args.host}:{args.port}/api")

    # Run until interrupted
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        app.stop()


if __name__ == "__main__":
    main()
