"""FastAPI trigger and status API for voicepipe."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..audio.capture import AudioCapture
from ..errors import CaptureError, SessionBusy

logger = logging.getLogger(__name__)


class StartRequest(BaseModel):
    """Body of a start request."""
    mode: Optional[str] = None


class RecordingResponse(BaseModel):
    """Response model for trigger calls."""
    success: bool
    message: str
    data: Optional[dict] = None


class StatusResponse(BaseModel):
    """Response model for system status."""
    running: bool
    uptime_seconds: float
    session: dict
    capture: dict
    transcription: dict


def create_app(voicepipe) -> FastAPI:
    """Create the FastAPI application bound to a VoicePipe instance."""

    app = FastAPI(
        title="voicepipe API",
        description="Recording triggers and transcription status",
        version="0.1.0",
    )

    # CORS for local tools driving the triggers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.voicepipe = voicepipe
    app.state.start_time = datetime.now()

    # ==================== Status ====================

    @app.get("/api/status", response_model=StatusResponse)
    async def get_status():
        """Get current system status."""
        status = app.state.voicepipe.get_status()
        uptime = (datetime.now() - app.state.start_time).total_seconds()

        return StatusResponse(
            running=status["running"],
            uptime_seconds=uptime,
            session=status["session"],
            capture=status["capture"],
            transcription=status["transcription"],
        )

    # ==================== Triggers ====================

    @app.post("/api/recording/start", response_model=RecordingResponse)
    def start_recording(request: Optional[StartRequest] = None):
        """Start a recording session."""
        mode = request.mode if request is not None else None
        try:
            session = app.state.voicepipe.start_recording(mode)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SessionBusy as e:
            raise HTTPException(status_code=409, detail=str(e))
        except CaptureError as e:
            logger.error(f"Failed to start recording: {e}")
            raise HTTPException(status_code=503, detail=str(e))

        return RecordingResponse(
            success=True,
            message=f"Recording started ({session.mode.value})",
            data={"session_id": session.session_id, "mode": session.mode.value},
        )

    @app.post("/api/recording/stop", response_model=RecordingResponse)
    def stop_recording():
        """Stop the active recording and queue it for transcription."""
        job_id = app.state.voicepipe.stop_recording()
        if job_id is None:
            return RecordingResponse(success=True, message="No segment submitted")

        return RecordingResponse(
            success=True,
            message=f"Segment queued as {job_id}",
            data={"job_id": job_id},
        )

    @app.post("/api/recording/cancel", response_model=RecordingResponse)
    def cancel_recording():
        """Cancel the recording and all pending transcriptions."""
        cancelled = app.state.voicepipe.cancel_active()
        return RecordingResponse(
            success=True,
            message=f"Cancelled {len(cancelled)} job(s)",
            data={"cancelled_jobs": cancelled},
        )

    # ==================== Jobs & results ====================

    @app.delete("/api/jobs/{job_id}", response_model=RecordingResponse)
    def cancel_job(job_id: str):
        """Cancel a single queued or running job."""
        if not app.state.voicepipe.orchestrator.cancel(job_id):
            raise HTTPException(status_code=404, detail=f"No pending job {job_id}")
        return RecordingResponse(success=True, message=f"Cancelled {job_id}")

    @app.get("/api/transcripts/recent")
    async def get_recent_transcripts(limit: int = Query(20, ge=1)):
        """Get the most recent transcription results."""
        results = app.state.voicepipe.orchestrator.get_recent_results()[-limit:]
        return {
            "count": len(results),
            "transcripts": [
                {
                    "job_id": r.job_id,
                    "text": r.text,
                    "model": r.model_id,
                    "duration_s": r.duration_s,
                    "timestamp": r.timestamp.isoformat(),
                }
                for r in results
            ],
        }

    @app.get("/api/devices")
    def list_devices():
        """List available audio input devices."""
        try:
            return {"devices": AudioCapture.list_devices()}
        except Exception as e:
            logger.error(f"Failed to list devices: {e}")
            raise HTTPException(status_code=500, detail=str(e))

    return app
