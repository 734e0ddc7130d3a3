"""
Neuro Assessment Service - FastAPI Application

Endpoints:
  POST /assess
  POST /audio/upload
  GET  /assessments/recent
  GET  /assessments/stats
  GET  /assessments/{assessment_id}
  GET  /health
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from env_loader import env_bool, env_float
from models import (
    AssessmentRequest,
    AssessmentResponse,
    AssessmentStatsResponse,
    AudioUploadResponse,
    HealthResponse,
    RecentAssessmentsResponse,
)
from orchestrator import InvalidAssessmentRequest, NeuroAssessmentOrchestrator, build_orchestrator_from_env

logging.basicConfig(level=(os.getenv("NEURO_LOG_LEVEL", "INFO") or "INFO").strip().upper())
logger = logging.getLogger(__name__)

SERVICE_NAME = "neuro-assessment-service"
MAX_AUDIO_BYTES = 25 * 1024 * 1024
SUPPORTED_AUDIO_EXTENSIONS = {".wav", ".mp3", ".m4a", ".mp4", ".webm", ".ogg"}
# The orchestrator enforces the request deadline itself; this is the outer guard.
ASSESS_GRACE_SECONDS = 5.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let in-flight background writes finish before the process exits.
    await app.state.orchestrator.drain_background()


app = FastAPI(
    title="Neuro Assessment Service",
    description="Multi-provider stroke-risk assessment orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.orchestrator = build_orchestrator_from_env()


def _orchestrator() -> NeuroAssessmentOrchestrator:
    return app.state.orchestrator


def _error_detail(prefix: str, exc: Exception) -> str:
    if not env_bool("NEURO_EXPOSE_ERRORS", False):
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _is_supported_audio_upload(filename: str, content_type: str) -> bool:
    ext = os.path.splitext(filename or "")[1].lower().strip()
    mime = (content_type or "").lower().strip()
    return ext in SUPPORTED_AUDIO_EXTENSIONS or mime.startswith("audio/") or mime == "video/mp4"


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    orchestrator = _orchestrator()
    matrix = await orchestrator.capabilities()
    available = [name for name, cap in matrix.capabilities.items() if cap.available]
    if not available:
        status = "degraded"
    elif len(available) == len(matrix.capabilities):
        status = "ok"
    else:
        status = "partial"
    return HealthResponse(
        status=status,
        service=SERVICE_NAME,
        store_backend=orchestrator.repository.backend if orchestrator.repository else "off",
        capabilities=matrix.capabilities,
        timestamp=datetime.now(timezone.utc),
    )


@app.post("/assess", response_model=AssessmentResponse)
async def assess(request: AssessmentRequest) -> AssessmentResponse:
    orchestrator = _orchestrator()
    deadline = request.deadline_seconds or orchestrator.settings.default_deadline_seconds
    try:
        assessment, diagnostics = await asyncio.wait_for(
            orchestrator.assess(request),
            timeout=deadline + ASSESS_GRACE_SECONDS,
        )
        return AssessmentResponse(success=True, assessment=assessment, diagnostics=diagnostics)
    except InvalidAssessmentRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except asyncio.TimeoutError as exc:
        logger.error("Assessment exceeded %.1fs outer deadline.", deadline + ASSESS_GRACE_SECONDS)
        raise HTTPException(
            status_code=504,
            detail=f"Assessment timed out after {int(round(deadline))}s.",
        ) from exc
    except asyncio.CancelledError:
        logger.info("Assessment request cancelled (shutdown or client disconnect).")
        raise HTTPException(status_code=499, detail="Assessment request cancelled.")
    except Exception as exc:
        logger.exception("Failed to run assessment: %s", exc)
        raise HTTPException(
            status_code=500,
            detail=_error_detail("Failed to run assessment.", exc),
        ) from exc


@app.post("/audio/upload", response_model=AudioUploadResponse)
async def upload_audio(file: UploadFile = File(...)) -> AudioUploadResponse:
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded audio file is empty.")
    if len(payload) > MAX_AUDIO_BYTES:
        raise HTTPException(status_code=413, detail="Audio file exceeds 25MB upload limit.")

    filename = file.filename or "recording.wav"
    if not _is_supported_audio_upload(filename, file.content_type or ""):
        raise HTTPException(status_code=400, detail="Unsupported audio format.")

    outcome = await _orchestrator().upload_audio(payload)
    if not outcome.ok:
        kind = outcome.error.kind.value if outcome.error else "empty"
        status_code = 503 if kind in {"unconfigured", "unavailable"} else 502
        if kind == "rate_limited":
            status_code = 429
        message = outcome.error.message if outcome.error else "Upload returned no URL."
        raise HTTPException(status_code=status_code, detail=f"Audio upload failed ({kind}): {message}")
    return AudioUploadResponse(
        success=True,
        audio_url=outcome.value,
        file_name=filename,
        size_bytes=len(payload),
    )


@app.get("/assessments/recent", response_model=RecentAssessmentsResponse)
async def recent_assessments(limit: int = 20) -> RecentAssessmentsResponse:
    repository = _orchestrator().repository
    if repository is None:
        raise HTTPException(status_code=503, detail="Assessment persistence is disabled.")
    items = await asyncio.to_thread(repository.list_recent, max(1, min(limit, 200)))
    return RecentAssessmentsResponse(success=True, items=items)


@app.get("/assessments/stats", response_model=AssessmentStatsResponse)
async def assessment_stats() -> AssessmentStatsResponse:
    repository = _orchestrator().repository
    if repository is None:
        raise HTTPException(status_code=503, detail="Assessment persistence is disabled.")
    stats = await asyncio.to_thread(repository.stats)
    return AssessmentStatsResponse(success=True, **stats)


@app.get("/assessments/{assessment_id}")
async def get_assessment(assessment_id: str) -> dict:
    repository = _orchestrator().repository
    if repository is None:
        raise HTTPException(status_code=503, detail="Assessment persistence is disabled.")
    try:
        record = await asyncio.to_thread(repository.get, assessment_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"success": True, "assessment": record.model_dump(mode="json")}


@app.get("/")
async def root() -> dict:
    return {
        "service": SERVICE_NAME,
        "status": "ok",
        "health": "/health",
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("NEURO_HOST", "0.0.0.0"),
        port=int(env_float("NEURO_PORT", 8080)),
        reload=False,
    )
