"""
FastAPI routes for the avatar video pipeline.

Pipeline Endpoints:
  POST /pipeline/generate           - Submit a job, returns its id immediately
  GET  /pipeline/progress/{job_id}  - Current ProgressRecord snapshot
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from .errors import NotFound
from .models import GenerationRequest, ProgressRecord, SubmitResponse
from .orchestrator import VideoGenerationService, create_default_service

logger = logging.getLogger(__name__)

pipeline_router = APIRouter(prefix="/pipeline", tags=["pipeline"])

# Singleton service instance, created on first use or injected by main/tests
_service: Optional[VideoGenerationService] = None


def get_service() -> VideoGenerationService:
    global _service
    if _service is None:
        _service = create_default_service()
    return _service


def set_service(service: Optional[VideoGenerationService]):
    global _service
    _service = service


@pipeline_router.post("/generate", response_model=SubmitResponse)
async def generate_video(request: GenerationRequest):
    """Start the avatar video pipeline (async). Poll /progress for status."""
    job_id = await get_service().submit(request)
    return SubmitResponse(job_id=job_id)


@pipeline_router.get("/progress/{job_id}", response_model=ProgressRecord)
def get_progress(job_id: str):
    """Get the current progress of a pipeline job. Runs in the threadpool."""
    try:
        return get_service().get_progress(job_id)
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
