"""
Avatar Video Pipeline

Upload media → Script (generated or custom) → Avatar synthesis → Final composition → Cleanup,
with per-job progress persisted for polling clients.
"""

from .errors import InvalidRequest, NotFound, PollTimeout, StageError
from .models import GenerationRequest, JobStatus, ProgressRecord, ScriptOption
from .orchestrator import VideoGenerationService
from .routes import pipeline_router

__all__ = [
    "VideoGenerationService",
    "pipeline_router",
    "GenerationRequest",
    "ProgressRecord",
    "JobStatus",
    "ScriptOption",
    "InvalidRequest",
    "StageError",
    "PollTimeout",
    "NotFound",
]
