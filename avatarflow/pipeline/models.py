"""
Pydantic models and enums for the avatar video pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


# ── Progress ─────────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_PERCENT = 100


class ProgressRecord(BaseModel):
    """
    Mergeable snapshot of one job's state.

    percent == 100 is terminal for both outcomes; exactly one of
    final_artifact_url / error_message is set once it is reached.
    """
    percent: int = Field(0, ge=0, le=100)
    stage: str = "Starting..."
    status: JobStatus = JobStatus.RUNNING
    script_text: Optional[str] = None
    external_job_id: Optional[str] = None
    external_render_id: Optional[str] = None
    avatar_video_url: Optional[str] = None
    final_artifact_url: Optional[str] = None
    error_message: Optional[str] = None
    voice_id: Optional[str] = None
    voice_media_url: Optional[str] = None
    supporting_media_url: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.percent >= TERMINAL_PERCENT


# ── Generation Request ───────────────────────────────────────────────────────

class ScriptOption(str, Enum):
    GPT = "gpt"        # script generated from a topic
    CUSTOM = "custom"  # user-supplied script used verbatim


class MediaInput(BaseModel):
    """
    A supporting or voice-character media item.

    Either `url` (already an external reference, reused as-is) or
    `data_base64` (raw bytes that must be uploaded first).
    """
    url: Optional[str] = None
    filename: Optional[str] = None
    content_type: str = "application/octet-stream"
    data_base64: Optional[str] = None

    @property
    def needs_upload(self) -> bool:
        return not self.url and bool(self.data_base64)


class VoiceParams(BaseModel):
    voice_id: str
    voice_media_url: Optional[str] = None
    high_resolution: bool = False


class GenerationRequest(BaseModel):
    """Submit payload for a new avatar video job."""
    script_option: ScriptOption
    topic: Optional[str] = None
    custom_script: Optional[str] = None
    voice_id: str
    voice_media: Optional[MediaInput] = None
    supporting_media: Optional[MediaInput] = None
    high_resolution: bool = False
    user_id: Optional[str] = None


class SubmitResponse(BaseModel):
    job_id: str


# ── External Stage Results ───────────────────────────────────────────────────

class StageStatus(BaseModel):
    """One check-status answer from an asynchronous external job."""
    completed: bool = False
    result_url: Optional[str] = None
    status_text: str = ""
