"""
Capability interfaces for the external stage services.

Two shapes:
  ScriptGenerator   - synchronous completion: execute(topic) → text
  AsyncJobStage     - start(...) → external id, then check_status(id) until done

Concrete HTTP implementations live in edge_functions.py; tests swap in stubs.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import MediaInput, StageStatus, VoiceParams


class MediaUploader(ABC):
    """Blob upload. Fails open: returns an ephemeral local reference on error."""

    @abstractmethod
    async def upload(self, media: MediaInput) -> str:
        ...

    @staticmethod
    def is_ephemeral(url: str) -> bool:
        return url.startswith("file://")


class ScriptGenerator(ABC):
    @abstractmethod
    async def execute(self, topic: str) -> str:
        """Generate a script for `topic`. Raises StageError on failure."""
        ...


class AsyncJobStage(ABC):
    """A long-running external job polled to completion."""

    stage_name = "external job"

    @abstractmethod
    async def check_status(
        self, external_id: str, metadata: Optional[dict] = None
    ) -> StageStatus:
        """One status check. Raises StageError on transport failure."""
        ...


class AvatarSynthesisStage(AsyncJobStage):
    stage_name = "AI video generation"

    @abstractmethod
    async def start(self, script: str, voice: VoiceParams, job_id: str) -> str:
        """Submit a synthesis job and return its external job id."""
        ...


class CompositingStage(AsyncJobStage):
    stage_name = "Final video generation"

    @abstractmethod
    async def start(
        self,
        avatar_video_url: str,
        supporting_media_url: Optional[str],
        job_id: str,
    ) -> str:
        """Submit a compositing render and return its render id."""
        ...


class CleanupService(ABC):
    @abstractmethod
    async def delete(self, urls: List[str], job_id: str) -> None:
        """Best-effort removal of temporary uploads."""
        ...
