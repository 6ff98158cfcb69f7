"""Shared stub stages and service factory for pipeline tests."""

import asyncio
from typing import List, Optional

import pytest

from avatarflow import metrics
from avatarflow.pipeline.errors import StageError
from avatarflow.pipeline.models import MediaInput, StageStatus, VoiceParams
from avatarflow.pipeline.orchestrator import VideoGenerationService
from avatarflow.pipeline.progress_store import InMemoryProgressStore
from avatarflow.pipeline.stages import (
    AvatarSynthesisStage,
    CleanupService,
    CompositingStage,
    MediaUploader,
    ScriptGenerator,
)


class StubUploader(MediaUploader):
    def __init__(self, fail: bool = False, ephemeral: bool = False):
        self.fail = fail
        self.ephemeral = ephemeral
        self.uploaded: List[MediaInput] = []

    async def upload(self, media: MediaInput) -> str:
        self.uploaded.append(media)
        if self.fail:
            raise StageError("upload", "storage unavailable")
        name = media.filename or "blob"
        if self.ephemeral:
            return f"file:///tmp/{name}"
        return f"https://storage.example/uploads/{name}"


class StubScriptGenerator(ScriptGenerator):
    def __init__(self, script: str = "Generated script", fail: bool = False):
        self.script = script
        self.fail = fail
        self.topics: List[str] = []

    async def execute(self, topic: str) -> str:
        self.topics.append(topic)
        if self.fail:
            raise StageError("generate-script", "model overloaded")
        return self.script


class StubJobStage:
    """Shared behaviour for the two async job stubs."""

    def __init__(
        self,
        statuses: Optional[List[StageStatus]] = None,
        result_url: str = "https://cdn.example/out.mp4",
        start_error: bool = False,
        never_completes: bool = False,
        external_id: str = "ext-1",
    ):
        self.statuses = list(statuses or [])
        self.result_url = result_url
        self.start_error = start_error
        self.never_completes = never_completes
        self.external_id = external_id
        self.start_calls: List[tuple] = []
        self.status_calls = 0
        self.metadata: List[Optional[dict]] = []

    async def check_status(self, external_id, metadata=None):
        self.status_calls += 1
        self.metadata.append(metadata)
        if self.never_completes:
            return StageStatus(completed=False, status_text="processing")
        if self.statuses:
            status = self.statuses.pop(0)
            if isinstance(status, Exception):
                raise status
            return status
        return StageStatus(completed=True, result_url=self.result_url)


class StubSynthesis(StubJobStage, AvatarSynthesisStage):
    async def start(self, script: str, voice: VoiceParams, job_id: str) -> str:
        self.start_calls.append((script, voice, job_id))
        if self.start_error:
            raise StageError("generate-ai-video", "voice not found")
        return self.external_id


class StubCompositor(StubJobStage, CompositingStage):
    async def start(self, avatar_video_url, supporting_media_url, job_id) -> str:
        self.start_calls.append((avatar_video_url, supporting_media_url, job_id))
        if self.start_error:
            raise StageError("create-final-video", "render farm offline")
        return self.external_id


class StubCleanup(CleanupService):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.deleted: List[List[str]] = []

    async def delete(self, urls, job_id) -> None:
        self.deleted.append(list(urls))
        if self.fail:
            raise StageError("cleanup-files", "permission denied")


class RecordingStore(InMemoryProgressStore):
    """In-memory store that keeps every merged snapshot per job."""

    def __init__(self):
        super().__init__()
        self.history = {}

    def merge(self, job_id, partial):
        record = super().merge(job_id, partial)
        self.history.setdefault(job_id, []).append(record)
        return record


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def stages():
    return {
        "store": RecordingStore(),
        "uploader": StubUploader(),
        "script_generator": StubScriptGenerator(),
        "synthesizer": StubSynthesis(
            result_url="https://cdn.example/avatar.mp4", external_id="heygen-1"
        ),
        "compositor": StubCompositor(
            result_url="https://cdn.example/final.mp4", external_id="render-1"
        ),
        "cleaner": StubCleanup(),
    }


@pytest.fixture
def make_service(stages):
    def _make(max_poll_attempts: int = 60, **overrides) -> VideoGenerationService:
        wiring = {**stages, **overrides}
        return VideoGenerationService(
            poll_interval=0,
            max_poll_attempts=max_poll_attempts,
            **wiring,
        )
    return _make


async def wait_for_terminal(service, job_id, timeout: float = 5.0):
    """Poll the service the way a remote client would."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    observed = []
    while loop.time() < deadline:
        record = service.get_progress(job_id)
        observed.append(record.percent)
        if record.is_terminal:
            return record, observed
        await asyncio.sleep(0.005)
    raise AssertionError(f"job {job_id} never reached a terminal state")


@pytest.fixture
def terminal():
    return wait_for_terminal
