"""
VideoGenerationService - Main pipeline orchestrator.

Runs one job as a detached asyncio task, strictly sequentially:
  Step 1: Media Upload        (optional, never fatal)
  Step 2: Script Acquisition  (generated with fallback, or custom verbatim)
  Step 3: Avatar Synthesis    (start + poll, fatal on failure/timeout)
  Step 4: Final Composition   (start + poll, fatal on failure/timeout)
  Step 5: Cleanup             (best-effort, success path only)
  Step 6: Terminal            (percent=100 with final_artifact_url OR error_message)

All state a client can see goes through the injected ProgressStore. Store
calls run in a worker thread so a slow backend never stalls other jobs.
"""

import os
import uuid
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .. import metrics
from .errors import InvalidRequest, PipelineError, StageError
from .models import (
    GenerationRequest,
    JobStatus,
    MediaInput,
    ProgressRecord,
    ScriptOption,
    TERMINAL_PERCENT,
    VoiceParams,
)
from .poller import poll
from .progress_store import ProgressReader, ProgressStore
from .stages import (
    AvatarSynthesisStage,
    CleanupService,
    CompositingStage,
    MediaUploader,
    ScriptGenerator,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DEFAULT_POLL_INTERVAL = 5.0  # seconds, PIPELINE_POLL_INTERVAL
DEFAULT_MAX_POLL_ATTEMPTS = 60  # 5 minutes, PIPELINE_MAX_POLL_ATTEMPTS

# Fixed progress checkpoints
PCT_SUPPORTING_UPLOAD = 10
PCT_VOICE_UPLOAD = 15
PCT_SCRIPT = 25
PCT_SYNTHESIS = 50
PCT_COMPOSITION = 75

CANCELLED_MESSAGE = "Pipeline cancelled"


def fallback_script(topic: str) -> str:
    return f"Here's a cool video about {topic}!"


def resolve_script_option(request: GenerationRequest) -> ScriptOption:
    """Validate the script source before any external call is made."""
    if request.script_option == ScriptOption.GPT and (request.topic or "").strip():
        return ScriptOption.GPT
    if request.script_option == ScriptOption.CUSTOM and (request.custom_script or "").strip():
        return ScriptOption.CUSTOM
    raise InvalidRequest("Invalid script option or missing required data")


@dataclass
class PipelineJob:
    job_id: str
    task: asyncio.Task
    cancel_token: asyncio.Event


class VideoGenerationService:
    """
    Production-grade pipeline orchestrator.

    Usage:
        service = VideoGenerationService(store, uploader, scripts, synth, compositor, cleaner)

        job_id = await service.submit(request)   # returns immediately
        record = service.get_progress(job_id)    # poll from anywhere
    """

    def __init__(
        self,
        store: ProgressStore,
        uploader: MediaUploader,
        script_generator: ScriptGenerator,
        synthesizer: AvatarSynthesisStage,
        compositor: CompositingStage,
        cleaner: CleanupService,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    ):
        self._store = store
        self._reader = ProgressReader(store)
        self._uploader = uploader
        self._script_generator = script_generator
        self._synthesizer = synthesizer
        self._compositor = compositor
        self._cleaner = cleaner
        self._poll_interval = poll_interval
        self._max_poll_attempts = max_poll_attempts
        self._jobs: Dict[str, PipelineJob] = {}

    @property
    def store(self) -> ProgressStore:
        return self._store

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    def get_progress(self, job_id: str) -> ProgressRecord:
        """Current snapshot for `job_id`. Raises NotFound for unknown ids."""
        return self._reader.read(job_id)

    async def _update(self, job_id: str, **fields) -> ProgressRecord:
        # A write already handed to the worker thread must land before a
        # cancellation propagates, so writes for one job never overlap.
        write = asyncio.ensure_future(asyncio.to_thread(self._store.merge, job_id, fields))
        try:
            record = await asyncio.shield(write)
        except asyncio.CancelledError:
            await write
            raise
        if "percent" in fields or "stage" in fields:
            logger.info(f"[{job_id}] {record.stage} ({record.percent}%)")
        return record

    # ── Submission & lifecycle ───────────────────────────────────────────

    async def submit(self, request: GenerationRequest) -> str:
        """Allocate a job id, seed its progress and launch the pipeline task."""
        job_id = str(uuid.uuid4())
        await asyncio.to_thread(self._store.initialize, job_id, {
            "percent": 0,
            "stage": "Starting...",
            "voice_id": request.voice_id,
            "voice_media_url": request.voice_media.url if request.voice_media else None,
        })

        cancel_token = asyncio.Event()
        task = asyncio.create_task(
            self.run_pipeline(job_id, request, cancel_token),
            name=f"pipeline-{job_id}",
        )
        self._jobs[job_id] = PipelineJob(job_id, task, cancel_token)
        task.add_done_callback(lambda t: self._on_job_done(job_id, t))

        metrics.inc_counter("pipeline.submitted")
        metrics.set_gauge("active_jobs", len(self._jobs))
        logger.info(f"[{job_id}] Submitted ({request.script_option.value} script)")
        return job_id

    def _on_job_done(self, job_id: str, task: asyncio.Task):
        self._jobs.pop(job_id, None)
        metrics.set_gauge("active_jobs", len(self._jobs))
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[{job_id}] Pipeline task crashed: {task.exception()}")

    def cancel(self, job_id: str) -> bool:
        """Signal a running job's cancel token. Returns False if it is not running."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel_token.set()
        logger.info(f"[{job_id}] Cancellation requested")
        return True

    async def shutdown(self):
        """Cancel every in-flight job and make sure each one ends terminal."""
        jobs = list(self._jobs.values())
        for job in jobs:
            job.task.cancel()
        if not jobs:
            return
        await asyncio.gather(*(job.task for job in jobs), return_exceptions=True)

        # Tasks cancelled before their first step never reach run_pipeline's handler
        for job in jobs:
            record = await asyncio.to_thread(self._store.read, job.job_id)
            if not record.is_terminal:
                await self._fail(job.job_id, CANCELLED_MESSAGE, "Cancelled")
        logger.info(f"Cancelled {len(jobs)} in-flight job(s) on shutdown")

    # ── The pipeline ─────────────────────────────────────────────────────

    async def run_pipeline(
        self,
        job_id: str,
        request: GenerationRequest,
        cancel_token: Optional[asyncio.Event] = None,
    ) -> ProgressRecord:
        """Run every stage for `job_id` and return the terminal ProgressRecord."""
        cleanup_set: List[str] = []

        try:
            script_option = resolve_script_option(request)

            # ── Step 1: Media Upload ─────────────────────────────────
            supporting_url, voice_media_url = await self._upload_media(
                job_id, request, cleanup_set
            )

            # ── Step 2: Script Acquisition ───────────────────────────
            script_text = await self._acquire_script(job_id, request, script_option)

            # ── Step 3: Avatar Synthesis ─────────────────────────────
            voice = VoiceParams(
                voice_id=request.voice_id,
                voice_media_url=voice_media_url,
                high_resolution=request.high_resolution,
            )
            avatar_url = await self._synthesize(job_id, script_text, voice, cancel_token)

            # ── Step 4: Final Composition ────────────────────────────
            final_url = await self._compose(
                job_id, avatar_url, supporting_url, script_text,
                request.user_id, cancel_token,
            )

        except asyncio.CancelledError:
            await self._fail(job_id, CANCELLED_MESSAGE, "Cancelled")
            raise
        except PipelineError as e:
            logger.error(f"[{job_id}] Pipeline failed: {e}", exc_info=True)
            return await self._fail(job_id, str(e), type(e).__name__)
        except Exception as e:
            logger.error(f"[{job_id}] Pipeline crashed: {e}", exc_info=True)
            return await self._fail(job_id, str(e) or type(e).__name__, type(e).__name__)

        # ── Step 5: Cleanup ──────────────────────────────────────────
        try:
            await self._cleanup(job_id, cleanup_set)
        except asyncio.CancelledError:
            logger.warning(f"[{job_id}] Cleanup interrupted; final video is ready")
            await self._succeed(job_id, final_url)
            raise

        # ── Step 6: Terminal ─────────────────────────────────────────
        return await self._succeed(job_id, final_url)

    async def _succeed(self, job_id: str, final_url: str) -> ProgressRecord:
        metrics.inc_counter("pipeline.succeeded")
        return await self._update(
            job_id,
            percent=TERMINAL_PERCENT,
            stage="Complete!",
            status=JobStatus.SUCCEEDED,
            final_artifact_url=final_url,
        )

    async def _fail(self, job_id: str, message: str, error_type: str) -> ProgressRecord:
        metrics.inc_counter("pipeline.failed")
        metrics.inc_counter(f"errors.{error_type}")
        metrics.record_error("pipeline", error_type, message, job_id)
        return await self._update(
            job_id,
            percent=TERMINAL_PERCENT,
            stage=f"Error: {message}",
            status=JobStatus.FAILED,
            error_message=message,
        )

    # ── Step 1 ───────────────────────────────────────────────────────────

    async def _upload_media(
        self,
        job_id: str,
        request: GenerationRequest,
        cleanup_set: List[str],
    ) -> Tuple[Optional[str], Optional[str]]:
        supporting_url = await self._resolve_media(
            job_id, request.supporting_media, cleanup_set,
            PCT_SUPPORTING_UPLOAD, "Uploading supporting media...",
        )
        voice_media_url = await self._resolve_media(
            job_id, request.voice_media, cleanup_set,
            PCT_VOICE_UPLOAD, "Uploading voice character image...",
        )
        await self._update(
            job_id,
            supporting_media_url=supporting_url,
            voice_media_url=voice_media_url,
        )
        return supporting_url, voice_media_url

    async def _resolve_media(
        self,
        job_id: str,
        media: Optional[MediaInput],
        cleanup_set: List[str],
        percent: int,
        stage: str,
    ) -> Optional[str]:
        """Upload one media item if needed. Failures leave the reference absent."""
        if media is None:
            return None
        if media.url:
            return media.url
        if not media.needs_upload:
            return None

        await self._update(job_id, percent=percent, stage=stage)
        try:
            with metrics.timed("upload"):
                url = await self._uploader.upload(media)
        except (StageError, OSError) as e:
            logger.error(f"[{job_id}] Media upload failed, continuing without it: {e}")
            metrics.inc_counter("errors.upload")
            return None

        if self._uploader.is_ephemeral(url):
            logger.warning(f"[{job_id}] Upload fell back to {url}; not forwarding it")
            return None

        if url not in cleanup_set:
            cleanup_set.append(url)
        return url

    # ── Step 2 ───────────────────────────────────────────────────────────

    async def _acquire_script(
        self,
        job_id: str,
        request: GenerationRequest,
        script_option: ScriptOption,
    ) -> str:
        if script_option == ScriptOption.CUSTOM:
            await self._update(job_id, percent=PCT_SCRIPT, stage="Using custom script...")
            script_text = request.custom_script
        else:
            await self._update(job_id, percent=PCT_SCRIPT, stage="Generating script...")
            try:
                with metrics.timed("script"):
                    script_text = await self._script_generator.execute(request.topic)
            except StageError as e:
                logger.error(f"[{job_id}] Script generation failed, using fallback: {e}")
                metrics.inc_counter("errors.script")
                script_text = fallback_script(request.topic)

        await self._update(job_id, script_text=script_text)
        return script_text

    # ── Step 3 ───────────────────────────────────────────────────────────

    async def _synthesize(
        self,
        job_id: str,
        script_text: str,
        voice: VoiceParams,
        cancel_token: Optional[asyncio.Event],
    ) -> str:
        await self._update(job_id, percent=PCT_SYNTHESIS, stage="Generating AI video...")

        try:
            external_id = await self._synthesizer.start(script_text, voice, job_id)
        except StageError as e:
            raise StageError(e.stage, f"Error starting AI video: {e}") from e

        await self._update(job_id, external_job_id=external_id)
        logger.info(f"[{job_id}] AI video generation started: job_id={external_id}")

        metadata = {"processId": job_id}
        with metrics.timed("avatar_synthesis"):
            status = await poll(
                lambda: self._synthesizer.check_status(external_id, metadata),
                self._poll_interval,
                self._max_poll_attempts,
                on_tick=lambda s: self._update(job_id, stage=f"AI video processing: {s}..."),
                cancel_token=cancel_token,
                label=self._synthesizer.stage_name,
            )

        if not status.result_url:
            raise StageError("avatar_synthesis", "AI video completed without a video URL")

        await self._update(job_id, avatar_video_url=status.result_url)
        return status.result_url

    # ── Step 4 ───────────────────────────────────────────────────────────

    async def _compose(
        self,
        job_id: str,
        avatar_url: str,
        supporting_url: Optional[str],
        script_text: str,
        user_id: Optional[str],
        cancel_token: Optional[asyncio.Event],
    ) -> str:
        await self._update(job_id, percent=PCT_COMPOSITION, stage="Creating final video...")

        try:
            render_id = await self._compositor.start(avatar_url, supporting_url, job_id)
        except StageError as e:
            raise StageError(e.stage, f"Error creating final video: {e}") from e

        await self._update(job_id, external_render_id=render_id)
        logger.info(f"[{job_id}] Final video render started: render_id={render_id}")

        metadata = {
            "processId": job_id,
            "scriptText": script_text,
            "aiVideoUrl": avatar_url,
            "userId": user_id,
        }
        with metrics.timed("composition"):
            status = await poll(
                lambda: self._compositor.check_status(render_id, metadata),
                self._poll_interval,
                self._max_poll_attempts,
                on_tick=lambda s: self._update(job_id, stage=f"Final video processing: {s}..."),
                cancel_token=cancel_token,
                label=self._compositor.stage_name,
            )

        if not status.result_url:
            raise StageError("composition", "Final video completed without a video URL")
        return status.result_url

    # ── Step 5 ───────────────────────────────────────────────────────────

    async def _cleanup(self, job_id: str, cleanup_set: List[str]):
        if not cleanup_set:
            return
        try:
            await self._cleaner.delete(list(cleanup_set), job_id)
        except Exception as e:
            logger.error(f"[{job_id}] Error cleaning up files (non-fatal): {e}")
            metrics.inc_counter("errors.cleanup")
        finally:
            cleanup_set.clear()


def create_default_service() -> VideoGenerationService:
    """Wire the service against Supabase and the configured progress store."""
    from .edge_functions import (
        EdgeAvatarSynthesis,
        EdgeCleanup,
        EdgeCompositor,
        EdgeScriptGenerator,
    )
    from .progress_store import create_progress_store
    from .storage import SupabaseUploader

    return VideoGenerationService(
        store=create_progress_store(),
        uploader=SupabaseUploader(),
        script_generator=EdgeScriptGenerator(),
        synthesizer=EdgeAvatarSynthesis(),
        compositor=EdgeCompositor(),
        cleaner=EdgeCleanup(),
        poll_interval=float(os.getenv("PIPELINE_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)),
        max_poll_attempts=int(os.getenv("PIPELINE_MAX_POLL_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS)),
    )
