"""
HTTP clients for the Supabase Edge Functions that do the real work.

  generate-script          - topic → scriptText
  generate-ai-video        - script + voice → jobId
  check-ai-video-status    - jobId → {completed, videoUrl, status}
  create-final-video       - aiVideoUrl + supportingVideo → renderId
  check-final-video-status - renderId → {completed, url, status}
  cleanup-files            - filePaths → ack

Every transport or payload problem is raised as StageError so the
orchestrator can decide whether it is fatal.
"""

import os
import logging
from typing import List, Optional

import httpx

from .errors import StageError
from .models import StageStatus, VoiceParams
from .stages import (
    AvatarSynthesisStage,
    CleanupService,
    CompositingStage,
    ScriptGenerator,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

DEFAULT_TIMEOUT = 30.0  # EDGE_FUNCTION_TIMEOUT


class EdgeFunctionClient:
    """Shared POST helper for `{base_url}/functions/v1/{name}`."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if base_url is None:
            base_url = os.getenv("SUPABASE_URL", "")
        if api_key is None:
            api_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if timeout is None:
            timeout = float(os.getenv("EDGE_FUNCTION_TIMEOUT", DEFAULT_TIMEOUT))
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def _invoke(self, function_name: str, body: dict) -> dict:
        url = f"{self._base_url}/functions/v1/{function_name}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(url, headers=self._headers(), json=body)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise StageError(
                function_name,
                f"{function_name} returned {e.response.status_code}: {e.response.text[:200]}",
            ) from e
        except httpx.HTTPError as e:
            raise StageError(function_name, f"{function_name} request failed: {e}") from e
        except ValueError as e:
            raise StageError(function_name, f"{function_name} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise StageError(function_name, f"{function_name} returned unexpected payload: {data!r}")
        if data.get("error"):
            raise StageError(function_name, f"{function_name} error: {data['error']}")
        return data


class EdgeScriptGenerator(EdgeFunctionClient, ScriptGenerator):
    async def execute(self, topic: str) -> str:
        data = await self._invoke("generate-script", {"topic": topic})
        script = data.get("scriptText")
        if not script:
            raise StageError("generate-script", f"No scriptText in response: {data}")
        return script


class EdgeAvatarSynthesis(EdgeFunctionClient, AvatarSynthesisStage):
    async def start(self, script: str, voice: VoiceParams, job_id: str) -> str:
        data = await self._invoke("generate-ai-video", {
            "script": script,
            "voiceId": voice.voice_id,
            "voiceMedia": voice.voice_media_url,
            "highResolution": voice.high_resolution,
            "processId": job_id,
        })
        external_id = data.get("jobId")
        if not external_id:
            raise StageError("generate-ai-video", f"No jobId in response: {data}")
        return str(external_id)

    async def check_status(
        self, external_id: str, metadata: Optional[dict] = None
    ) -> StageStatus:
        body = {"jobId": external_id, **(metadata or {})}
        data = await self._invoke("check-ai-video-status", body)
        return StageStatus(
            completed=bool(data.get("completed")),
            result_url=data.get("videoUrl"),
            status_text=str(data.get("status", "")),
        )


class EdgeCompositor(EdgeFunctionClient, CompositingStage):
    async def start(
        self,
        avatar_video_url: str,
        supporting_media_url: Optional[str],
        job_id: str,
    ) -> str:
        data = await self._invoke("create-final-video", {
            "aiVideoUrl": avatar_video_url,
            "supportingVideo": supporting_media_url,
            "processId": job_id,
        })
        render_id = data.get("renderId")
        if not render_id:
            raise StageError("create-final-video", f"No renderId in response: {data}")
        return str(render_id)

    async def check_status(
        self, external_id: str, metadata: Optional[dict] = None
    ) -> StageStatus:
        # metadata lets the service catalogue the finished video
        body = {"renderId": external_id, **(metadata or {})}
        data = await self._invoke("check-final-video-status", body)
        return StageStatus(
            completed=bool(data.get("completed")),
            result_url=data.get("url"),
            status_text=str(data.get("status", "")),
        )


class EdgeCleanup(EdgeFunctionClient, CleanupService):
    async def delete(self, urls: List[str], job_id: str) -> None:
        await self._invoke("cleanup-files", {"filePaths": urls, "processId": job_id})
        logger.info(f"[{job_id}] Cleaned up {len(urls)} temporary file(s)")
