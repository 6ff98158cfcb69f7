"""Tests for the Supabase Edge Function stage clients."""

import asyncio
import json

import httpx
import pytest

from avatarflow.pipeline.edge_functions import (
    EdgeAvatarSynthesis,
    EdgeCleanup,
    EdgeCompositor,
    EdgeScriptGenerator,
)
from avatarflow.pipeline.errors import StageError
from avatarflow.pipeline.models import VoiceParams


def mock_functions(routes, seen=None):
    """MockTransport answering `/functions/v1/<name>` from `routes`."""

    def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")
        if seen is not None:
            seen.append((name, body, request.headers.get("Authorization")))
        answer = routes[name]
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json=answer)

    return httpx.MockTransport(handler)


def client_kwargs(transport):
    return {"base_url": "https://proj.supabase.co/", "api_key": "svc", "transport": transport}


def test_script_generator_returns_script_text():
    seen = []
    transport = mock_functions({"generate-script": {"scriptText": "Once upon a time"}}, seen)
    generator = EdgeScriptGenerator(**client_kwargs(transport))

    script = asyncio.run(generator.execute("dragons"))

    assert script == "Once upon a time"
    assert seen == [("generate-script", {"topic": "dragons"}, "Bearer svc")]


def test_script_generator_http_error_is_stage_error():
    transport = mock_functions({"generate-script": httpx.Response(500, text="boom")})
    generator = EdgeScriptGenerator(**client_kwargs(transport))

    with pytest.raises(StageError) as exc:
        asyncio.run(generator.execute("dragons"))
    assert "500" in str(exc.value)


def test_error_field_in_body_is_stage_error():
    transport = mock_functions({"generate-script": {"error": "quota exceeded"}})
    generator = EdgeScriptGenerator(**client_kwargs(transport))

    with pytest.raises(StageError, match="quota exceeded"):
        asyncio.run(generator.execute("dragons"))


def test_transport_failure_is_stage_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    generator = EdgeScriptGenerator(**client_kwargs(httpx.MockTransport(handler)))
    with pytest.raises(StageError, match="request failed"):
        asyncio.run(generator.execute("dragons"))


def test_avatar_synthesis_start_and_status():
    seen = []
    transport = mock_functions({
        "generate-ai-video": {"jobId": 991},
        "check-ai-video-status": {"completed": False, "status": "processing"},
    }, seen)
    synth = EdgeAvatarSynthesis(**client_kwargs(transport))
    voice = VoiceParams(voice_id="v1", voice_media_url="https://m/face.png", high_resolution=True)

    async def scenario():
        job = await synth.start("Hello world", voice, "proc-1")
        status = await synth.check_status(job, {"processId": "proc-1"})
        return job, status

    job, status = asyncio.run(scenario())

    assert job == "991"
    assert not status.completed
    assert status.status_text == "processing"
    assert seen[0][1] == {
        "script": "Hello world",
        "voiceId": "v1",
        "voiceMedia": "https://m/face.png",
        "highResolution": True,
        "processId": "proc-1",
    }
    assert seen[1][1] == {"jobId": "991", "processId": "proc-1"}


def test_avatar_synthesis_start_without_job_id_fails():
    transport = mock_functions({"generate-ai-video": {"ok": True}})
    synth = EdgeAvatarSynthesis(**client_kwargs(transport))

    with pytest.raises(StageError, match="No jobId"):
        asyncio.run(synth.start("s", VoiceParams(voice_id="v"), "p"))


def test_compositor_start_and_completed_status():
    seen = []
    transport = mock_functions({
        "create-final-video": {"renderId": "r-7"},
        "check-final-video-status": {"completed": True, "url": "https://cdn/final.mp4"},
    }, seen)
    compositor = EdgeCompositor(**client_kwargs(transport))

    async def scenario():
        render = await compositor.start("https://cdn/avatar.mp4", None, "proc-2")
        return render, await compositor.check_status(render, {"scriptText": "s"})

    render, status = asyncio.run(scenario())

    assert render == "r-7"
    assert status.completed
    assert status.result_url == "https://cdn/final.mp4"
    assert seen[0][1] == {
        "aiVideoUrl": "https://cdn/avatar.mp4",
        "supportingVideo": None,
        "processId": "proc-2",
    }
    assert seen[1][1] == {"renderId": "r-7", "scriptText": "s"}


def test_cleanup_posts_file_paths():
    seen = []
    transport = mock_functions({"cleanup-files": {"deleted": 2}}, seen)
    cleaner = EdgeCleanup(**client_kwargs(transport))

    asyncio.run(cleaner.delete(["https://s/a.mp4", "https://s/b.png"], "proc-3"))

    assert seen == [(
        "cleanup-files",
        {"filePaths": ["https://s/a.mp4", "https://s/b.png"], "processId": "proc-3"},
        "Bearer svc",
    )]
