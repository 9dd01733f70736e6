"""Tests for the Fal queue adapter.

All HTTP calls go through ``httpx.MockTransport`` -- no network access.

Run with:
    ./venv/bin/python -m pytest tests/test_providers_fal.py -v
"""

from __future__ import annotations

import json

import httpx
import pytest

from conftest import image_spec
from genpipe.integrations.providers.base import (
    CallbackParseError,
    ProviderRef,
    ProviderTransientError,
    SubmissionError,
)
from genpipe.integrations.providers.fal import FalAdapter, base_path
from genpipe.services.catalog import GenerationRequest, build_job_spec


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Recorder:
    """MockTransport handler that replays canned responses by path."""

    def __init__(self, routes: dict[str, httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get(request.url.path)
        if response is None:
            return httpx.Response(404, json={"detail": "not found"})
        return response


def _adapter(routes, callback_url=None) -> tuple[FalAdapter, Recorder]:
    recorder = Recorder(routes)
    adapter = FalAdapter(
        api_key="fal-secret",
        base_url="https://queue.test",
        callback_url=callback_url,
        transport=httpx.MockTransport(recorder),
    )
    return adapter, recorder


def _ref(model="flux-dev", task_id="req-1") -> ProviderRef:
    return ProviderRef(provider="fal", task_id=task_id, model=model)


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------

def test_base_path_strips_versioned_subpaths():
    assert base_path("fal-ai/flux/dev") == "fal-ai/flux"
    assert base_path("fal-ai/kling-video/v2.6/pro/text-to-video") == "fal-ai/kling-video"
    assert base_path("cassetteai/music-generator") == "cassetteai/music-generator"


@pytest.mark.asyncio
async def test_submit_returns_request_id():
    adapter, recorder = _adapter({
        "/fal-ai/flux/dev": httpx.Response(200, json={"request_id": "req-123"}),
    })

    ref = await adapter.submit(image_spec(seed=7))

    assert ref == ProviderRef(provider="fal", task_id="req-123", model="flux-dev")
    sent = recorder.requests[0]
    assert sent.method == "POST"
    assert sent.headers["Authorization"] == "Key fal-secret"
    assert json.loads(sent.content) == {"prompt": "a red fox in snow", "seed": 7}
    assert "fal_webhook" not in sent.url.params


@pytest.mark.asyncio
async def test_submit_passes_webhook_and_provider_model():
    spec = build_job_spec(GenerationRequest(kind="text", model="any-llm", prompt="write a haiku"))
    adapter, recorder = _adapter(
        {"/fal-ai/any-llm": httpx.Response(200, json={"request_id": "req-9"})},
        callback_url="https://api.example.com/api/v1/callbacks/fal?token=t",
    )

    await adapter.submit(spec)

    sent = recorder.requests[0]
    assert sent.url.params["fal_webhook"] == "https://api.example.com/api/v1/callbacks/fal?token=t"
    assert json.loads(sent.content)["model"] == "google/gemini-flash-1.5"


@pytest.mark.asyncio
async def test_submit_uses_image_endpoint_when_source_image_given():
    spec = build_job_spec(GenerationRequest(
        kind="video", model="wan-2.6", prompt="make it move",
        parameters={"image_url": "https://cdn/still.png"},
    ))
    adapter, recorder = _adapter({
        "/fal-ai/wan/v2.6/image-to-video": httpx.Response(200, json={"request_id": "req-v"}),
    })

    ref = await adapter.submit(spec)

    assert ref.task_id == "req-v"
    assert recorder.requests[0].url.path == "/fal-ai/wan/v2.6/image-to-video"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(422, json={"detail": "prompt rejected"}),
        httpx.Response(500, text="boom"),
        httpx.Response(200, json={"status": "IN_QUEUE"}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_submit_errors(response):
    adapter, _ = _adapter({"/fal-ai/flux/dev": response})
    with pytest.raises(SubmissionError):
        await adapter.submit(image_spec())


@pytest.mark.asyncio
async def test_submit_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    adapter = FalAdapter(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(SubmissionError):
        await adapter.submit(image_spec())


# ---------------------------------------------------------------------------
# Poll
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("fal_status", ["IN_QUEUE", "IN_PROGRESS"])
async def test_poll_running(fal_status):
    adapter, recorder = _adapter({
        "/fal-ai/flux/requests/req-1/status": httpx.Response(200, json={"status": fal_status}),
    })

    result = await adapter.poll(_ref())

    assert result.status == "running"
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_poll_completed_image_uses_output_as_thumbnail():
    adapter, recorder = _adapter({
        "/fal-ai/flux/requests/req-1/status": httpx.Response(200, json={"status": "COMPLETED"}),
        "/fal-ai/flux/requests/req-1": httpx.Response(
            200, json={"images": [{"url": "https://fal.media/a.png"}]},
        ),
    })

    result = await adapter.poll(_ref())

    assert result.status == "completed"
    assert result.output == "https://fal.media/a.png"
    assert result.thumbnail_url == "https://fal.media/a.png"
    assert [r.url.path for r in recorder.requests] == [
        "/fal-ai/flux/requests/req-1/status",
        "/fal-ai/flux/requests/req-1",
    ]


@pytest.mark.asyncio
async def test_poll_completed_video_and_text():
    adapter, _ = _adapter({
        "/fal-ai/wan/requests/req-v/status": httpx.Response(200, json={"status": "COMPLETED"}),
        "/fal-ai/wan/requests/req-v": httpx.Response(
            200, json={"video": {"url": "https://fal.media/v.mp4"}, "thumbnail": {"url": "https://fal.media/t.jpg"}},
        ),
        "/fal-ai/any-llm/requests/req-t/status": httpx.Response(200, json={"status": "COMPLETED"}),
        "/fal-ai/any-llm/requests/req-t": httpx.Response(200, json={"output": "Autumn moonlight"}),
    })

    video = await adapter.poll(_ref("wan-2.6", "req-v"))
    text = await adapter.poll(_ref("any-llm", "req-t"))

    assert (video.output, video.thumbnail_url) == ("https://fal.media/v.mp4", "https://fal.media/t.jpg")
    assert text.output == "Autumn moonlight"
    assert text.thumbnail_url is None


@pytest.mark.asyncio
async def test_poll_completed_without_output_is_running():
    adapter, _ = _adapter({
        "/fal-ai/flux/requests/req-1/status": httpx.Response(200, json={"status": "COMPLETED"}),
        "/fal-ai/flux/requests/req-1": httpx.Response(200, json={"images": []}),
    })

    assert (await adapter.poll(_ref())).status == "running"


@pytest.mark.asyncio
async def test_poll_failed_status():
    adapter, _ = _adapter({
        "/fal-ai/flux/requests/req-1/status": httpx.Response(
            200, json={"status": "FAILED", "error": "safety checker"},
        ),
    })

    result = await adapter.poll(_ref())

    assert result.status == "failed"
    assert result.error == "safety checker"


@pytest.mark.asyncio
async def test_poll_permanent_http_error_fails():
    adapter, _ = _adapter({})  # every path 404s
    result = await adapter.poll(_ref())
    assert result.status == "failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 500, 503])
async def test_poll_transient_http_error_raises(status_code):
    adapter, _ = _adapter({
        "/fal-ai/flux/requests/req-1/status": httpx.Response(status_code, text="busy"),
    })
    with pytest.raises(ProviderTransientError):
        await adapter.poll(_ref())


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_body,result_body",
    [
        (["IN_QUEUE"], None),
        ("COMPLETED", None),
        ({"status": "COMPLETED"}, [{"url": "https://fal.media/a.png"}]),
        ({"status": "COMPLETED"}, "not json"),
    ],
)
async def test_poll_non_object_body_is_transient(status_body, result_body):
    routes = {
        "/fal-ai/flux/requests/req-1/status": (
            httpx.Response(200, json=status_body)
            if not isinstance(status_body, str)
            else httpx.Response(200, text=status_body)
        ),
    }
    if result_body is not None:
        routes["/fal-ai/flux/requests/req-1"] = (
            httpx.Response(200, json=result_body)
            if not isinstance(result_body, str)
            else httpx.Response(200, text=result_body)
        )
    adapter, _ = _adapter(routes)

    with pytest.raises(ProviderTransientError):
        await adapter.poll(_ref())


@pytest.mark.asyncio
async def test_poll_network_error_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    adapter = FalAdapter(api_key="k", transport=httpx.MockTransport(handler))
    with pytest.raises(ProviderTransientError):
        await adapter.poll(_ref())


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------

def test_parse_callback_ok():
    adapter = FalAdapter(api_key="k")
    parsed = adapter.parse_callback({
        "request_id": "req-1",
        "status": "OK",
        "payload": {"video": {"url": "https://fal.media/v.mp4"}},
    })
    assert parsed.task_id == "req-1"
    assert parsed.result.status == "completed"
    assert parsed.result.output == "https://fal.media/v.mp4"


def test_parse_callback_error():
    parsed = FalAdapter(api_key="k").parse_callback(
        {"request_id": "req-2", "status": "ERROR", "error": "invalid image"},
    )
    assert parsed.result.status == "failed"
    assert parsed.result.error == "invalid image"


@pytest.mark.parametrize(
    "payload",
    [[], {"status": "OK"}, {"request_id": "req-3", "status": "MAYBE"}],
)
def test_parse_callback_rejects_malformed(payload):
    with pytest.raises(CallbackParseError):
        FalAdapter(api_key="k").parse_callback(payload)
