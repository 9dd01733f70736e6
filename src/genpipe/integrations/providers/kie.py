"""Async client for the Kie API.

Kie exposes one submit/status endpoint pair per model family, plus the
generic ``/api/v1/jobs`` pair used by market models.  Status payloads vary
by family, so completion is detected from several indicators and the output
URL is searched for across every known response shape.
"""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

import httpx
import structlog

from genpipe.integrations.providers.base import (
    PERMANENT_HTTP_STATUSES,
    CallbackParseError,
    CallbackResult,
    PollResult,
    ProviderRef,
    ProviderTransientError,
    SubmissionError,
    dig,
    first_url,
)
from genpipe.services.catalog import MODELS, JobSpec

log = structlog.get_logger()

JOBS_ENDPOINT = "/api/v1/jobs/createTask"
JOBS_STATUS_ENDPOINT = "/api/v1/jobs/recordInfo"

FAILED_STATUSES = frozenset({"failed", "fail", "error", "create_task_failed", "generate_failed"})
SUCCESS_STATUSES = frozenset({"completed", "success"})

RESULT_JSON_KEYS = ("resultUrl", "imageUrl", "videoUrl", "audioUrl")

OUTPUT_PATHS: list[tuple[str | int, ...]] = [
    ("response", "sunoData", 0, "audioUrl"),
    ("response", "sunoData", 0, "sourceAudioUrl"),
    ("response", "resultImageUrl"),
    ("response", "resultUrl"),
    ("response", "imageUrl"),
    ("response", "image_url"),
    ("response", "audioUrl"),
    ("response", "audio_url"),
    ("response", "videoUrl"),
    ("response", "video_url"),
    ("response", "resultUrls", 0),
    ("output_url",),
    ("image_url",),
    ("audio_url",),
    ("video_url",),
    ("url",),
    ("resultImageUrl",),
    ("resultUrl",),
    ("resultUrls", 0),
    ("info", "resultUrls", 0),
    ("info", "resultImageUrl"),
    ("videoInfo", "videoUrl"),
    # music callbacks carry the track list under data
    ("data", 0, "audio_url"),
    ("data", 0, "audioUrl"),
]

THUMBNAIL_PATHS: list[tuple[str | int, ...]] = [
    ("response", "sunoData", 0, "imageUrl"),
    ("videoInfo", "imageUrl"),
    ("data", 0, "image_url"),
]


class KieAdapter:
    """Provider adapter for https://api.kie.ai."""

    name = "kie"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.kie.ai",
        callback_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, spec: JobSpec) -> ProviderRef:
        """Create a Kie task for *spec* and return its task id.

        Raises:
            SubmissionError: when Kie rejects the task, is unreachable, or
                answers without a task id.
        """
        body = self._build_body(spec)
        try:
            async with self._client() as client:
                response = await client.post(spec.endpoint, json=body)
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Cannot reach Kie at {self.base_url}: {exc}") from exc

        if response.is_error:
            raise SubmissionError(f"Kie error: {response.status_code} - {response.text}")

        data = _json_or_none(response)
        if not isinstance(data, dict):
            raise SubmissionError(f"Malformed Kie response: {response.text}")
        code = data.get("code")
        if code is not None and code != 200:
            raise SubmissionError(f"Kie rejected task: {code} - {data.get('msg')}")

        task_id = (
            dig(data, "data", "taskId")
            or data.get("taskId")
            or dig(data, "data", "task_id")
            or data.get("task_id")
        )
        if not task_id:
            raise SubmissionError(f"No taskId in Kie response: {response.text}")

        log.info("kie_job_submitted", model=spec.model.name, task_id=task_id)
        return ProviderRef(provider=self.name, task_id=str(task_id), model=spec.model.name)

    async def poll(self, ref: ProviderRef) -> PollResult:
        """Fetch the task record from the model's status endpoint.

        Raises:
            ProviderTransientError: on network errors, 429 and 5xx.
        """
        model = MODELS.get(ref.model)
        status_endpoint = (model.status_endpoint if model else None) or JOBS_STATUS_ENDPOINT

        try:
            async with self._client() as client:
                response = await client.get(status_endpoint, params={"taskId": ref.task_id})
        except httpx.HTTPError as exc:
            raise ProviderTransientError(f"Kie status check failed: {exc}") from exc

        if response.is_error:
            log.warning(
                "kie_poll_http_error",
                task_id=ref.task_id, status_code=response.status_code,
            )
            if response.status_code in PERMANENT_HTTP_STATUSES:
                return PollResult.failed(f"Kie status check failed: HTTP {response.status_code}")
            raise ProviderTransientError(f"Kie status returned HTTP {response.status_code}")

        data = _json_or_none(response)
        if not isinstance(data, dict):
            raise ProviderTransientError("Kie status response was not JSON")
        result = self._interpret(data.get("data") or data, fallback_status=data.get("status"))
        if result.output and result.thumbnail_url is None and model is not None and model.kind == "image":
            return replace(result, thumbnail_url=result.output)
        return result

    def parse_callback(self, payload: Any) -> CallbackResult:
        """Parse a Kie webhook body: ``{code, msg, data: {taskId, ...}}``."""
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise CallbackParseError("Kie callback missing data object")

        data = payload["data"]
        task_id = data.get("taskId") or data.get("task_id")
        if not task_id:
            raise CallbackParseError("Kie callback missing taskId")

        code = payload.get("code")
        if code is not None and code != 200:
            error = payload.get("msg") or f"Kie callback code {code}"
            return CallbackResult(str(task_id), PollResult.failed(str(error)))
        return CallbackResult(str(task_id), self._interpret(data))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    def _build_body(self, spec: JobSpec) -> dict[str, Any]:
        """Build the request body; market models nest their input."""
        if spec.endpoint == JOBS_ENDPOINT:
            body: dict[str, Any] = {
                "model": spec.model.provider_model,
                "input": {"prompt": spec.prompt, **spec.parameters},
            }
        else:
            body = {"prompt": spec.prompt, **spec.parameters}
            if spec.model.provider_model:
                body["model"] = spec.model.provider_model
            if spec.kind == "music":
                # music requires customMode to be explicit
                body.setdefault("instrumental", False)
                body.setdefault("customMode", bool(body.get("lyrics")) and not body["instrumental"])
        if self.callback_url:
            body["callBackUrl"] = self.callback_url
        return body

    @staticmethod
    def _interpret(data: dict[str, Any], fallback_status: Any = None) -> PollResult:
        """Apply Kie's completion indicators to a task record."""
        status = str(data.get("status") or data.get("state") or fallback_status or "").lower()
        error_code = data.get("errorCode") or data.get("failCode")
        error_message = data.get("errorMessage") or data.get("failMsg")
        callback_type = data.get("callbackType")

        if error_code or error_message or status in FAILED_STATUSES or callback_type == "error":
            return PollResult.failed(str(error_message or error_code or "Generation failed"))

        # music callbacks fire for lyrics and the first track before completion
        if callback_type in ("text", "first"):
            return PollResult.running()

        finished = (
            data.get("successFlag") == 1
            or bool(data.get("completeTime"))
            or status in SUCCESS_STATUSES
            or callback_type == "complete"
        )
        output = _extract_output(data)
        if output is None:
            if finished:
                log.warning("kie_completed_without_output", task_id=data.get("taskId"))
            return PollResult.running()
        if not finished and status:
            return PollResult.running()
        return PollResult.completed(
            output, first_url(data, THUMBNAIL_PATHS), _extra_tracks(data),
        )


def _extract_output(data: dict[str, Any]) -> str | None:
    """Find the output URL in any known Kie response shape."""
    raw = data.get("resultJson")
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            urls = parsed.get("resultUrls")
            if isinstance(urls, list) and urls and isinstance(urls[0], str):
                return urls[0]
            for key in RESULT_JSON_KEYS:
                if isinstance(parsed.get(key), str) and parsed[key]:
                    return parsed[key]
    return first_url(data, OUTPUT_PATHS)


def _extra_tracks(data: dict[str, Any]) -> tuple[str, ...]:
    """Audio URLs of every music track after the first."""
    tracks = dig(data, "response", "sunoData")
    if not isinstance(tracks, list):
        tracks = data.get("data") if isinstance(data.get("data"), list) else []
    urls = []
    for track in tracks[1:]:
        if not isinstance(track, dict):
            continue
        url = (
            track.get("audioUrl")
            or track.get("sourceAudioUrl")
            or track.get("audio_url")
            or track.get("source_audio_url")
        )
        if isinstance(url, str) and url:
            urls.append(url)
    return tuple(urls)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
