"""Async client for the Fal queue API.

Jobs are submitted to a model endpoint (``fal-ai/flux/dev``,
``fal-ai/wan/v2.6/image-to-video`` ...) but status checks and result fetches
must go through the model's base path -- its first two segments -- because
versioned sub-paths 404 on the ``/requests`` routes.
"""

from __future__ import annotations

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
    first_url,
)
from genpipe.services.catalog import MODELS, JobSpec

log = structlog.get_logger()

OUTPUT_PATHS: list[tuple[str | int, ...]] = [
    ("video", "url"),
    ("output", "video", "url"),
    ("result", "video", "url"),
    ("data", "video", "url"),
    ("video_url",),
    ("output_url",),
    ("url",),
    ("video",),
    ("images", 0, "url"),
    ("image", "url"),
    ("audio_file", "url"),
    ("audio", 0, "url"),
    ("audio", "url"),
    ("audio_url",),
    # any-llm returns generated text directly
    ("output",),
]

THUMBNAIL_PATHS: list[tuple[str | int, ...]] = [
    ("thumbnail", "url"),
    ("video", "thumbnail_url"),
    ("output", "thumbnail_url"),
]


def base_path(endpoint: str) -> str:
    """Return the queue base path for a Fal endpoint."""
    return "/".join(endpoint.split("/")[:2])


class FalAdapter:
    """Provider adapter for https://queue.fal.run."""

    name = "fal"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://queue.fal.run",
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
        """Queue *spec* and return its Fal request id.

        Raises:
            SubmissionError: when Fal rejects the job, is unreachable, or
                answers without a request id.
        """
        payload: dict[str, Any] = {"prompt": spec.prompt, **spec.parameters}
        if spec.model.provider_model:
            payload.setdefault("model", spec.model.provider_model)
        params = {"fal_webhook": self.callback_url} if self.callback_url else None

        try:
            async with self._client() as client:
                response = await client.post(f"/{spec.endpoint}", json=payload, params=params)
        except httpx.HTTPError as exc:
            raise SubmissionError(f"Cannot reach Fal at {self.base_url}: {exc}") from exc

        if response.is_error:
            raise SubmissionError(f"Fal error: {response.status_code} - {response.text}")

        request_id = _json_or_none(response)
        request_id = request_id.get("request_id") if isinstance(request_id, dict) else None
        if not request_id:
            raise SubmissionError(f"No request_id in Fal response: {response.text}")

        log.info("fal_job_submitted", model=spec.model.name, task_id=request_id)
        return ProviderRef(provider=self.name, task_id=str(request_id), model=spec.model.name)

    async def poll(self, ref: ProviderRef) -> PollResult:
        """Check the queue status and, once complete, fetch the result.

        Raises:
            ProviderTransientError: on network errors, 429 and 5xx.
        """
        path = f"/{base_path(self._endpoint_for(ref))}/requests/{ref.task_id}"

        try:
            async with self._client() as client:
                status_resp = await client.get(f"{path}/status")
                status_code = self._check_status(status_resp, ref, "status")
                if status_code is not None:
                    return status_code

                data = _json_or_none(status_resp)
                if not isinstance(data, dict):
                    raise ProviderTransientError("Fal status response was not a JSON object")
                fal_status = data.get("status")
                if fal_status == "FAILED":
                    return PollResult.failed(data.get("error") or "Generation failed")
                if fal_status != "COMPLETED":
                    return PollResult.running()

                result_resp = await client.get(path)
        except httpx.HTTPError as exc:
            raise ProviderTransientError(f"Fal status check failed: {exc}") from exc

        failed = self._check_status(result_resp, ref, "result")
        if failed is not None:
            return failed
        result = _json_or_none(result_resp)
        if not isinstance(result, dict):
            raise ProviderTransientError("Fal result response was not a JSON object")
        return self._parse_result(result, ref.model)

    def parse_callback(self, payload: Any) -> CallbackResult:
        """Parse a Fal webhook body: ``{request_id, status, payload, error}``."""
        if not isinstance(payload, dict) or not payload.get("request_id"):
            raise CallbackParseError("Fal callback missing request_id")

        task_id = str(payload["request_id"])
        status = payload.get("status")
        if status == "OK":
            body = payload.get("payload")
            model = payload.get("model")
            return CallbackResult(task_id, self._parse_result(body, model))
        if status == "ERROR":
            error = payload.get("error") or "Generation failed"
            return CallbackResult(task_id, PollResult.failed(str(error)))
        raise CallbackParseError(f"Unrecognised Fal callback status: {status!r}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Key {self.api_key}"},
            timeout=httpx.Timeout(self.timeout),
            transport=self._transport,
        )

    @staticmethod
    def _endpoint_for(ref: ProviderRef) -> str:
        model = MODELS.get(ref.model)
        if model is None:
            raise ProviderTransientError(f"Unknown Fal model {ref.model!r}")
        return model.endpoint

    @staticmethod
    def _check_status(response: httpx.Response, ref: ProviderRef, stage: str) -> PollResult | None:
        """Map an HTTP error to a terminal failure or a transient error."""
        if not response.is_error:
            return None
        log.warning(
            "fal_poll_http_error",
            task_id=ref.task_id, stage=stage, status_code=response.status_code,
        )
        if response.status_code in PERMANENT_HTTP_STATUSES:
            return PollResult.failed(
                f"Fal {stage} fetch failed: HTTP {response.status_code}"
            )
        raise ProviderTransientError(
            f"Fal {stage} fetch returned HTTP {response.status_code}"
        )

    @staticmethod
    def _parse_result(data: Any, model_name: str | None) -> PollResult:
        """Extract the output URL; a result with no output is still running."""
        output = first_url(data, OUTPUT_PATHS)
        if output is None:
            log.warning("fal_completed_without_output", model=model_name)
            return PollResult.running()

        thumbnail = first_url(data, THUMBNAIL_PATHS)
        model = MODELS.get(model_name) if model_name else None
        if thumbnail is None and model is not None and model.kind == "image":
            thumbnail = output
        return PollResult.completed(output, thumbnail)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
