"""Model catalog and credit pricing.

Maps every requestable model to the provider that serves it, the provider
endpoint, and its base credit cost.  Prices are always computed here; a
client never supplies one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from genpipe.models.generation import GENERATION_KINDS

DEFAULT_CREDITS = {
    "image": 5,
    "video": 15,
    "music": 10,
    "text": 2,
}

QUALITY_MULTIPLIERS = {
    "480p": 0.8,
    "720p": 1.0,
    "1080p": 1.5,
}


class InvalidSpec(Exception):
    """Raised when a generation request cannot be priced or routed."""


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelDefinition:
    """Static routing and pricing data for one requestable model."""

    name: str
    kind: str
    provider: str
    endpoint: str
    credits: int | None = None
    status_endpoint: str | None = None
    provider_model: str | None = None
    image_endpoint: str | None = None


@dataclass(frozen=True)
class JobSpec:
    """A validated, priced generation request handed to a provider adapter."""

    kind: str
    model: ModelDefinition
    prompt: str
    parameters: dict[str, Any] = field(default_factory=dict)
    credit_cost: int = 0

    @property
    def endpoint(self) -> str:
        """Image-to-video models switch endpoints when a source image is given."""
        if self.model.image_endpoint and self.parameters.get("image_url"):
            return self.model.image_endpoint
        return self.model.endpoint


class GenerationRequest(BaseModel):
    kind: str = Field(..., min_length=1, max_length=10)
    model: str = Field(..., min_length=1, max_length=100)
    prompt: str = Field(..., min_length=1, max_length=4000)
    parameters: dict[str, Any] = Field(default_factory=dict)
    quality: str | None = Field(None, max_length=10)
    idempotency_key: str | None = Field(None, max_length=255)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

_KIE_JOBS = "/api/v1/jobs/createTask"
_KIE_JOBS_STATUS = "/api/v1/jobs/recordInfo"

MODELS: dict[str, ModelDefinition] = {
    m.name: m
    for m in (
        # Kie image
        ModelDefinition("kie-4o-image", "image", "kie", "/api/v1/gpt4o-image/generate", 3,
                        status_endpoint="/api/v1/gpt4o-image/record-info"),
        ModelDefinition("kie-flux-kontext-pro", "image", "kie", "/api/v1/flux/kontext/generate", 3,
                        status_endpoint="/api/v1/flux/kontext/record-info",
                        provider_model="flux-kontext-pro"),
        ModelDefinition("kie-midjourney", "image", "kie", "/api/v1/midjourney/generate", 5,
                        status_endpoint="/api/v1/midjourney/record-info"),
        ModelDefinition("kie-nano-banana", "image", "kie", _KIE_JOBS, 3,
                        status_endpoint=_KIE_JOBS_STATUS,
                        provider_model="google/nano-banana"),
        # Kie video
        ModelDefinition("kie-runway", "video", "kie", "/api/v1/runway/generate", 10,
                        status_endpoint="/api/v1/runway/record-info"),
        ModelDefinition("kie-veo31", "video", "kie", "/api/v1/veo/generate", 20,
                        status_endpoint="/api/v1/veo/record-info"),
        ModelDefinition("kie-sora2", "video", "kie", _KIE_JOBS, 15,
                        status_endpoint=_KIE_JOBS_STATUS,
                        provider_model="sora-2-text-to-video"),
        ModelDefinition("kie-kling", "video", "kie", _KIE_JOBS, 15,
                        status_endpoint=_KIE_JOBS_STATUS,
                        provider_model="kling-2.6/text-to-video"),
        # Kie music
        ModelDefinition("kie-music-v4", "music", "kie", "/api/v1/generate", 8,
                        status_endpoint="/api/v1/generate/record-info",
                        provider_model="V4"),
        ModelDefinition("kie-music-v3.5", "music", "kie", "/api/v1/generate", 6,
                        status_endpoint="/api/v1/generate/record-info",
                        provider_model="V3_5"),
        # Fal image
        ModelDefinition("flux-1.1-pro", "image", "fal", "fal-ai/flux-pro/v1.1", 6),
        ModelDefinition("flux-dev", "image", "fal", "fal-ai/flux/dev", 4),
        ModelDefinition("flux-schnell", "image", "fal", "fal-ai/flux/schnell", 3),
        ModelDefinition("ideogram-v2", "image", "fal", "fal-ai/ideogram/v2", 8),
        ModelDefinition("recraft-v3", "image", "fal", "fal-ai/recraft-v3", 6),
        # Fal video
        ModelDefinition("wan-2.6", "video", "fal", "fal-ai/wan/v2.6/text-to-video", 20,
                        image_endpoint="fal-ai/wan/v2.6/image-to-video"),
        ModelDefinition("kling-2.6", "video", "fal", "fal-ai/kling-video/v2.6/pro/text-to-video", 35,
                        image_endpoint="fal-ai/kling-video/v2.6/pro/image-to-video"),
        ModelDefinition("veo-3-fast", "video", "fal", "fal-ai/veo3/fast", 30,
                        image_endpoint="fal-ai/veo3/fast/image-to-video"),
        ModelDefinition("hailuo-02", "video", "fal", "fal-ai/minimax/hailuo-02/standard/text-to-video", 25,
                        image_endpoint="fal-ai/minimax/hailuo-02/standard/image-to-video"),
        # Fal music
        ModelDefinition("stable-audio", "music", "fal", "fal-ai/stable-audio", 10),
        ModelDefinition("lyria2", "music", "fal", "fal-ai/lyria2", 15),
        ModelDefinition("cassetteai", "music", "fal", "cassetteai/music-generator", 12),
        # Fal text
        ModelDefinition("any-llm", "text", "fal", "fal-ai/any-llm", None,
                        provider_model="google/gemini-flash-1.5"),
    )
}


# ---------------------------------------------------------------------------
# Pricing / validation
# ---------------------------------------------------------------------------

def get_model_cost(model: ModelDefinition, quality: str | None = None) -> int:
    """Return the credit cost for *model* at *quality*.

    Models without an explicit price fall back to the per-kind default.
    """
    base = model.credits if model.credits is not None else DEFAULT_CREDITS[model.kind]
    multiplier = QUALITY_MULTIPLIERS.get(quality, 1.0) if quality else 1.0
    return max(1, round(base * multiplier))


def build_job_spec(request: GenerationRequest) -> JobSpec:
    """Validate *request* against the catalog and price it.

    Raises InvalidSpec for unknown kinds, unknown models, kind/model
    mismatches and unsupported quality settings.
    """
    if request.kind not in GENERATION_KINDS:
        raise InvalidSpec(f"Unknown generation kind: {request.kind}")

    model = MODELS.get(request.model)
    if model is None:
        raise InvalidSpec(f"Unknown model: {request.model}")
    if model.kind != request.kind:
        raise InvalidSpec(f"Model {model.name} produces {model.kind}, not {request.kind}")
    if request.quality is not None and request.quality not in QUALITY_MULTIPLIERS:
        raise InvalidSpec(f"Unsupported quality: {request.quality}")

    prompt = request.prompt.strip()
    if not prompt:
        raise InvalidSpec("Prompt must not be blank")

    parameters = dict(request.parameters)
    if request.quality is not None:
        parameters.setdefault("resolution", request.quality)

    return JobSpec(
        kind=request.kind,
        model=model,
        prompt=prompt,
        parameters=parameters,
        credit_cost=get_model_cost(model, request.quality),
    )
