"""Tests for model pricing and request validation."""

from __future__ import annotations

import pytest

from genpipe.integrations.providers.registry import build_registry, callback_url_for
from genpipe.config import Settings
from genpipe.services.catalog import (
    MODELS,
    GenerationRequest,
    InvalidSpec,
    build_job_spec,
    get_model_cost,
)


@pytest.mark.parametrize(
    "model,quality,expected",
    [
        ("flux-dev", None, 4),
        ("flux-dev", "480p", 3),
        ("flux-dev", "1080p", 6),
        ("wan-2.6", "720p", 20),
        ("any-llm", None, 2),
        ("flux-schnell", "480p", 2),
    ],
)
def test_model_cost(model, quality, expected):
    assert get_model_cost(MODELS[model], quality) == expected


def test_every_model_routes_to_a_known_provider():
    registry = build_registry(Settings())
    for model in MODELS.values():
        assert registry.get(model.provider).name == model.provider


def test_job_spec_strips_prompt_and_records_resolution():
    spec = build_job_spec(GenerationRequest(
        kind="video", model="kling-2.6", prompt="  surfing dog  ", quality="480p",
        parameters={"duration": 5},
    ))
    assert spec.prompt == "surfing dog"
    assert spec.parameters == {"duration": 5, "resolution": "480p"}
    assert spec.credit_cost == 28
    assert spec.endpoint == "fal-ai/kling-video/v2.6/pro/text-to-video"


def test_image_to_video_switches_endpoint():
    spec = build_job_spec(GenerationRequest(
        kind="video", model="kling-2.6", prompt="go", parameters={"image_url": "https://cdn/a.png"},
    ))
    assert spec.endpoint == "fal-ai/kling-video/v2.6/pro/image-to-video"


@pytest.mark.parametrize(
    "kind,model,quality",
    [("image", "nope", None), ("3d", "flux-dev", None), ("music", "flux-dev", None), ("image", "flux-dev", "4k")],
)
def test_invalid_specs(kind, model, quality):
    with pytest.raises(InvalidSpec):
        build_job_spec(GenerationRequest(kind=kind, model=model, prompt="x", quality=quality))


def test_callback_url():
    assert callback_url_for(Settings(PUBLIC_BASE_URL=""), "fal") is None
    assert callback_url_for(Settings(PUBLIC_BASE_URL="https://api.example.com/", CALLBACK_TOKEN=""), "kie") is None
    assert callback_url_for(Settings(PUBLIC_BASE_URL="https://api.example.com/", CALLBACK_TOKEN="t"), "kie") == (
        "https://api.example.com/api/v1/callbacks/kie?token=t"
    )
    assert callback_url_for(Settings(PUBLIC_BASE_URL="https://api.example.com", CALLBACK_TOKEN="t"), "fal") == (
        "https://api.example.com/api/v1/callbacks/fal?token=t"
    )
