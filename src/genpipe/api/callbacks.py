"""Provider webhook endpoint."""

from __future__ import annotations

import hmac
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from genpipe.api.dependencies import get_orchestrator
from genpipe.config import settings
from genpipe.integrations.providers.base import CallbackParseError
from genpipe.integrations.providers.registry import UnknownProvider
from genpipe.services.generation_orchestrator import GenerationOrchestrator

log = structlog.get_logger()

router = APIRouter(prefix="/api/v1/callbacks", tags=["callbacks"])


@router.post("/{provider}")
async def provider_callback(
    provider: str,
    request: Request,
    token: str = Query(""),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Receive a provider's completion webhook.

    The callback URL handed to providers carries a shared token.  Requests
    without it are rejected, as is every request when no token is
    configured.  Callbacks for tasks we do not know about are acknowledged
    so the provider stops retrying.
    """
    if not settings.CALLBACK_TOKEN:
        raise HTTPException(status_code=401, detail="Callbacks are not enabled")
    if not hmac.compare_digest(token, settings.CALLBACK_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid callback token")

    raw = await request.body()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Callback body is not JSON")

    try:
        outcome = await orchestrator.handle_callback(provider, payload)
    except UnknownProvider:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    except CallbackParseError as exc:
        log.warning("callback_rejected", provider=provider, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc))

    return {"status": outcome}
