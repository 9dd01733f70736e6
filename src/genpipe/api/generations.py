"""Generation pipeline API endpoints.

Provides endpoints for submitting, listing, monitoring and cancelling
generation jobs.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from genpipe.api.dependencies import CurrentUser, get_current_user, get_orchestrator
from genpipe.models import GenerationRecord
from genpipe.models.generation import STATE_COMPLETED, STATE_FAILED
from genpipe.services.catalog import GenerationRequest, InvalidSpec
from genpipe.services.generation_orchestrator import (
    AlreadyTerminal,
    GenerationListResponse,
    GenerationNotFound,
    GenerationOrchestrator,
    GenerationResponse,
    SubmitResponse,
)
from genpipe.services.ledger import InsufficientCredit
from genpipe.services.notifier import build_record_event, user_channel

router = APIRouter(prefix="/api/v1/generations", tags=["generations"])


# ---------------------------------------------------------------------------
# SSE stream helper
# ---------------------------------------------------------------------------

async def _sse_event_generator(
    redis,
    channel: str,
    request: Request,
    generation_id: str | None,
    load_record: Callable[[], Awaitable[GenerationRecord]] | None = None,
):
    """Yield SSE-formatted events from Redis pub/sub until disconnect.

    When *generation_id* is given, only that generation's events are sent
    and the stream ends at its terminal event.  *load_record* is read after
    subscribing; a record that is already terminal is sent straight away,
    since its event was published before this stream existed.
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    try:
        if load_record is not None:
            record = await load_record()
            if record.is_terminal:
                yield f"data: {json.dumps(build_record_event(record))}\n\n"
                return

        while not await request.is_disconnected():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message and message["type"] == "message":
                data = message["data"]
                event = _parse_event(data)
                if generation_id is not None and event.get("generation_id") != generation_id:
                    continue
                yield f"data: {data}\n\n"
                if generation_id is not None and _is_terminal_event(event):
                    break
            else:
                yield ": keepalive\n\n"
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.close()


def _parse_event(data) -> dict:
    try:
        parsed = json.loads(data)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _is_terminal_event(event: dict) -> bool:
    """Return True if the SSE payload represents a terminal event."""
    return event.get("event") in (STATE_COMPLETED, STATE_FAILED)


# ---------------------------------------------------------------------------
# POST /api/v1/generations
# ---------------------------------------------------------------------------

@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def create_generation(
    body: GenerationRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Admit a generation job and start it in the background."""
    try:
        record = await orchestrator.submit(current_user.user_id, body)
    except InvalidSpec as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InsufficientCredit as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "message": "Insufficient credits",
                "required": exc.required,
                "available": exc.available,
            },
        )
    return SubmitResponse(
        generation_id=record.generation_id,
        state=record.state,
        credit_cost=record.credit_cost,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/generations
# ---------------------------------------------------------------------------

@router.get("", response_model=GenerationListResponse)
async def list_generations(
    state: str | None = Query(None, pattern="^(pending|processing|completed|failed)$"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Return the caller's generations, newest first."""
    records = await orchestrator.list_generations(current_user.user_id, state, limit, offset)
    return GenerationListResponse(
        items=[GenerationResponse.from_record(r) for r in records],
        limit=limit,
        offset=offset,
    )


# ---------------------------------------------------------------------------
# GET /api/v1/generations/events -- SSE stream of every generation
# ---------------------------------------------------------------------------

@router.get("/events")
async def user_events(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
):
    """Stream terminal events for all of the caller's generations."""
    return _stream(request, current_user.user_id, None)


# ---------------------------------------------------------------------------
# GET /api/v1/generations/{generation_id}
# ---------------------------------------------------------------------------

@router.get("/{generation_id}", response_model=GenerationResponse)
async def get_generation(
    generation_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Return the current state of a generation."""
    try:
        record = await orchestrator.get_status(generation_id, current_user.user_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    return GenerationResponse.from_record(record)


# ---------------------------------------------------------------------------
# POST /api/v1/generations/{generation_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{generation_id}/cancel",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=GenerationResponse,
)
async def cancel_generation(
    generation_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Request cancellation. Advisory: a provider success is still honored."""
    try:
        record = await orchestrator.cancel(generation_id, current_user.user_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    except AlreadyTerminal as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return GenerationResponse.from_record(record)


# ---------------------------------------------------------------------------
# GET /api/v1/generations/{generation_id}/events -- SSE stream
# ---------------------------------------------------------------------------

@router.get("/{generation_id}/events")
async def generation_events(
    generation_id: uuid.UUID,
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Stream one generation's terminal event via Server-Sent Events (SSE)."""
    try:
        await orchestrator.get_status(generation_id, current_user.user_id)
    except GenerationNotFound:
        raise HTTPException(status_code=404, detail="Generation not found")
    return _stream(
        request,
        current_user.user_id,
        str(generation_id),
        lambda: orchestrator.get_status(generation_id, current_user.user_id),
    )


def _stream(
    request: Request,
    user_id: uuid.UUID,
    generation_id: str | None,
    load_record: Callable[[], Awaitable[GenerationRecord]] | None = None,
) -> StreamingResponse:
    redis = request.app.state.redis
    return StreamingResponse(
        _sse_event_generator(redis, user_channel(user_id), request, generation_id, load_record),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
