"""Generation orchestrator -- state machine for provider-backed generation jobs.

State machine: PENDING -> PROCESSING -> COMPLETED | FAILED

Responsibilities:
1. Admission: price the request, check entitlement, reserve credits and
   persist a PENDING record in one transaction
2. Dispatch: submit to the provider and move PENDING -> PROCESSING; a
   rejected submission goes straight to FAILED and the credits are released
3. Observation: poll with bounded exponential backoff; provider callbacks
   feed the same path via ``handle_callback``
4. Settlement: commit or release the reservation only when this caller's
   terminal transition applied, inside the same transaction
5. Notify after commit, fire-and-forget

Anything still running when the poll loop gives up is picked up by the
reconciliation sweeper.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpipe.config import Settings
from genpipe.integrations.providers.base import (
    COMPLETED,
    FAILED,
    PollResult,
    ProviderRef,
    ProviderTransientError,
    SubmissionError,
)
from genpipe.integrations.providers.registry import ProviderRegistry, UnknownProvider
from genpipe.models import GenerationRecord
from genpipe.models.generation import (
    REASON_PROVIDER_FAILED,
    REASON_SUBMISSION_FAILED,
    STATE_COMPLETED,
    STATE_FAILED,
)
from genpipe.services import ledger
from genpipe.services.audit_logger import AuditLogger
from genpipe.services.catalog import GenerationRequest, InvalidSpec, JobSpec, build_job_spec
from genpipe.services.entitlement_service import has_unlimited_entitlement
from genpipe.services.generation_store import AppliedTransition, GenerationStore
from genpipe.services.notifier import Notifier

log = structlog.get_logger()
audit = AuditLogger()


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GenerationNotFound(Exception):
    """Raised when a generation does not exist or belongs to another user."""


class AlreadyTerminal(Exception):
    """Raised when cancelling a generation that has already finished."""


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class SubmitResponse(BaseModel):
    generation_id: uuid.UUID
    state: str
    credit_cost: int


class GenerationResponse(BaseModel):
    generation_id: uuid.UUID
    kind: str
    model: str
    state: str
    prompt: str
    credit_cost: int
    output: str | None = None
    thumbnail_url: str | None = None
    failure_reason: str | None = None
    failure_message: str | None = None
    cancel_requested: bool = False
    parent_generation_id: uuid.UUID | None = None
    created_at: datetime
    terminal_at: datetime | None = None

    @classmethod
    def from_record(cls, record: GenerationRecord) -> GenerationResponse:
        return cls(
            generation_id=record.generation_id,
            kind=record.kind,
            model=record.model,
            state=record.state,
            prompt=record.prompt,
            credit_cost=record.credit_cost,
            output=record.output,
            thumbnail_url=record.thumbnail_url,
            failure_reason=record.failure_reason,
            failure_message=record.failure_message,
            cancel_requested=record.cancel_requested_at is not None,
            parent_generation_id=record.parent_generation_id,
            created_at=record.created_at,
            terminal_at=record.terminal_at,
        )


class GenerationListResponse(BaseModel):
    items: list[GenerationResponse]
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class GenerationOrchestrator:
    """Main state machine for generation jobs.

    Every phase opens its own session from *session_factory*, so the
    orchestrator can be shared by request handlers, background tasks and
    the sweeper.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        providers: ProviderRegistry,
        notifier: Notifier | None,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._providers = providers
        self._notifier = notifier
        self._settings = settings
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Phase 1 -- admission
    # ------------------------------------------------------------------

    async def submit(self, user_id: uuid.UUID, request: GenerationRequest) -> GenerationRecord:
        """Admit a request and start it in the background.

        Returns the new PENDING record, or the existing record when the
        idempotency key was already used.

        Raises:
            InvalidSpec: the request cannot be priced or routed.
            InsufficientCredit: the account cannot cover the cost.
        """
        spec = build_job_spec(request)
        try:
            self._providers.get(spec.model.provider)
        except UnknownProvider as exc:
            raise InvalidSpec(str(exc)) from exc

        record, created = await self.admit(user_id, spec, request.idempotency_key)
        if created:
            self.spawn(self.run(record.generation_id, spec))
        return record

    async def admit(
        self,
        user_id: uuid.UUID,
        spec: JobSpec,
        idempotency_key: str | None = None,
    ) -> tuple[GenerationRecord, bool]:
        """Reserve credits and persist a PENDING record atomically.

        Returns ``(record, created)``.  A rejected admission leaves no
        record and no reservation behind.
        """
        async with self._session_factory() as db:
            store = GenerationStore(db)
            if idempotency_key:
                existing = await store.find_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return existing, False

            unlimited = await has_unlimited_entitlement(db, user_id)
            reservation_id = None
            if not unlimited:
                reservation_id = await ledger.reserve(db, user_id, spec.credit_cost)

            try:
                record = await store.create_pending(
                    user_id, spec, reservation_id, idempotency_key,
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if not idempotency_key:
                    raise
                # lost a race on the same idempotency key
                existing = await store.find_by_idempotency_key(user_id, idempotency_key)
                if existing is None:
                    raise
                return existing, False

        log.info(
            "generation_admitted",
            generation_id=str(record.generation_id),
            user_id=str(user_id),
            model=spec.model.name,
            credit_cost=spec.credit_cost,
            unlimited=unlimited,
        )
        return record, True

    # ------------------------------------------------------------------
    # Background run
    # ------------------------------------------------------------------

    async def run(self, generation_id: uuid.UUID, spec: JobSpec) -> None:
        """Dispatch and observe *generation_id*.

        Errors are logged, not raised: the record stays non-terminal and the
        sweeper finishes it.
        """
        try:
            ref = await self.dispatch(generation_id, spec)
            if ref is not None:
                await self.observe(generation_id, ref)
        except Exception:
            log.exception("generation_run_failed", generation_id=str(generation_id))

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Run *coro* as a tracked background task."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every tracked background task to finish."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight background tasks; the sweeper recovers their records."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Phase 2 -- dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, generation_id: uuid.UUID, spec: JobSpec) -> ProviderRef | None:
        """Submit to the provider; returns the handle, or None if the job ended here."""
        provider = self._providers.get(spec.model.provider)
        try:
            ref = await provider.submit(spec)
        except SubmissionError as exc:
            log.warning(
                "generation_submission_failed",
                generation_id=str(generation_id), provider=provider.name, error=str(exc),
            )
            await self.apply_outcome(
                generation_id,
                PollResult.failed(str(exc)),
                source="dispatch",
                reason=REASON_SUBMISSION_FAILED,
            )
            return None

        async with self._session_factory() as db:
            moved = await GenerationStore(db).mark_processing(generation_id, ref)
            await db.commit()

        if not moved:
            log.warning(
                "generation_dispatch_orphaned",
                generation_id=str(generation_id), provider=ref.provider, task_id=ref.task_id,
            )
            return None

        log.info(
            "generation_dispatched",
            generation_id=str(generation_id), provider=ref.provider, task_id=ref.task_id,
        )
        return ref

    # ------------------------------------------------------------------
    # Phase 3 -- observation
    # ------------------------------------------------------------------

    async def observe(self, generation_id: uuid.UUID, ref: ProviderRef) -> bool:
        """Poll with capped exponential backoff to catch fast jobs.

        Returns True if this loop applied the terminal transition.  Giving up
        is not a failure; the sweeper owns anything still running.
        """
        provider = self._providers.get(ref.provider)
        delay = self._settings.POLL_BASE_DELAY

        for attempt in range(1, self._settings.POLL_MAX_ATTEMPTS + 1):
            await self._sleep(delay)
            delay = min(delay * 2, self._settings.POLL_MAX_DELAY)

            async with self._session_factory() as db:
                record = await GenerationStore(db).get(generation_id)
            if record is None or record.is_terminal:
                return False

            try:
                result = await provider.poll(ref)
            except ProviderTransientError as exc:
                log.info(
                    "generation_poll_transient_error",
                    generation_id=str(generation_id), attempt=attempt, error=str(exc),
                )
                result = None

            async with self._session_factory() as db:
                await GenerationStore(db).record_poll(generation_id)
                await db.commit()

            if result is not None and result.is_terminal:
                return await self.apply_outcome(generation_id, result, source="poll")

        log.info(
            "generation_poll_exhausted",
            generation_id=str(generation_id), attempts=self._settings.POLL_MAX_ATTEMPTS,
        )
        return False

    async def handle_callback(self, provider_name: str, payload: Any) -> str:
        """Apply a provider webhook.

        Returns ``applied``, ``duplicate``, ``running`` or ``ignored``.

        Raises:
            UnknownProvider: no adapter for *provider_name*.
            CallbackParseError: the body is not a valid provider payload.
        """
        adapter = self._providers.get(provider_name)
        parsed = adapter.parse_callback(payload)

        async with self._session_factory() as db:
            record = await GenerationStore(db).find_by_task(provider_name, parsed.task_id)
        if record is None:
            log.warning("callback_unknown_task", provider=provider_name, task_id=parsed.task_id)
            return "ignored"
        if not parsed.result.is_terminal:
            return "running"

        applied = await self.apply_outcome(record.generation_id, parsed.result, source="callback")
        return "applied" if applied else "duplicate"

    # ------------------------------------------------------------------
    # Phase 4 -- terminal transition + settlement
    # ------------------------------------------------------------------

    async def apply_outcome(
        self,
        generation_id: uuid.UUID,
        result: PollResult,
        source: str,
        reason: str | None = None,
    ) -> bool:
        """Move the record to its terminal state and settle its reservation.

        The transition and the settlement share one transaction, so a crash
        between them cannot leave a terminal record with a held reservation.
        Returns False when another caller already finished the record.
        """
        if result.status not in (COMPLETED, FAILED):
            return False

        async with self._session_factory() as db:
            store = GenerationStore(db)
            if result.status == COMPLETED:
                transition = await store.transition_terminal(
                    generation_id,
                    STATE_COMPLETED,
                    output=result.output,
                    thumbnail_url=result.thumbnail_url,
                )
            else:
                transition = await store.transition_terminal(
                    generation_id,
                    STATE_FAILED,
                    reason=reason or REASON_PROVIDER_FAILED,
                    message=result.error,
                )

            if transition is None:
                log.info(
                    "terminal_transition_not_applied",
                    generation_id=str(generation_id), source=source,
                )
                return False

            if transition.reservation_id is not None:
                if transition.state == STATE_COMPLETED:
                    await ledger.commit(db, transition.reservation_id)
                else:
                    await ledger.release(db, transition.reservation_id)
            variations = []
            if transition.state == STATE_COMPLETED and result.extra_outputs:
                variations = await store.create_variations(generation_id, result.extra_outputs)
            await db.commit()

        if variations:
            log.info(
                "generation_variations_stored",
                generation_id=str(generation_id),
                variation_ids=[str(v.generation_id) for v in variations],
            )

        audit.log_terminal_transition(
            generation_id,
            transition.user_id,
            transition.state,
            reason=transition.failure_reason,
            source=source,
        )
        self._notify(transition)
        return True

    def _notify(self, transition: AppliedTransition) -> None:
        if self._notifier is not None:
            self.spawn(self._notifier.notify_terminal(transition))

    # ------------------------------------------------------------------
    # Reads and cancellation
    # ------------------------------------------------------------------

    async def get_status(self, generation_id: uuid.UUID, user_id: uuid.UUID) -> GenerationRecord:
        async with self._session_factory() as db:
            record = await GenerationStore(db).get_for_user(generation_id, user_id)
        if record is None:
            raise GenerationNotFound(f"Generation {generation_id} not found")
        return record

    async def list_generations(
        self,
        user_id: uuid.UUID,
        state: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[GenerationRecord]:
        async with self._session_factory() as db:
            return await GenerationStore(db).list_for_user(user_id, state, limit, offset)

    async def cancel(self, generation_id: uuid.UUID, user_id: uuid.UUID) -> GenerationRecord:
        """Record an advisory cancellation request.

        The provider outcome still wins: a job that completes after this
        call is settled as completed.

        Raises:
            GenerationNotFound: unknown id or not owned by *user_id*.
            AlreadyTerminal: the generation has already finished.
        """
        async with self._session_factory() as db:
            store = GenerationStore(db)
            record = await store.get_for_user(generation_id, user_id)
            if record is None:
                raise GenerationNotFound(f"Generation {generation_id} not found")
            if record.is_terminal or not await store.request_cancel(generation_id):
                raise AlreadyTerminal(f"Generation {generation_id} is already {record.state}")
            await db.commit()
            await db.refresh(record)

        log.info("generation_cancel_requested", generation_id=str(generation_id))
        return record
