"""Background sweeper that finishes generations nobody is watching.

Runs as an ``asyncio`` background task.  Every interval it loads
non-terminal records older than the grace period and drives each one
through the orchestrator's terminal-transition path:

* ``pending`` with no provider task -- dispatch was interrupted (process
  restart between admission and submit); fail with ``dispatch-interrupted``.
* ``processing`` -- poll the provider.  A terminal result is applied as-is,
  even past the timeout.  A record still running (or unreachable) past its
  per-kind timeout is failed with ``timeout``.

Racing a live poll loop or a webhook is safe: only one terminal transition
per record can apply.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genpipe.config import Settings
from genpipe.integrations.providers.base import PollResult, ProviderRef, ProviderTransientError
from genpipe.integrations.providers.registry import ProviderRegistry, UnknownProvider
from genpipe.models import GenerationRecord
from genpipe.models.base import utcnow
from genpipe.models.generation import REASON_DISPATCH_INTERRUPTED, REASON_TIMEOUT
from genpipe.services.generation_orchestrator import GenerationOrchestrator
from genpipe.services.generation_store import GenerationStore
from genpipe.services.ledger import InvalidReservationState

log = structlog.get_logger()


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class SweepReport:
    """Counts from one sweep pass."""

    examined: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    interrupted: int = 0
    still_running: int = 0
    errors: int = 0


class ReconciliationSweeper:
    """AsyncIO background task for stale-generation reconciliation.

    Parameters
    ----------
    session_factory:
        An ``async_sessionmaker`` used for the stale-record query and poll
        bookkeeping.
    orchestrator:
        Applies terminal transitions and settles credits.
    providers:
        Adapters used to poll each record's provider.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        orchestrator: GenerationOrchestrator,
        providers: ProviderRegistry,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._orchestrator = orchestrator
        self._providers = providers
        self._settings = settings
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the sweeper loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the sweeper background task."""
        if self._running:
            log.warning("sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("sweeper_started", interval=self._settings.SWEEPER_INTERVAL_SECONDS)

    async def stop(self) -> None:
        """Stop the sweeper gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("sweeper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                log.error("sweeper_database_error", error=str(exc), exc_info=True)
            except Exception as exc:
                log.critical("sweeper_unexpected_error", error=str(exc), exc_info=True)
            await asyncio.sleep(self._settings.SWEEPER_INTERVAL_SECONDS)

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    async def sweep_once(self, now: datetime | None = None) -> SweepReport:
        """Reconcile one batch of stale records and report what happened."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self._settings.SWEEPER_GRACE_SECONDS)

        async with self._session_factory() as db:
            records = await GenerationStore(db).list_stale(
                cutoff, self._settings.SWEEPER_BATCH_SIZE,
            )

        report = SweepReport(examined=len(records))
        for record in records:
            try:
                await self._reconcile(record, now, report)
            except InvalidReservationState:
                log.critical(
                    "sweep_settlement_invariant_violated",
                    generation_id=str(record.generation_id),
                    exc_info=True,
                )
                report.errors += 1
            except Exception:
                log.exception("sweep_record_failed", generation_id=str(record.generation_id))
                report.errors += 1

        if records:
            log.info("sweep_completed", **vars(report))
        return report

    async def _reconcile(self, record: GenerationRecord, now: datetime, report: SweepReport) -> None:
        if record.task_id is None:
            applied = await self._orchestrator.apply_outcome(
                record.generation_id,
                PollResult.failed("Dispatch did not complete"),
                source="sweeper",
                reason=REASON_DISPATCH_INTERRUPTED,
            )
            if applied:
                report.interrupted += 1
            return

        result = await self._poll(record)
        if result is not None and result.is_terminal:
            applied = await self._orchestrator.apply_outcome(
                record.generation_id, result, source="sweeper",
            )
            if applied:
                if result.output is not None:
                    report.completed += 1
                else:
                    report.failed += 1
            return

        age = (now - as_utc(record.created_at)).total_seconds()
        timeout = self._settings.timeout_for_kind(record.kind)
        if age <= timeout:
            report.still_running += 1
            return

        applied = await self._orchestrator.apply_outcome(
            record.generation_id,
            PollResult.failed(f"No result after {int(age)}s"),
            source="sweeper",
            reason=REASON_TIMEOUT,
        )
        if applied:
            report.timed_out += 1

    async def _poll(self, record: GenerationRecord) -> PollResult | None:
        """Poll the record's provider; None when the status is unknowable right now."""
        try:
            adapter = self._providers.get(record.provider)
        except UnknownProvider:
            log.error(
                "sweep_unknown_provider",
                generation_id=str(record.generation_id), provider=record.provider,
            )
            return None

        ref = ProviderRef(provider=record.provider, task_id=record.task_id, model=record.model)
        try:
            result = await adapter.poll(ref)
        except ProviderTransientError as exc:
            log.info(
                "sweep_poll_transient_error",
                generation_id=str(record.generation_id), error=str(exc),
            )
            result = None

        async with self._session_factory() as db:
            await GenerationStore(db).record_poll(record.generation_id)
            await db.commit()
        return result
