"""Structured JSON audit logger for credit and generation lifecycle events.

Emits structured log entries via structlog for reservations, settlements,
credit grants, terminal transitions and device deactivations.  Every entry
carries an ``audit: true`` flag so production log pipelines can filter on it.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog


log = structlog.get_logger()


def _str_or_none(value) -> str | None:
    return str(value) if value is not None else None


class AuditLogger:
    """Structured audit logger for ledger and pipeline events.

    All methods are synchronous -- they only emit log lines and perform
    no I/O beyond writing to the configured structlog sink.
    """

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def log_reservation(self, user_id, reservation_id, amount: int, state: str) -> None:
        """Record a reservation being created or settled."""
        log.info(
            "audit_event",
            event_type="reservation",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            reservation_id=str(reservation_id),
            amount=amount,
            state=state,
            audit=True,
        )

    def log_credit_event(
        self,
        user_id,
        amount: int,
        txn_type: str,
        reference_id=None,
    ) -> None:
        """Log a journaled balance change (grant, purchase, spend)."""
        log.info(
            "audit_event",
            event_type="credit_event",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            amount=amount,
            txn_type=txn_type,
            reference_id=_str_or_none(reference_id),
            audit=True,
        )

    def log_invariant_violation(self, reservation_id, current_state: str, attempted: str) -> None:
        """Settlement was attempted against a reservation in the opposite terminal state."""
        log.critical(
            "audit_event",
            event_type="invariant_violation",
            timestamp=datetime.now(timezone.utc).isoformat(),
            reservation_id=str(reservation_id),
            current_state=current_state,
            attempted=attempted,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------

    def log_terminal_transition(
        self,
        generation_id,
        user_id,
        state: str,
        reason: str | None = None,
        source: str = "orchestrator",
    ) -> None:
        """Log an applied terminal transition and which path observed it."""
        log.info(
            "audit_event",
            event_type="terminal_transition",
            timestamp=datetime.now(timezone.utc).isoformat(),
            generation_id=str(generation_id),
            user_id=str(user_id),
            state=state,
            reason=reason,
            source=source,
            audit=True,
        )

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def log_device_deactivated(self, user_id, platform: str, error: str) -> None:
        log.info(
            "audit_event",
            event_type="device_deactivated",
            timestamp=datetime.now(timezone.utc).isoformat(),
            user_id=str(user_id),
            platform=platform,
            error=error,
            audit=True,
        )
