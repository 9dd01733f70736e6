"""Shared types for generation provider adapters.

An adapter hides one upstream vendor behind three calls: ``submit`` hands a
priced job to the vendor and returns its task handle, ``poll`` asks for the
current status, and ``parse_callback`` normalises a webhook body into the
same ``PollResult`` shape that ``poll`` returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from genpipe.services.catalog import JobSpec

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

# Upstream HTTP statuses that will never succeed on retry
PERMANENT_HTTP_STATUSES = frozenset({400, 401, 403, 404, 422})


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderRef:
    """Handle for an accepted upstream task."""

    provider: str
    task_id: str
    model: str


@dataclass(frozen=True)
class PollResult:
    """Normalised provider status.

    ``output`` is set only for COMPLETED and ``error`` only for FAILED.
    ``extra_outputs`` holds further artifacts produced by the same job (music
    providers return several tracks per request).
    """

    status: str
    output: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None
    extra_outputs: tuple[str, ...] = ()

    @classmethod
    def running(cls) -> PollResult:
        return cls(status=RUNNING)

    @classmethod
    def completed(
        cls,
        output: str,
        thumbnail_url: str | None = None,
        extra_outputs: tuple[str, ...] = (),
    ) -> PollResult:
        return cls(
            status=COMPLETED,
            output=output,
            thumbnail_url=thumbnail_url,
            extra_outputs=tuple(extra_outputs),
        )

    @classmethod
    def failed(cls, error: str) -> PollResult:
        return cls(status=FAILED, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, FAILED)


@dataclass(frozen=True)
class CallbackResult:
    """A parsed webhook: which task it refers to and what it reports."""

    task_id: str
    result: PollResult


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class SubmissionError(Exception):
    """Raised when the provider rejects or never acknowledges a job."""


class ProviderTransientError(Exception):
    """Raised when a status check fails in a way worth retrying later."""


class CallbackParseError(Exception):
    """Raised when a webhook body is not a recognisable provider payload."""


# ---------------------------------------------------------------------------
# Adapter protocol
# ---------------------------------------------------------------------------

class ProviderAdapter(Protocol):
    """Structural interface every provider adapter satisfies."""

    name: str

    async def submit(self, spec: JobSpec) -> ProviderRef: ...

    async def poll(self, ref: ProviderRef) -> PollResult: ...

    def parse_callback(self, payload: Any) -> CallbackResult: ...


# ---------------------------------------------------------------------------
# Output extraction helpers
# ---------------------------------------------------------------------------

def dig(data: Any, *path: str | int) -> Any:
    """Follow *path* through nested dicts and lists, returning None on any miss."""
    current = data
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def first_url(data: Any, paths: list[tuple[str | int, ...]]) -> str | None:
    """Return the first non-empty string found at any of *paths*."""
    for path in paths:
        value = dig(data, *path)
        if isinstance(value, str) and value:
            return value
    return None
