#!/usr/bin/env python3
"""Run one reconciliation sweep and print the report.

For deployments that run the sweeper from cron instead of in-process
(``SWEEPER_ENABLED=false``).

Usage:
    DATABASE_URL=postgresql+asyncpg://... python scripts/sweep_generations.py

Exit codes:
    0 -- sweep finished
    1 -- one or more records could not be reconciled
"""

from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone

from redis.asyncio import Redis

from genpipe.config import settings
from genpipe.database import async_session_factory, engine
from genpipe.integrations.fcm_client import FcmPushClient
from genpipe.integrations.providers.registry import build_registry
from genpipe.services.generation_orchestrator import GenerationOrchestrator
from genpipe.services.notifier import Notifier
from genpipe.services.reconciliation_sweeper import ReconciliationSweeper


async def main() -> int:
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    push_client = FcmPushClient(settings.FCM_SERVER_KEY, url=settings.FCM_URL) if settings.FCM_SERVER_KEY else None
    providers = build_registry(settings)
    notifier = Notifier(redis, push_client, async_session_factory)
    orchestrator = GenerationOrchestrator(async_session_factory, providers, notifier, settings)
    sweeper = ReconciliationSweeper(async_session_factory, orchestrator, providers, settings)
    try:
        report = await sweeper.sweep_once()
        await orchestrator.drain()
    finally:
        await redis.close()
        await engine.dispose()

    json.dump(
        {"timestamp": datetime.now(timezone.utc).isoformat(), **asdict(report)},
        sys.stdout,
        indent=2,
    )
    sys.stdout.write("\n")
    return 1 if report.errors else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
