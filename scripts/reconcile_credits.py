#!/usr/bin/env python3
"""Nightly credit ledger consistency check.

For every credit account, compares:

* ``balance`` against the sum of its ``credit_transactions`` rows, and
* ``reserved`` against the sum of its ``held`` reservations,

and reports any discrepancies.  Also lists generations that finished without
their reservation being settled to match.

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_credits.py

Exit codes:
    0 -- everything matches
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/genpipe"


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    # Normalise SQLAlchemy-style URLs that include +asyncpg / +psycopg2 etc.
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


BALANCE_SQL = """
SELECT
    a.user_id,
    a.balance AS stored_balance,
    COALESCE(t.total, 0)::int AS computed_balance
FROM credit_accounts a
LEFT JOIN (
    SELECT user_id, SUM(amount) AS total FROM credit_transactions GROUP BY user_id
) t USING (user_id)
WHERE a.balance <> COALESCE(t.total, 0)
ORDER BY a.user_id
"""

RESERVED_SQL = """
SELECT
    a.user_id,
    a.reserved AS stored_reserved,
    COALESCE(r.total, 0)::int AS computed_reserved
FROM credit_accounts a
LEFT JOIN (
    SELECT user_id, SUM(amount) AS total
    FROM credit_reservations WHERE state = 'held' GROUP BY user_id
) r USING (user_id)
WHERE a.reserved <> COALESCE(r.total, 0)
ORDER BY a.user_id
"""

SETTLEMENT_SQL = """
SELECT g.generation_id, g.state, r.reservation_id, r.state AS reservation_state
FROM generation_records g
JOIN credit_reservations r USING (reservation_id)
WHERE (g.state = 'completed' AND r.state <> 'committed')
   OR (g.state = 'failed' AND r.state <> 'released')
   OR (g.state IN ('pending', 'processing') AND r.state <> 'held')
ORDER BY g.generation_id
"""


async def reconcile(dsn: str) -> dict[str, list[dict]]:
    """Run every check and return the discrepancies grouped by check."""
    conn: asyncpg.Connection = await asyncpg.connect(dsn)
    try:
        balances = await conn.fetch(BALANCE_SQL)
        reserved = await conn.fetch(RESERVED_SQL)
        settlements = await conn.fetch(SETTLEMENT_SQL)
    finally:
        await conn.close()

    return {
        "balance": [
            {
                "user_id": str(row["user_id"]),
                "stored_balance": row["stored_balance"],
                "computed_balance": row["computed_balance"],
                "difference": row["stored_balance"] - row["computed_balance"],
            }
            for row in balances
        ],
        "reserved": [
            {
                "user_id": str(row["user_id"]),
                "stored_reserved": row["stored_reserved"],
                "computed_reserved": row["computed_reserved"],
                "difference": row["stored_reserved"] - row["computed_reserved"],
            }
            for row in reserved
        ],
        "settlement": [
            {
                "generation_id": str(row["generation_id"]),
                "generation_state": row["state"],
                "reservation_id": str(row["reservation_id"]),
                "reservation_state": row["reservation_state"],
            }
            for row in settlements
        ],
    }


async def main() -> int:
    dsn = _get_dsn()
    discrepancies = await reconcile(dsn)
    total = sum(len(items) for items in discrepancies.values())

    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": total,
        "discrepancies": discrepancies,
    }

    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if total else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
