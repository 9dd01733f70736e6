"""Pipeline schema -- credit ledger, generation records, devices, triggers.

Revision ID: 001_generation_pipeline
Revises:
Create Date: 2026-10-19
"""

from alembic import op

from genpipe.schema_sql import (
    indexes,
    tables_credits,
    tables_generations,
    triggers,
)

revision = "001_generation_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    _execute_all(tables_credits.ALL)
    _execute_all(tables_generations.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_generation_state_forward ON generation_records;")
    op.execute("DROP TRIGGER IF EXISTS trg_reservation_settlement ON credit_reservations;")
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS check_generation_state();")
    op.execute("DROP FUNCTION IF EXISTS check_reservation_settlement();")
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")


def _drop_tables() -> None:
    tables = [
        "device_registrations",
        "generation_records",
        "subscriptions",
        "credit_transactions",
        "credit_reservations",
        "credit_accounts",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
