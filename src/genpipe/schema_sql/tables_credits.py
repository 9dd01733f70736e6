"""CREATE TABLE statements for credit accounts, reservations and the journal."""

CREDIT_ACCOUNTS = """
CREATE TABLE credit_accounts (
    user_id     UUID PRIMARY KEY,
    balance     INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_account_balance_non_negative CHECK (balance >= 0),
    reserved    INTEGER NOT NULL DEFAULT 0
                CONSTRAINT ck_account_reserved_non_negative CHECK (reserved >= 0),
    version     INTEGER NOT NULL DEFAULT 0,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ck_account_reserved_within_balance CHECK (reserved <= balance)
);
"""

CREDIT_RESERVATIONS = """
CREATE TABLE credit_reservations (
    reservation_id  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id         UUID NOT NULL REFERENCES credit_accounts(user_id),
    amount          INTEGER NOT NULL
                    CONSTRAINT ck_reservation_amount_positive CHECK (amount > 0),
    state           VARCHAR(20) NOT NULL DEFAULT 'held'
                    CONSTRAINT ck_reservation_state
                    CHECK (state IN ('held', 'committed', 'released')),
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    settled_at      TIMESTAMPTZ,
    CONSTRAINT ck_reservation_settled_at CHECK ((state = 'held') = (settled_at IS NULL))
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    txn_id       BIGSERIAL PRIMARY KEY,
    user_id      UUID NOT NULL REFERENCES credit_accounts(user_id),
    amount       INTEGER NOT NULL,
    txn_type     VARCHAR(30) NOT NULL
                 CONSTRAINT ck_credit_txn_type
                 CHECK (txn_type IN ('grant', 'purchase', 'spend', 'admin_adjustment')),
    reference_id UUID,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

SUBSCRIPTIONS = """
CREATE TABLE subscriptions (
    user_id            UUID PRIMARY KEY,
    status             VARCHAR(30) NOT NULL,
    current_period_end TIMESTAMPTZ,
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    CREDIT_ACCOUNTS,
    CREDIT_RESERVATIONS,
    CREDIT_TRANSACTIONS,
    SUBSCRIPTIONS,
]
