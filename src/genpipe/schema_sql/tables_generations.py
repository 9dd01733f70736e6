"""CREATE TABLE statements for generation records and push devices."""

GENERATION_RECORDS = """
CREATE TABLE generation_records (
    generation_id       UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             UUID NOT NULL,
    kind                VARCHAR(10) NOT NULL
                        CONSTRAINT ck_generation_kind
                        CHECK (kind IN ('image', 'video', 'music', 'text')),
    model               VARCHAR(100) NOT NULL,
    provider            VARCHAR(30) NOT NULL,
    task_id             VARCHAR(255),
    state               VARCHAR(20) NOT NULL DEFAULT 'pending'
                        CONSTRAINT ck_generation_state
                        CHECK (state IN ('pending', 'processing', 'completed', 'failed')),
    prompt              TEXT NOT NULL,
    parameters          JSONB,
    credit_cost         INTEGER NOT NULL,
    reservation_id      UUID REFERENCES credit_reservations(reservation_id),
    idempotency_key     VARCHAR(255),
    parent_generation_id UUID REFERENCES generation_records(generation_id),
    output              TEXT,
    thumbnail_url       TEXT,
    failure_reason      VARCHAR(40)
                        CONSTRAINT ck_generation_failure_reason
                        CHECK (failure_reason IN (
                            'submission-failed', 'provider-failed',
                            'timeout', 'dispatch-interrupted'
                        )),
    failure_message     TEXT,
    cancel_requested_at TIMESTAMPTZ,
    poll_attempts       INTEGER NOT NULL DEFAULT 0,
    last_polled_at      TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    dispatched_at       TIMESTAMPTZ,
    terminal_at         TIMESTAMPTZ,
    CONSTRAINT ck_generation_output_iff_completed
        CHECK ((state = 'completed') = (output IS NOT NULL)),
    CONSTRAINT ck_generation_reason_iff_failed
        CHECK ((state = 'failed') = (failure_reason IS NOT NULL)),
    CONSTRAINT uq_generation_provider_task UNIQUE (provider, task_id),
    CONSTRAINT uq_generation_idempotency UNIQUE (user_id, idempotency_key)
);
"""

DEVICE_REGISTRATIONS = """
CREATE TABLE device_registrations (
    device_id    BIGSERIAL PRIMARY KEY,
    user_id      UUID NOT NULL,
    token        VARCHAR(512) NOT NULL UNIQUE,
    platform     VARCHAR(20) NOT NULL
                 CONSTRAINT ck_device_platform
                 CHECK (platform IN ('ios', 'android', 'web')),
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_seen_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    GENERATION_RECORDS,
    DEVICE_REGISTRATIONS,
]
