"""Trigger functions and trigger DDL for the pipeline schema."""

# ---- Trigger functions ----

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

FN_CHECK_RESERVATION_SETTLEMENT = """
CREATE OR REPLACE FUNCTION check_reservation_settlement()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.state <> 'held' AND NEW.state IS DISTINCT FROM OLD.state THEN
        RAISE EXCEPTION 'Reservation % is already %', OLD.reservation_id, OLD.state;
    END IF;
    IF OLD.amount IS DISTINCT FROM NEW.amount
    OR OLD.user_id IS DISTINCT FROM NEW.user_id
    THEN
        RAISE EXCEPTION 'Cannot modify reservation amount or owner';
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FN_CHECK_GENERATION_STATE = """
CREATE OR REPLACE FUNCTION check_generation_state()
RETURNS TRIGGER AS $$
BEGIN
    IF NEW.state IS DISTINCT FROM OLD.state AND (
        OLD.state IN ('completed', 'failed')
        OR (OLD.state = 'processing' AND NEW.state = 'pending')
    ) THEN
        RAISE EXCEPTION 'Generation % cannot move from % to %',
            OLD.generation_id, OLD.state, NEW.state;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_IMMUTABLE,
    FN_CHECK_RESERVATION_SETTLEMENT,
    FN_CHECK_GENERATION_STATE,
]

# ---- Triggers ----

TRG_CREDIT_TRANSACTIONS_IMMUTABLE = """
CREATE TRIGGER trg_credit_transactions_immutable
    BEFORE UPDATE OR DELETE ON credit_transactions
    FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();
"""

TRG_RESERVATION_SETTLEMENT = """
CREATE TRIGGER trg_reservation_settlement
    BEFORE UPDATE ON credit_reservations
    FOR EACH ROW EXECUTE FUNCTION check_reservation_settlement();
"""

TRG_GENERATION_STATE_FORWARD = """
CREATE TRIGGER trg_generation_state_forward
    BEFORE UPDATE ON generation_records
    FOR EACH ROW EXECUTE FUNCTION check_generation_state();
"""

TRIGGERS_ALL = [
    TRG_CREDIT_TRANSACTIONS_IMMUTABLE,
    TRG_RESERVATION_SETTLEMENT,
    TRG_GENERATION_STATE_FORWARD,
]
