"""All CREATE INDEX statements for the pipeline schema."""

ALL = [
    # credit_reservations
    "CREATE INDEX idx_reservations_user_state ON credit_reservations(user_id, state);",
    "CREATE INDEX idx_reservations_held ON credit_reservations(created_at) "
    "WHERE state = 'held';",
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user ON credit_transactions(user_id, txn_id);",
    "CREATE INDEX idx_credit_txn_reference ON credit_transactions(reference_id) "
    "WHERE reference_id IS NOT NULL;",
    # generation_records
    "CREATE INDEX idx_generations_user ON generation_records(user_id, created_at DESC);",
    "CREATE INDEX idx_generations_open ON generation_records(created_at) "
    "WHERE state IN ('pending', 'processing');",
    # device_registrations
    "CREATE INDEX idx_devices_user_active ON device_registrations(user_id) "
    "WHERE is_active = TRUE;",
]
