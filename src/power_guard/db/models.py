"""SQL schema, as ordered migration steps."""

# version -> statements that bring the previous version up to it
MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id      INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL
        )
        """,
        # Mitigation ledger, profile and enabled overrides (JSON values)
        """
        CREATE TABLE IF NOT EXISTS settings (
            key         TEXT PRIMARY KEY,
            value_json  TEXT NOT NULL,
            updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        )
        """,
    ],
    2: [
        """
        CREATE TABLE IF NOT EXISTS guard_events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event       TEXT NOT NULL,
            tokens_json TEXT,
            recorded_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_guard_events_recorded ON guard_events(recorded_at)",
    ],
}

SCHEMA_VERSION = max(MIGRATIONS)
