"""SQLite database connection and schema initialization."""

from pathlib import Path

import aiosqlite

# Global connection holder
_db_connection: aiosqlite.Connection | None = None


async def init_database(db_path: str) -> None:
    """Initialize the database connection and create schema."""
    global _db_connection

    # Ensure the data directory exists
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    _db_connection = await aiosqlite.connect(db_path)
    _db_connection.row_factory = aiosqlite.Row

    # Enable foreign keys
    await _db_connection.execute("PRAGMA foreign_keys = ON")

    # Create schema
    await _create_schema(_db_connection)


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection
    if _db_connection:
        await _db_connection.close()
        _db_connection = None


async def get_db() -> aiosqlite.Connection:
    """Get the database connection."""
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _db_connection


async def _create_schema(db: aiosqlite.Connection) -> None:
    """Create database tables and indexes."""
    # Published template versions (immutable rows)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS flow_templates (
            id TEXT PRIMARY KEY,
            template_key TEXT NOT NULL,
            version INTEGER NOT NULL,
            engine_version TEXT NOT NULL DEFAULT 'v2',
            name TEXT NOT NULL,
            description TEXT,
            trigger_type TEXT NOT NULL,
            clinic_id INTEGER,
            group_id INTEGER,
            is_active INTEGER NOT NULL DEFAULT 1,
            entry_node_id TEXT NOT NULL,
            nodes_json TEXT NOT NULL,
            published_at TEXT NOT NULL,
            published_by INTEGER,
            UNIQUE(template_key, version)
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_flow_templates_trigger
        ON flow_templates(trigger_type, is_active)
    """)

    # Executions
    await db.execute("""
        CREATE TABLE IF NOT EXISTS flow_executions (
            id TEXT PRIMARY KEY,
            idempotency_key TEXT NOT NULL UNIQUE,
            template_id TEXT NOT NULL,
            template_key TEXT NOT NULL,
            template_version INTEGER NOT NULL,
            engine_version TEXT NOT NULL,
            status TEXT NOT NULL,
            current_node_id TEXT,
            context_json TEXT NOT NULL DEFAULT '{}',
            wait_until TEXT,
            waiting_meta_json TEXT,
            trigger_type TEXT NOT NULL,
            clinic_id INTEGER NOT NULL,
            group_id INTEGER,
            subject_type TEXT NOT NULL,
            subject_id INTEGER NOT NULL,
            last_error TEXT,
            cancel_requested INTEGER NOT NULL DEFAULT 0,
            lease_owner TEXT,
            lease_expires_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            finished_at TEXT,
            FOREIGN KEY (template_id) REFERENCES flow_templates(id),
            CHECK ((status = 'waiting') = (wait_until IS NOT NULL))
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_flow_executions_due
        ON flow_executions(status, wait_until)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_flow_executions_subject
        ON flow_executions(clinic_id, subject_type, subject_id, status)
    """)

    # Execution log (append-only, one row per node invocation attempt)
    await db.execute("""
        CREATE TABLE IF NOT EXISTS flow_execution_logs (
            id TEXT PRIMARY KEY,
            execution_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            node_id TEXT NOT NULL,
            node_type TEXT NOT NULL,
            status TEXT NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 1,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            error_type TEXT,
            error_message TEXT,
            audit_snapshot_json TEXT,
            encrypted_context_diff BLOB,
            prev_hash TEXT,
            entry_hash TEXT,
            FOREIGN KEY (execution_id) REFERENCES flow_executions(id),
            UNIQUE(execution_id, seq)
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_flow_execution_logs_open
        ON flow_execution_logs(execution_id, status)
    """)

    # External resume signals awaiting the sweep
    await db.execute("""
        CREATE TABLE IF NOT EXISTS flow_signals (
            id TEXT PRIMARY KEY,
            signal_type TEXT NOT NULL,
            clinic_id INTEGER NOT NULL,
            group_id INTEGER,
            subject_type TEXT NOT NULL,
            subject_id INTEGER NOT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            consumed_at TEXT
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_flow_signals_pending
        ON flow_signals(consumed_at, created_at)
    """)

    await db.commit()
