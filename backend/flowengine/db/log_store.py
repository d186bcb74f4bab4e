"""LogStore - append-only execution log entries."""

import json
import uuid
from datetime import datetime
from typing import Any

import aiosqlite

from flowengine.clock import from_iso, to_iso
from flowengine.db.database import get_db
from flowengine.models import ExecutionLogEntry, LogStatus


def _row_to_entry(row: aiosqlite.Row) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        id=row["id"],
        execution_id=row["execution_id"],
        seq=row["seq"],
        node_id=row["node_id"],
        node_type=row["node_type"],
        status=LogStatus(row["status"]),
        attempt=row["attempt"],
        started_at=from_iso(row["started_at"]),
        finished_at=from_iso(row["finished_at"]),
        error_type=row["error_type"],
        error_message=row["error_message"],
        audit_snapshot=json.loads(row["audit_snapshot_json"])
        if row["audit_snapshot_json"]
        else None,
        encrypted_context_diff=row["encrypted_context_diff"],
        prev_hash=row["prev_hash"],
        entry_hash=row["entry_hash"],
    )


class LogStore:
    """Storage for execution log entries.

    Entries are inserted in `running` and closed exactly once; nothing else
    is ever updated.
    """

    async def insert_running(
        self,
        execution_id: str,
        node_id: str,
        node_type: str,
        attempt: int,
        started_at: datetime,
    ) -> ExecutionLogEntry:
        """Append a `running` entry with the next sequence number."""
        db = await get_db()
        entry_id = str(uuid.uuid4())

        await db.execute(
            """
            INSERT INTO flow_execution_logs
            (id, execution_id, seq, node_id, node_type, status, attempt, started_at)
            SELECT ?, ?, COALESCE(MAX(seq), 0) + 1, ?, ?, 'running', ?, ?
            FROM flow_execution_logs WHERE execution_id = ?
            """,
            (
                entry_id,
                execution_id,
                node_id,
                node_type,
                attempt,
                to_iso(started_at),
                execution_id,
            ),
        )
        await db.commit()
        return await self.get(entry_id)

    async def close(
        self,
        entry_id: str,
        status: LogStatus,
        finished_at: datetime,
        *,
        error_type: str | None = None,
        error_message: str | None = None,
        audit_snapshot: dict[str, Any] | None = None,
        encrypted_context_diff: bytes | None = None,
        prev_hash: str | None = None,
        entry_hash: str | None = None,
    ) -> bool:
        """Close a `running` entry. Returns False if it was already closed."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_execution_logs
            SET status = ?, finished_at = ?, error_type = ?, error_message = ?,
                audit_snapshot_json = ?, encrypted_context_diff = ?,
                prev_hash = ?, entry_hash = ?
            WHERE id = ? AND status = 'running'
            """,
            (
                status.value,
                to_iso(finished_at),
                error_type,
                error_message,
                json.dumps(audit_snapshot) if audit_snapshot is not None else None,
                encrypted_context_diff,
                prev_hash,
                entry_hash,
                entry_id,
            ),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def get(self, entry_id: str) -> ExecutionLogEntry:
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM flow_execution_logs WHERE id = ?", (entry_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise KeyError(entry_id)
        return _row_to_entry(row)

    async def list_for_execution(self, execution_id: str) -> list[ExecutionLogEntry]:
        """All entries of an execution in `seq` order."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM flow_execution_logs WHERE execution_id = ? ORDER BY seq ASC",
            (execution_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def find_open(self, execution_id: str) -> list[ExecutionLogEntry]:
        """Entries left in `running`, normally only after a crash."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM flow_execution_logs
            WHERE execution_id = ? AND status = 'running'
            ORDER BY seq ASC
            """,
            (execution_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def previous_hash(self, execution_id: str, seq: int) -> str | None:
        """Hash of the entry immediately before `seq`, if any."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT entry_hash FROM flow_execution_logs
            WHERE execution_id = ? AND seq < ?
            ORDER BY seq DESC
            LIMIT 1
            """,
            (execution_id, seq),
        )
        row = await cursor.fetchone()
        return row["entry_hash"] if row else None

    async def last_entry(self, execution_id: str) -> ExecutionLogEntry | None:
        """The most recent entry of an execution."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM flow_execution_logs
            WHERE execution_id = ?
            ORDER BY seq DESC
            LIMIT 1
            """,
            (execution_id,),
        )
        row = await cursor.fetchone()
        return _row_to_entry(row) if row else None


# Global instance
log_store = LogStore()
