"""ExecutionStore - persistence for executions and resume signals.

Every write to a running execution is conditioned on the lease owner in the
WHERE clause, and every claim is a conditional UPDATE whose row count
decides the winner. Those two rules are what keep one writer per execution.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any

import aiosqlite

from flowengine.clock import from_iso, to_iso
from flowengine.db.database import get_db
from flowengine.errors import LeaseLostError, NotFoundError
from flowengine.models import (
    Execution,
    ExecutionStatus,
    ResumeSignal,
    Signal,
    Subject,
    SubjectType,
    Template,
)

logger = logging.getLogger(__name__)

_EXECUTION_COLUMNS = """
    id, idempotency_key, template_id, template_key, template_version, engine_version,
    status, current_node_id, context_json, wait_until, waiting_meta_json, trigger_type,
    clinic_id, group_id, subject_type, subject_id, last_error, cancel_requested,
    lease_owner, lease_expires_at, created_at, updated_at, finished_at
"""

_UNSET: Any = object()


def _row_to_execution(row: aiosqlite.Row) -> Execution:
    return Execution(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        template_id=row["template_id"],
        template_key=row["template_key"],
        template_version=row["template_version"],
        engine_version=row["engine_version"],
        status=ExecutionStatus(row["status"]),
        current_node_id=row["current_node_id"],
        context=json.loads(row["context_json"]),
        wait_until=from_iso(row["wait_until"]),
        waiting_meta=json.loads(row["waiting_meta_json"])
        if row["waiting_meta_json"]
        else None,
        trigger_type=row["trigger_type"],
        subject=Subject(
            clinic_id=row["clinic_id"],
            group_id=row["group_id"],
            subject_type=SubjectType(row["subject_type"]),
            subject_id=row["subject_id"],
        ),
        last_error=row["last_error"],
        cancel_requested=bool(row["cancel_requested"]),
        lease_owner=row["lease_owner"],
        lease_expires_at=from_iso(row["lease_expires_at"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        finished_at=from_iso(row["finished_at"]),
    )


def _row_to_signal(row: aiosqlite.Row) -> Signal:
    return Signal(
        id=row["id"],
        signal_type=row["signal_type"],
        subject=Subject(
            clinic_id=row["clinic_id"],
            group_id=row["group_id"],
            subject_type=SubjectType(row["subject_type"]),
            subject_id=row["subject_id"],
        ),
        payload=json.loads(row["payload_json"]),
        created_at=from_iso(row["created_at"]),
        consumed_at=from_iso(row["consumed_at"]),
    )


class ExecutionStore:
    """Storage abstraction for executions and their resume signals."""

    # ==================== Executions ====================

    async def create(
        self,
        template: Template,
        subject: Subject,
        context: dict[str, Any],
        idempotency_key: str,
        lease_owner: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> tuple[Execution, bool]:
        """Create an execution in `running` at the template's entry node.

        Returns:
            (execution, created) - created is False when the idempotency key
            already existed and the earlier execution is returned instead
        """
        db = await get_db()
        execution_id = str(uuid.uuid4())
        timestamp = to_iso(now)

        try:
            await db.execute(
                f"""
                INSERT INTO flow_executions ({_EXECUTION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    execution_id,
                    idempotency_key,
                    template.id,
                    template.template_key,
                    template.version,
                    template.engine_version,
                    ExecutionStatus.RUNNING.value,
                    template.entry_node_id,
                    json.dumps(context),
                    None,
                    None,
                    template.trigger_type,
                    subject.clinic_id,
                    subject.group_id,
                    subject.subject_type.value,
                    subject.subject_id,
                    None,
                    0,
                    lease_owner,
                    to_iso(lease_expires_at),
                    timestamp,
                    timestamp,
                    None,
                ),
            )
            await db.commit()
        except sqlite3.IntegrityError:
            await db.rollback()
            existing = await self.get_by_idempotency_key(idempotency_key)
            if existing is None:
                raise
            logger.info(
                f"Deduplicated execution for key {idempotency_key} -> {existing.id}"
            )
            return existing, False

        return await self.get(execution_id), True

    async def get(self, execution_id: str) -> Execution:
        """Get an execution.

        Raises:
            NotFoundError: If the execution does not exist
        """
        db = await get_db()
        cursor = await db.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions WHERE id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return _row_to_execution(row)

    async def get_by_idempotency_key(self, idempotency_key: str) -> Execution | None:
        db = await get_db()
        cursor = await db.execute(
            f"SELECT {_EXECUTION_COLUMNS} FROM flow_executions WHERE idempotency_key = ?",
            (idempotency_key,),
        )
        row = await cursor.fetchone()
        return _row_to_execution(row) if row else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        template_key: str | None = None,
        subject: Subject | None = None,
        limit: int = 100,
    ) -> list[Execution]:
        """List executions, newest first."""
        db = await get_db()

        where_clauses: list[str] = []
        params: list[Any] = []

        if status:
            where_clauses.append("status = ?")
            params.append(status.value)

        if template_key:
            where_clauses.append("template_key = ?")
            params.append(template_key)

        if subject:
            where_clauses.append("clinic_id = ? AND subject_type = ? AND subject_id = ?")
            params.extend([subject.clinic_id, subject.subject_type.value, subject.subject_id])

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        params.append(limit)

        cursor = await db.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM flow_executions
            {where_sql}
            ORDER BY created_at DESC
            LIMIT ?
            """,
            params,
        )
        rows = await cursor.fetchall()
        return [_row_to_execution(row) for row in rows]

    # ==================== Claims and leases ====================

    async def claim(
        self,
        execution_id: str,
        owner: str,
        lease_expires_at: datetime,
        now: datetime,
        due_only: bool = True,
    ) -> bool:
        """Atomically move a waiting execution to running.

        A no-op (returns False) for any execution that is not waiting, or
        whose wait has not elapsed when `due_only` is set.
        """
        db = await get_db()
        due_clause = "AND wait_until <= ?" if due_only else ""
        params: list[Any] = [owner, to_iso(lease_expires_at), to_iso(now), execution_id]
        if due_only:
            params.append(to_iso(now))

        cursor = await db.execute(
            f"""
            UPDATE flow_executions
            SET status = 'running', wait_until = NULL, lease_owner = ?,
                lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND status = 'waiting' {due_clause}
            """,
            params,
        )
        await db.commit()
        return cursor.rowcount == 1

    async def find_due(self, now: datetime, limit: int) -> list[str]:
        """Ids of waiting executions whose wait has elapsed, oldest first."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT id FROM flow_executions
            WHERE status = 'waiting' AND wait_until <= ?
            ORDER BY wait_until ASC
            LIMIT ?
            """,
            (to_iso(now), limit),
        )
        rows = await cursor.fetchall()
        return [row["id"] for row in rows]

    async def find_expired_leases(self, now: datetime, limit: int) -> list[Execution]:
        """Running executions whose worker stopped renewing its lease."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM flow_executions
            WHERE status = 'running' AND lease_expires_at < ?
            ORDER BY lease_expires_at ASC
            LIMIT ?
            """,
            (to_iso(now), limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_execution(row) for row in rows]

    async def take_over_lease(
        self,
        execution: Execution,
        owner: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Take over an expired lease, only if nobody renewed or took it meanwhile."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_executions
            SET lease_owner = ?, lease_expires_at = ?, updated_at = ?
            WHERE id = ? AND status = 'running'
              AND lease_owner IS ? AND lease_expires_at IS ?
            """,
            (
                owner,
                to_iso(lease_expires_at),
                to_iso(now),
                execution.id,
                execution.lease_owner,
                to_iso(execution.lease_expires_at),
            ),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def claim_for_retry(
        self,
        execution_id: str,
        owner: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Explicit retry: move an errored execution back to running."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_executions
            SET status = 'running', lease_owner = ?, lease_expires_at = ?,
                last_error = NULL, finished_at = NULL, waiting_meta_json = NULL,
                updated_at = ?
            WHERE id = ? AND status = 'error' AND current_node_id IS NOT NULL
            """,
            (owner, to_iso(lease_expires_at), to_iso(now), execution_id),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def commit_state(
        self,
        execution_id: str,
        owner: str,
        now: datetime,
        *,
        status: ExecutionStatus,
        current_node_id: str | None = _UNSET,
        context: dict[str, Any] = _UNSET,
        wait_until: datetime | None = None,
        waiting_meta: dict[str, Any] | None = None,
        last_error: str | None = None,
        lease_expires_at: datetime | None = None,
    ) -> None:
        """Persist the outcome of one step for the lease holder.

        Leaving `running` releases the lease; staying in `running` renews it.

        Raises:
            LeaseLostError: If `owner` no longer holds the execution
        """
        db = await get_db()
        updates = [
            "status = ?",
            "wait_until = ?",
            "waiting_meta_json = ?",
            "last_error = ?",
            "updated_at = ?",
        ]
        params: list[Any] = [
            status.value,
            to_iso(wait_until),
            json.dumps(waiting_meta) if waiting_meta is not None else None,
            last_error,
            to_iso(now),
        ]

        if current_node_id is not _UNSET:
            updates.append("current_node_id = ?")
            params.append(current_node_id)

        if context is not _UNSET:
            updates.append("context_json = ?")
            params.append(json.dumps(context))

        if status == ExecutionStatus.RUNNING:
            updates.append("lease_expires_at = ?")
            params.append(to_iso(lease_expires_at))
        else:
            updates.extend(["lease_owner = NULL", "lease_expires_at = NULL"])

        if status in (
            ExecutionStatus.SUCCESS,
            ExecutionStatus.ERROR,
            ExecutionStatus.CANCELLED,
        ):
            updates.append("finished_at = ?")
            params.append(to_iso(now))

        params.extend([execution_id, owner])

        cursor = await db.execute(
            f"""
            UPDATE flow_executions
            SET {", ".join(updates)}
            WHERE id = ? AND lease_owner = ? AND status = 'running'
            """,
            params,
        )
        await db.commit()

        if cursor.rowcount == 0:
            raise LeaseLostError(f"Lost claim on execution {execution_id}")

    # ==================== Cancellation ====================

    async def cancel_waiting(self, execution_id: str, reason: str, now: datetime) -> bool:
        """Cancel an idle execution immediately."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_executions
            SET status = 'cancelled', wait_until = NULL, waiting_meta_json = NULL,
                last_error = ?, finished_at = ?, updated_at = ?
            WHERE id = ? AND status = 'waiting'
            """,
            (reason, to_iso(now), to_iso(now), execution_id),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def request_cancel(self, execution_id: str, now: datetime) -> bool:
        """Flag a running execution for cancellation at its next claim boundary."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_executions
            SET cancel_requested = 1, updated_at = ?
            WHERE id = ? AND status = 'running'
            """,
            (to_iso(now), execution_id),
        )
        await db.commit()
        return cursor.rowcount == 1

    async def is_cancel_requested(self, execution_id: str) -> bool:
        db = await get_db()
        cursor = await db.execute(
            "SELECT cancel_requested FROM flow_executions WHERE id = ?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        return bool(row and row["cancel_requested"])

    # ==================== Signals ====================

    async def add_signal(self, signal: ResumeSignal, now: datetime) -> str:
        """Queue an external resume signal for the next sweep."""
        db = await get_db()
        signal_id = str(uuid.uuid4())
        await db.execute(
            """
            INSERT INTO flow_signals
            (id, signal_type, clinic_id, group_id, subject_type, subject_id, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                signal_id,
                signal.signal_type,
                signal.subject.clinic_id,
                signal.subject.group_id,
                signal.subject.subject_type.value,
                signal.subject.subject_id,
                json.dumps(signal.payload),
                to_iso(now),
            ),
        )
        await db.commit()
        return signal_id

    async def pending_signals(self, limit: int) -> list[Signal]:
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM flow_signals
            WHERE consumed_at IS NULL
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        return [_row_to_signal(row) for row in rows]

    async def mark_signal_consumed(self, signal_id: str, now: datetime) -> None:
        db = await get_db()
        await db.execute(
            "UPDATE flow_signals SET consumed_at = ? WHERE id = ? AND consumed_at IS NULL",
            (to_iso(now), signal_id),
        )
        await db.commit()

    async def find_waiting_for_signal(self, signal: Signal) -> list[Execution]:
        """Waiting executions of the signal's subject that await its type."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            SELECT {_EXECUTION_COLUMNS} FROM flow_executions
            WHERE status = 'waiting' AND clinic_id = ?
              AND subject_type = ? AND subject_id = ?
            ORDER BY created_at ASC
            """,
            (
                signal.subject.clinic_id,
                signal.subject.subject_type.value,
                signal.subject.subject_id,
            ),
        )
        rows = await cursor.fetchall()
        executions = [_row_to_execution(row) for row in rows]
        return [
            e
            for e in executions
            if e.waiting_meta and e.waiting_meta.get("awaits") == signal.signal_type
        ]


# Global instance
execution_store = ExecutionStore()
