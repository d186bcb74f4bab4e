"""Audit & diff logging for node invocations.

Each node invocation gets one log entry. The entry carries a redacted
snapshot that is safe to show to operators, the minimal context diff
encrypted at rest, and a SHA-256 link to the previous entry of the same
execution so that edits to the log are detectable.
"""

import hashlib
import json
import logging
from typing import Any

from flowengine.clock import Clock, to_iso, utc_now
from flowengine.db.log_store import LogStore, log_store
from flowengine.db.secrets import ContextCipher
from flowengine.errors import InterruptedStepError
from flowengine.models import ExecutionLogEntry, LogStatus

logger = logging.getLogger(__name__)

REDACTED = "***"
MAX_SNAPSHOT_STRING = 200

# Keys whose values identify a person or carry message content
SENSITIVE_KEYS = frozenset(
    {
        "phone",
        "phone_number",
        "email",
        "name",
        "first_name",
        "last_name",
        "full_name",
        "message",
        "message_text",
        "text",
        "body",
        "response_text",
        "content",
        "notes",
        "note",
        "variables",
    }
)

_MISSING = object()


def redact(value: Any, max_length: int = MAX_SNAPSHOT_STRING) -> Any:
    """Mask sensitive keys and truncate long strings, recursively."""
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if str(key).lower() in SENSITIVE_KEYS and item is not None:
                redacted[key] = REDACTED
            else:
                redacted[key] = redact(item, max_length)
        return redacted
    if isinstance(value, list):
        return [redact(item, max_length) for item in value]
    if isinstance(value, str) and len(value) > max_length:
        return value[:max_length] + f"...(+{len(value) - max_length} chars)"
    return value


def compute_context_diff(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Compute the minimal delta between two contexts.

    Returns:
        {"set": {dotted.path: new_value}, "unset": [dotted.path, ...]}
        Nested dicts are descended into; any other changed value is set
        whole.
    """
    changes: dict[str, Any] = {}
    removed: list[str] = []

    def walk(old: dict[str, Any], new: dict[str, Any], prefix: str) -> None:
        for key in sorted(set(old) | set(new), key=str):
            path = f"{prefix}{key}"
            old_value = old.get(key, _MISSING)
            new_value = new.get(key, _MISSING)
            if new_value is _MISSING:
                removed.append(path)
            elif old_value is _MISSING:
                changes[path] = new_value
            elif isinstance(old_value, dict) and isinstance(new_value, dict):
                walk(old_value, new_value, f"{path}.")
            elif old_value != new_value:
                changes[path] = new_value

    walk(before or {}, after or {}, "")
    return {"set": changes, "unset": removed}


def is_empty_diff(diff: dict[str, Any] | None) -> bool:
    return not diff or (not diff.get("set") and not diff.get("unset"))


def apply_context_diff(context: dict[str, Any], diff: dict[str, Any]) -> dict[str, Any]:
    """Replay a diff onto a copy of `context`."""
    result = json.loads(json.dumps(context))
    for path, value in diff.get("set", {}).items():
        *parents, leaf = path.split(".")
        target = result
        for part in parents:
            target = target.setdefault(part, {})
        target[leaf] = value
    for path in diff.get("unset", []):
        *parents, leaf = path.split(".")
        target = result
        for part in parents:
            target = target.get(part, {})
        target.pop(leaf, None)
    return result


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(entry: ExecutionLogEntry, prev_hash: str | None) -> str:
    """Hash an entry's recorded content together with its predecessor's hash."""
    diff_digest = (
        hashlib.sha256(entry.encrypted_context_diff).hexdigest()
        if entry.encrypted_context_diff is not None
        else None
    )
    basis = {
        "execution_id": entry.execution_id,
        "seq": entry.seq,
        "node_id": entry.node_id,
        "node_type": entry.node_type,
        "status": entry.status.value,
        "attempt": entry.attempt,
        "started_at": to_iso(entry.started_at),
        "finished_at": to_iso(entry.finished_at),
        "error_type": entry.error_type,
        "error_message": entry.error_message,
        "audit_snapshot": entry.audit_snapshot,
        "context_diff_sha256": diff_digest,
        "prev_hash": prev_hash,
    }
    return hashlib.sha256(_canonical(basis).encode("utf-8")).hexdigest()


class AuditLogger:
    """Writes and verifies the per-execution audit trail."""

    def __init__(
        self,
        cipher: ContextCipher,
        store: LogStore | None = None,
        clock: Clock = utc_now,
    ):
        self.cipher = cipher
        self.store = store or log_store
        self.clock = clock

    async def begin_step(
        self,
        execution_id: str,
        node_id: str,
        node_type: str,
        attempt: int = 1,
    ) -> str:
        """Append a `running` entry for a node invocation and return its id."""
        entry = await self.store.insert_running(
            execution_id, node_id, node_type, attempt, self.clock()
        )
        logger.debug(
            f"Execution {execution_id}: step {entry.seq} {node_id} ({node_type}) attempt {attempt}"
        )
        return entry.id

    async def end_step(
        self,
        entry_id: str,
        status: LogStatus,
        audit_snapshot: dict[str, Any] | None = None,
        context_diff: dict[str, Any] | None = None,
        error: BaseException | None = None,
        error_message: str | None = None,
    ) -> ExecutionLogEntry:
        """Close a `running` entry with its outcome.

        The snapshot is redacted, the diff encrypted and the entry linked
        into the execution's hash chain. `error_message` records a reason
        for steps that end in error without raising, such as `end/error`.
        """
        entry = await self.store.get(entry_id)

        encrypted = None
        if not is_empty_diff(context_diff):
            encrypted = self.cipher.encrypt(_canonical(context_diff).encode("utf-8"))

        closed = entry.model_copy(
            update={
                "status": status,
                "finished_at": self.clock(),
                "error_type": type(error).__name__ if error else None,
                "error_message": str(error) if error else error_message,
                "audit_snapshot": redact(audit_snapshot) if audit_snapshot is not None else None,
                "encrypted_context_diff": encrypted,
            }
        )
        prev_hash = await self.store.previous_hash(entry.execution_id, entry.seq)
        entry_hash = compute_entry_hash(closed, prev_hash)

        await self.store.close(
            entry_id,
            status,
            closed.finished_at,
            error_type=closed.error_type,
            error_message=closed.error_message,
            audit_snapshot=closed.audit_snapshot,
            encrypted_context_diff=encrypted,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
        )
        return closed.model_copy(update={"prev_hash": prev_hash, "entry_hash": entry_hash})

    async def reconcile_interrupted(self, execution_id: str, reason: str = "interrupted") -> int:
        """Close entries a crashed worker left in `running`.

        Returns the number of entries closed.
        """
        open_entries = await self.store.find_open(execution_id)
        for entry in open_entries:
            await self.end_step(
                entry.id,
                LogStatus.ERROR,
                audit_snapshot={"reconciled": True},
                error=InterruptedStepError(reason),
            )
        if open_entries:
            logger.warning(
                f"Execution {execution_id}: closed {len(open_entries)} interrupted step(s)"
            )
        return len(open_entries)

    def read_diff(self, entry: ExecutionLogEntry) -> dict[str, Any] | None:
        """Decrypt an entry's context diff for diagnosis."""
        if entry.encrypted_context_diff is None:
            return None
        return json.loads(self.cipher.decrypt(entry.encrypted_context_diff))

    async def verify_chain(self, execution_id: str) -> bool:
        """Recompute the hash chain of an execution's closed entries."""
        prev_hash = None
        for entry in await self.store.list_for_execution(execution_id):
            if entry.status == LogStatus.RUNNING:
                prev_hash = entry.entry_hash
                continue
            if entry.prev_hash != prev_hash:
                logger.warning(f"Execution {execution_id}: broken link at seq {entry.seq}")
                return False
            if compute_entry_hash(entry, prev_hash) != entry.entry_hash:
                logger.warning(f"Execution {execution_id}: hash mismatch at seq {entry.seq}")
                return False
            prev_hash = entry.entry_hash
        return True

    async def entries(self, execution_id: str) -> list[ExecutionLogEntry]:
        return await self.store.list_for_execution(execution_id)
