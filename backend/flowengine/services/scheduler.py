"""Execution scheduler - the only writer of execution rows.

Drives executions through running -> waiting -> ... -> terminal. Work is
picked up by a periodic sweep that recovers crashed claims, matches resume
signals and claims due waits. A claim is an atomic conditional update, so
duplicate ticks and racing workers never evaluate the same execution twice.
"""

import asyncio
import logging
import socket
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from flowengine.clock import Clock, from_iso, to_iso, utc_now
from flowengine.config import EngineSettings
from flowengine.db.execution_store import ExecutionStore, execution_store
from flowengine.db.template_store import TemplateStore, template_store
from flowengine.errors import (
    ExternalActionError,
    InvalidTransitionError,
    LeaseLostError,
    UnsupportedNodeTypeError,
)
from flowengine.models import (
    Execution,
    ExecutionStatus,
    LogStatus,
    NodeDefinition,
    Signal,
    Subject,
    Template,
)
from flowengine.services.audit import AuditLogger, apply_context_diff, compute_context_diff
from flowengine.services.interpreter import (
    Advance,
    Fail,
    NodeInterpreter,
    ResumeMode,
    Suspend,
    Terminate,
    merge_node_output,
)

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    recovered: list[str] = field(default_factory=list)
    resumed_by_signal: list[str] = field(default_factory=list)
    claimed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    signals_consumed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.recovered) + len(self.resumed_by_signal) + len(self.claimed)


def committed_visits(context: dict[str, Any], node_id: str) -> int:
    """How many times a node's step has been committed for this execution.

    The count lives in the node's outputs and is bumped in the same write
    that records the step, so it also numbers the node's idempotency keys.
    """
    output = (context.get("outputs") or {}).get(node_id)
    if isinstance(output, dict) and isinstance(output.get("visits"), int):
        return output["visits"]
    return 0


def _default_owner() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class ExecutionScheduler:
    """Owns the execution state machine."""

    def __init__(
        self,
        interpreter: NodeInterpreter,
        audit: AuditLogger,
        settings: EngineSettings | None = None,
        templates: TemplateStore | None = None,
        executions: ExecutionStore | None = None,
        clock: Clock = utc_now,
        owner: str | None = None,
    ):
        self.interpreter = interpreter
        self.audit = audit
        self.settings = settings or EngineSettings()
        self.templates = templates or template_store
        self.executions = executions or execution_store
        self.clock = clock
        self.owner = owner or _default_owner()
        self._semaphore = asyncio.Semaphore(self.settings.max_workers)

    def _lease_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.settings.lease_seconds)

    # ==================== Public operations ====================

    async def start(
        self,
        template: Template,
        subject: Subject,
        initial_context: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Execution:
        """Create an execution at the entry node and run it until it suspends or ends.

        If `idempotency_key` was already used, the existing execution is
        returned untouched.
        """
        now = self.clock()
        context: dict[str, Any] = {
            "trigger": {"type": template.trigger_type},
            "subject": subject.model_dump(mode="json"),
            **(initial_context or {}),
        }
        if not isinstance(context.get("outputs"), dict):
            context["outputs"] = {}

        execution, created = await self.executions.create(
            template,
            subject,
            context,
            idempotency_key or str(uuid.uuid4()),
            self.owner,
            self._lease_until(now),
            now,
        )
        if not created:
            return execution

        logger.info(
            f"Started execution {execution.id} of {template.template_key} v{template.version} "
            f"for {subject.key}"
        )
        await self._run_cycle(execution.id)
        return await self.executions.get(execution.id)

    async def claim(self, execution_id: str) -> bool:
        """Claim a due waiting execution. A no-op for any other status."""
        now = self.clock()
        return await self.executions.claim(
            execution_id, self.owner, self._lease_until(now), now, due_only=True
        )

    async def resume(self, execution_id: str) -> Execution:
        """Claim a due execution and run it. Returns the row either way."""
        if await self.claim(execution_id):
            await self._run_cycle(execution_id)
        return await self.executions.get(execution_id)

    async def cancel(self, execution_id: str, reason: str = "cancelled") -> Execution:
        """Cancel an execution.

        Waiting executions are cancelled at once; running ones are flagged
        and stop at the next node boundary.

        Raises:
            InvalidTransitionError: If the execution already finished
        """
        now = self.clock()
        execution = await self.executions.get(execution_id)
        if execution.is_terminal:
            raise InvalidTransitionError(
                f"Execution {execution_id} is already {execution.status.value}"
            )

        if execution.status == ExecutionStatus.WAITING:
            if await self.executions.cancel_waiting(execution_id, reason, now):
                logger.info(f"Cancelled waiting execution {execution_id}")
                return await self.executions.get(execution_id)
            # Claimed between the read and the update
            execution = await self.executions.get(execution_id)

        if execution.status == ExecutionStatus.RUNNING:
            await self.executions.request_cancel(execution_id, now)
            logger.info(f"Cancel requested for running execution {execution_id}")
        return await self.executions.get(execution_id)

    async def retry(self, execution_id: str) -> Execution:
        """Explicitly re-run an errored execution from its current node.

        Raises:
            InvalidTransitionError: If the execution is not in `error`
        """
        now = self.clock()
        claimed = await self.executions.claim_for_retry(
            execution_id, self.owner, self._lease_until(now), now
        )
        if not claimed:
            execution = await self.executions.get(execution_id)
            raise InvalidTransitionError(
                f"Execution {execution_id} cannot be retried from {execution.status.value}"
            )
        logger.info(f"Retrying execution {execution_id}")
        await self._run_cycle(execution_id)
        return await self.executions.get(execution_id)

    # ==================== Sweep ====================

    async def sweep(self) -> SweepReport:
        """Recover expired claims, apply resume signals and run due waits."""
        report = SweepReport()
        now = self.clock()
        batch = self.settings.sweep_batch_size
        tasks = []

        for execution in await self.executions.find_expired_leases(now, batch):
            if await self.executions.take_over_lease(
                execution, self.owner, self._lease_until(now), now
            ):
                report.recovered.append(execution.id)
                tasks.append(self._guarded(self._recover(execution.id), execution.id, report))

        for signal in await self.executions.pending_signals(batch):
            execution_id = await self._claim_for_signal(signal)
            await self.executions.mark_signal_consumed(signal.id, self.clock())
            report.signals_consumed += 1
            if execution_id:
                report.resumed_by_signal.append(execution_id)
                tasks.append(
                    self._guarded(self._run_cycle(execution_id), execution_id, report)
                )

        for execution_id in await self.executions.find_due(now, batch):
            if await self.claim(execution_id):
                report.claimed.append(execution_id)
                tasks.append(
                    self._guarded(self._run_cycle(execution_id), execution_id, report)
                )
            else:
                report.skipped.append(execution_id)

        if tasks:
            await asyncio.gather(*tasks)

        if report.processed or report.errors:
            logger.info(
                f"Sweep: recovered={len(report.recovered)} "
                f"signals={len(report.resumed_by_signal)} claimed={len(report.claimed)} "
                f"skipped={len(report.skipped)} errors={len(report.errors)}"
            )
        return report

    async def run_forever(self, interval: float | None = None) -> None:
        """Sweep periodically until cancelled."""
        interval = interval if interval is not None else self.settings.sweep_interval_seconds
        logger.info(f"Scheduler {self.owner} sweeping every {interval}s")
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sweep failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def _guarded(
        self, work: Awaitable[None], execution_id: str, report: SweepReport
    ) -> None:
        """Run one execution under the worker pool, recording failures in the report."""
        async with self._semaphore:
            try:
                await work
            except Exception as e:
                logger.error(f"Execution {execution_id} failed in sweep: {e}", exc_info=True)
                report.errors.append(f"{execution_id}: {e}")

    async def _claim_for_signal(self, signal: Signal) -> str | None:
        """Claim the oldest waiting execution that awaits this signal."""
        for execution in await self.executions.find_waiting_for_signal(signal):
            now = self.clock()
            if not await self.executions.claim(
                execution.id, self.owner, self._lease_until(now), now, due_only=False
            ):
                continue
            # Persist the resume payload so a crash before the wake is applied
            # still resumes down the response branch
            await self.executions.commit_state(
                execution.id,
                self.owner,
                now,
                status=ExecutionStatus.RUNNING,
                waiting_meta={
                    **(execution.waiting_meta or {}),
                    "resume_mode": ResumeMode.SIGNAL,
                    "resume_payload": signal.payload,
                },
                lease_expires_at=self._lease_until(now),
            )
            logger.info(f"Signal {signal.id} resumes execution {execution.id}")
            return execution.id

        logger.debug(f"Signal {signal.id} ({signal.signal_type}) matched no waiting execution")
        return None

    async def _recover(self, execution_id: str) -> None:
        """Resume an execution whose previous holder stopped renewing its lease."""
        closed = await self.audit.reconcile_interrupted(execution_id)
        logger.warning(
            f"Recovering execution {execution_id} ({closed} interrupted step(s) closed)"
        )
        await self._run_cycle(execution_id)

    # ==================== Evaluation cycle ====================

    async def _run_cycle(self, execution_id: str) -> None:
        """Evaluate nodes until the execution suspends, ends or loses its claim."""
        try:
            await self._evaluate_until_stop(execution_id)
        except LeaseLostError as e:
            logger.warning(f"{e}; another worker owns it now")

    async def _evaluate_until_stop(self, execution_id: str) -> None:
        execution = await self.executions.get(execution_id)
        if await self._replay_closed_step(execution):
            execution = await self.executions.get(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return

        template = await self.templates.get_by_id(execution.template_id)
        context = execution.context
        node_id = execution.current_node_id
        attempt = 1
        meta = execution.waiting_meta or {}

        if meta.get("kind") == "retry":
            attempt = int(meta.get("attempt", 1))
        elif meta.get("kind") in ("delay", "response"):
            if await self._cancel_if_requested(execution_id):
                return
            node = template.get_node(node_id)
            mode = meta.get("resume_mode", ResumeMode.TIMEOUT)
            now = self.clock()
            outcome = self.interpreter.resume(node, mode, meta.get("resume_payload"), now)
            if isinstance(outcome, Terminate):
                # The woken node ends the run, so it gets its own entry
                entry_id = await self.audit.begin_step(execution_id, node_id, node.type)
                await self._terminate(execution_id, entry_id, node_id, context, outcome, now)
                return
            context = merge_node_output(context, node_id, outcome.context_patch, "success", now)
            node_id = outcome.next_node_id
            await self._commit(execution_id, now, ExecutionStatus.RUNNING, node_id, context)

        for _ in range(self.settings.max_steps_per_cycle):
            if await self._cancel_if_requested(execution_id):
                return

            node = template.get_node(node_id)
            if node is None:
                await self._commit(
                    execution_id,
                    self.clock(),
                    ExecutionStatus.ERROR,
                    node_id,
                    context,
                    last_error=f"node_not_found:{node_id}",
                )
                return

            visit = committed_visits(context, node_id)
            entry_id = await self.audit.begin_step(execution_id, node_id, node.type, attempt)
            try:
                outcome = await self.interpreter.evaluate(
                    template.engine_version,
                    node_id,
                    node,
                    context,
                    execution.subject,
                    f"flow:{execution_id}:{node_id}:{visit}",
                    self.clock(),
                )
            except Exception as e:
                outcome = Fail(e)
            now = self.clock()

            if isinstance(outcome, Advance):
                after = merge_node_output(
                    context, node_id, {**outcome.context_patch, "visits": visit + 1}, "success", now
                )
                await self.audit.end_step(
                    entry_id,
                    LogStatus.SUCCESS,
                    {
                        "kind": "advance",
                        "visit": visit,
                        "next_node_id": outcome.next_node_id,
                        "output": outcome.context_patch,
                    },
                    compute_context_diff(context, after),
                )
                context, node_id, attempt = after, outcome.next_node_id, 1
                await self._commit(execution_id, now, ExecutionStatus.RUNNING, node_id, context)
                continue

            if isinstance(outcome, Suspend):
                after = merge_node_output(
                    context, node_id, {**outcome.context_patch, "visits": visit + 1}, "waiting", now
                )
                await self.audit.end_step(
                    entry_id,
                    LogStatus.SUCCESS,
                    {
                        "kind": "suspend",
                        "visit": visit,
                        "wait_until": to_iso(outcome.wait_until),
                        "waiting_meta": outcome.waiting_meta,
                    },
                    compute_context_diff(context, after),
                )
                await self._commit(
                    execution_id,
                    now,
                    ExecutionStatus.WAITING,
                    node_id,
                    after,
                    wait_until=outcome.wait_until,
                    waiting_meta=outcome.waiting_meta,
                )
                logger.debug(f"Execution {execution_id} waiting at {node_id}")
                return

            if isinstance(outcome, Terminate):
                await self._terminate(execution_id, entry_id, node_id, context, outcome, now)
                return

            # Fail
            routed = await self._handle_failure(
                execution_id, entry_id, node_id, node, attempt, context, outcome, now
            )
            if routed is None:
                return
            node_id, context = routed
            attempt = 1

        await self._commit(
            execution_id,
            self.clock(),
            ExecutionStatus.ERROR,
            node_id,
            context,
            last_error="max_steps_exceeded",
        )
        logger.warning(
            f"Execution {execution_id} exceeded {self.settings.max_steps_per_cycle} steps"
        )

    async def _terminate(
        self,
        execution_id: str,
        entry_id: str,
        node_id: str,
        context: dict[str, Any],
        outcome: Terminate,
        now: datetime,
    ) -> None:
        failed = outcome.status == ExecutionStatus.ERROR
        visit = committed_visits(context, node_id)
        after = merge_node_output(
            context,
            node_id,
            {**outcome.context_patch, "visits": visit + 1},
            outcome.status.value,
            now,
        )
        await self.audit.end_step(
            entry_id,
            LogStatus.ERROR if failed else LogStatus.SUCCESS,
            {
                "kind": "terminate",
                "visit": visit,
                "status": outcome.status.value,
                "reason": outcome.reason,
                "output": outcome.context_patch,
            },
            compute_context_diff(context, after),
            error_message=outcome.reason if failed else None,
        )
        last_error = outcome.reason if failed else None
        await self._commit(execution_id, now, outcome.status, node_id, after, last_error=last_error)
        logger.info(f"Execution {execution_id} finished with {outcome.status.value} at {node_id}")

    async def _replay_closed_step(self, execution: Execution) -> bool:
        """Commit a step whose log entry was closed but whose outcome never was.

        A worker that dies between the two writes leaves the node done but the
        execution still pointing at it. Its logged outcome is committed
        instead of invoking the node a second time. Returns True if a step
        was replayed.
        """
        if execution.status != ExecutionStatus.RUNNING:
            return False
        entry = await self.audit.store.last_entry(execution.id)
        if (
            entry is None
            or entry.status == LogStatus.RUNNING
            or entry.node_id != execution.current_node_id
        ):
            return False
        snapshot = entry.audit_snapshot or {}
        kind = snapshot.get("kind")
        if kind not in ("advance", "suspend", "terminate"):
            return False
        if snapshot.get("visit") != committed_visits(execution.context, entry.node_id):
            return False

        after = apply_context_diff(execution.context, self.audit.read_diff(entry) or {})
        now = self.clock()
        if kind == "advance":
            await self._commit(
                execution.id, now, ExecutionStatus.RUNNING, snapshot["next_node_id"], after
            )
        elif kind == "suspend":
            await self._commit(
                execution.id,
                now,
                ExecutionStatus.WAITING,
                entry.node_id,
                after,
                wait_until=from_iso(snapshot["wait_until"]),
                waiting_meta=snapshot["waiting_meta"],
            )
        else:
            status = ExecutionStatus(snapshot["status"])
            last_error = snapshot.get("reason") if status == ExecutionStatus.ERROR else None
            await self._commit(
                execution.id, now, status, entry.node_id, after, last_error=last_error
            )
        logger.warning(
            f"Execution {execution.id}: committed logged {kind} of {entry.node_id} "
            f"(step {entry.seq}) without re-running it"
        )
        return True

    async def _handle_failure(
        self,
        execution_id: str,
        entry_id: str,
        node_id: str,
        node: NodeDefinition,
        attempt: int,
        context: dict[str, Any],
        outcome: Fail,
        now: datetime,
    ) -> tuple[str, dict[str, Any]] | None:
        """Close a failed step and decide what happens next.

        Returns the node and context to continue with when the failure is
        routed down `on_fail`, otherwise None once the execution is committed.
        """
        error = outcome.error
        retriable = isinstance(error, ExternalActionError) and error.retriable
        on_fail = node.outputs.get("on_fail")

        if retriable and attempt < self.settings.max_action_attempts:
            delay = min(
                self.settings.retry_backoff_seconds * (2 ** (attempt - 1)),
                self.settings.retry_backoff_max_seconds,
            )
            wait_until = now + timedelta(seconds=delay)
            waiting_meta = {"kind": "retry", "attempt": attempt + 1, "node_type": node.type}
            after = merge_node_output(
                context,
                node_id,
                {"error_message": str(error), "attempt": attempt},
                "retrying",
                now,
            )
            await self.audit.end_step(
                entry_id,
                LogStatus.ERROR,
                {"kind": "retry", "attempt": attempt, "retry_at": to_iso(wait_until)},
                compute_context_diff(context, after),
                error=error,
            )
            await self._commit(
                execution_id,
                now,
                ExecutionStatus.WAITING,
                node_id,
                after,
                wait_until=wait_until,
                waiting_meta=waiting_meta,
                last_error=str(error),
            )
            logger.warning(
                f"Execution {execution_id}: {node_id} attempt {attempt} failed ({error}), "
                f"retrying in {delay:.0f}s"
            )
            return None

        if retriable:
            message = f"exhausted retries after {attempt} attempts: {error}"
        else:
            message = str(error) or type(error).__name__

        fatal = isinstance(error, UnsupportedNodeTypeError)
        route = on_fail if on_fail and not fatal else None
        after = merge_node_output(context, node_id, {"error_message": message}, "error", now)
        await self.audit.end_step(
            entry_id,
            LogStatus.ERROR,
            {"kind": "fail", "attempt": attempt, "on_fail": route},
            compute_context_diff(context, after),
            error=error,
        )

        if route:
            await self._commit(
                execution_id, now, ExecutionStatus.RUNNING, route, after, last_error=message
            )
            logger.warning(f"Execution {execution_id}: {node_id} failed, following on_fail")
            return route, after

        await self._commit(
            execution_id, now, ExecutionStatus.ERROR, node_id, after, last_error=message
        )
        logger.error(f"Execution {execution_id} failed at {node_id}: {message}")
        return None

    async def _cancel_if_requested(self, execution_id: str) -> bool:
        if not await self.executions.is_cancel_requested(execution_id):
            return False
        execution = await self.executions.get(execution_id)
        await self._commit(
            execution_id,
            self.clock(),
            ExecutionStatus.CANCELLED,
            execution.current_node_id,
            execution.context,
            last_error="cancelled",
        )
        logger.info(f"Execution {execution_id} cancelled at {execution.current_node_id}")
        return True

    async def _commit(
        self,
        execution_id: str,
        now: datetime,
        status: ExecutionStatus,
        node_id: str | None,
        context: dict[str, Any],
        wait_until: datetime | None = None,
        waiting_meta: dict[str, Any] | None = None,
        last_error: str | None = None,
    ) -> None:
        await self.executions.commit_state(
            execution_id,
            self.owner,
            now,
            status=status,
            current_node_id=node_id,
            context=context,
            wait_until=wait_until,
            waiting_meta=waiting_meta,
            last_error=last_error,
            lease_expires_at=self._lease_until(now),
        )
