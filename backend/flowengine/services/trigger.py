"""Trigger dispatcher - maps external events onto template executions."""

import logging

from flowengine.clock import Clock, utc_now
from flowengine.config import EngineSettings
from flowengine.db.execution_store import ExecutionStore, execution_store
from flowengine.db.template_store import TemplateStore, template_store
from flowengine.errors import AmbiguousTriggerError
from flowengine.models import Execution, ResumeSignal, Subject, Template, TriggerEvent
from flowengine.services.scheduler import ExecutionScheduler

logger = logging.getLogger(__name__)


def scope_specificity(template: Template, subject: Subject) -> int:
    """How specifically a template targets a subject.

    3 = same clinic, 2 = same clinic group, 1 = system-wide, 0 = no match.
    """
    if template.clinic_id is not None:
        return 3 if template.clinic_id == subject.clinic_id else 0
    if template.group_id is not None:
        return 2 if template.group_id == subject.group_id else 0
    return 1


def execution_idempotency_key(event: TriggerEvent, template: Template) -> str:
    return f"{event.event_type}:{event.event_id}:{template.id}"


class TriggerDispatcher:
    """Selects the template for an event and starts its execution."""

    def __init__(
        self,
        scheduler: ExecutionScheduler,
        settings: EngineSettings | None = None,
        templates: TemplateStore | None = None,
        executions: ExecutionStore | None = None,
        clock: Clock = utc_now,
    ):
        self.scheduler = scheduler
        self.settings = settings or scheduler.settings
        self.templates = templates or template_store
        self.executions = executions or execution_store
        self.clock = clock

    async def select_template(self, event: TriggerEvent) -> Template | None:
        """Pick the most specific active template for an event.

        Raises:
            AmbiguousTriggerError: If two templates tie on the best specificity
        """
        candidates = await self.templates.find_trigger_candidates(event.event_type)
        scored = [
            (scope_specificity(template, event.subject), template) for template in candidates
        ]
        scored = [(score, template) for score, template in scored if score > 0]
        if not scored:
            return None

        best = max(score for score, _ in scored)
        winners = [template for score, template in scored if score == best]
        if len(winners) > 1:
            raise AmbiguousTriggerError(
                event.event_type, [f"{t.template_key} v{t.version}" for t in winners]
            )
        return winners[0]

    async def on_event(self, event: TriggerEvent) -> Execution | None:
        """Start the matching template for an event, if any.

        Redelivery of the same event returns the execution it already started.

        Raises:
            AmbiguousTriggerError: If the match is ambiguous; no execution is created
        """
        try:
            template = await self.select_template(event)
        except AmbiguousTriggerError as e:
            logger.error(f"Event {event.event_id}: {e}")
            raise

        if template is None:
            logger.debug(
                f"No active template for {event.event_type} "
                f"(clinic {event.subject.clinic_id}, {event.subject.key})"
            )
            return None

        initial_context = {
            "trigger": {
                "type": event.event_type,
                "event_id": event.event_id,
                "data": event.payload,
            },
        }
        return await self.scheduler.start(
            template,
            event.subject,
            initial_context,
            execution_idempotency_key(event, template),
        )

    async def on_signal(self, signal: ResumeSignal) -> str | None:
        """Record a resume signal for the next sweep.

        Returns the stored signal id, or None when inbound auto-resume is
        switched off.
        """
        if not self.settings.auto_resume_inbound:
            logger.debug(f"Auto-resume disabled, ignoring {signal.signal_type} signal")
            return None

        signal_id = await self.executions.add_signal(signal, self.clock())
        logger.info(f"Recorded {signal.signal_type} signal {signal_id} for {signal.subject.key}")
        return signal_id
