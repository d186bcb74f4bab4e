"""Exception taxonomy for the automation flow engine."""

from typing import Any


class FlowEngineError(Exception):
    """Base exception for flow engine errors."""

    pass


class ValidationError(FlowEngineError):
    """A template definition failed graph or parameter validation.

    Carries every violation found, not just the first one.
    """

    def __init__(self, violations: list[dict[str, Any]]):
        self.violations = violations
        summary = "; ".join(v["message"] for v in violations[:5])
        if len(violations) > 5:
            summary += f" (+{len(violations) - 5} more)"
        super().__init__(f"Template validation failed: {summary}")


class NotFoundError(FlowEngineError):
    """Requested template or execution does not exist."""

    pass


class AmbiguousTriggerError(FlowEngineError):
    """Two or more active templates match an event with equal scope."""

    def __init__(self, event_type: str, candidates: list[str]):
        self.event_type = event_type
        self.candidates = candidates
        super().__init__(
            f"Ambiguous trigger '{event_type}': templates {', '.join(candidates)} "
            "match with the same scope"
        )


class UnsupportedNodeTypeError(FlowEngineError):
    """Node type (or engine version) is not part of the closed node set."""

    def __init__(self, node_type: str, engine_version: str):
        self.node_type = node_type
        self.engine_version = engine_version
        super().__init__(
            f"Node type '{node_type}' is not supported by engine {engine_version}"
        )


class ExternalActionError(FlowEngineError):
    """A side-effecting call into an external collaborator failed."""

    def __init__(self, message: str, action: str | None = None, retriable: bool = True):
        super().__init__(message)
        self.action = action
        self.retriable = retriable


class InterruptedStepError(FlowEngineError):
    """A step was left open by a crashed worker."""

    pass


class InvalidTransitionError(FlowEngineError):
    """Requested status transition is not allowed from the current status."""

    pass


class LeaseLostError(FlowEngineError):
    """The worker no longer holds the claim on an execution."""

    pass


class SecretsError(FlowEngineError):
    """Error related to context diff encryption."""

    pass
