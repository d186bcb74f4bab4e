"""Services for the automation flow engine.

The scheduler and trigger dispatcher sit on top of the stores and are
imported from their own modules.
"""

from flowengine.services.actions import ActionGateway, HttpActionGateway
from flowengine.services.audit import AuditLogger, compute_context_diff, redact
from flowengine.services.graph_validator import normalize_template_key, validate_template
from flowengine.services.interpreter import (
    Advance,
    Fail,
    NodeInterpreter,
    Outcome,
    Suspend,
    Terminate,
)
from flowengine.services.node_registry import NODE_SPECS, NodeKind, NodeSpec, get_node_spec

__all__ = [
    "ActionGateway",
    "HttpActionGateway",
    "AuditLogger",
    "compute_context_diff",
    "redact",
    "normalize_template_key",
    "validate_template",
    "Advance",
    "Fail",
    "NodeInterpreter",
    "Outcome",
    "Suspend",
    "Terminate",
    "NODE_SPECS",
    "NodeKind",
    "NodeSpec",
    "get_node_spec",
]
