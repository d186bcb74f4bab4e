"""Publish-time validation of template graphs.

Runs every check and returns every violation found so an operator can fix
a template in one pass. Nothing here runs at execution time.
"""

import re
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from flowengine.errors import UnsupportedNodeTypeError
from flowengine.models.template import TemplateDefinition
from flowengine.services.node_registry import (
    NODE_SPECS,
    NodeKind,
    NodeSpec,
    get_node_spec,
    parse_params,
)


def normalize_template_key(raw: str | None) -> str | None:
    """Lower-case a key and collapse anything non-alphanumeric into '_'."""
    base = re.sub(r"[^a-z0-9]+", "_", (raw or "").strip().lower()).strip("_")
    return base or None


def _violation(code: str, message: str, **details: Any) -> dict[str, Any]:
    violation: dict[str, Any] = {"code": code, "message": message}
    if details:
        violation["details"] = details
    return violation


def validate_template(definition: TemplateDefinition) -> list[dict[str, Any]]:
    """Validate a template definition.

    Args:
        definition: The template to validate

    Returns:
        List of violations (empty if the template is valid)
    """
    violations: list[dict[str, Any]] = []
    nodes = definition.nodes

    if definition.engine_version not in NODE_SPECS:
        violations.append(
            _violation(
                "engine_version_unsupported",
                f"Engine version '{definition.engine_version}' is not supported",
                supported=sorted(NODE_SPECS),
            )
        )

    if not definition.trigger_type.strip():
        violations.append(_violation("trigger_type_missing", "trigger_type is required"))

    if not nodes:
        violations.append(_violation("nodes_required", "A template needs at least one node"))
        return violations

    specs: dict[str, NodeSpec] = {}
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in nodes}

    for node_id, node in nodes.items():
        if not node_id.strip():
            violations.append(_violation("node_id_missing", "Node ids must not be blank"))

        spec: NodeSpec | None = None
        if definition.engine_version in NODE_SPECS:
            try:
                spec = get_node_spec(definition.engine_version, node.type)
            except UnsupportedNodeTypeError:
                violations.append(
                    _violation(
                        "node_type_unsupported",
                        f"Node {node_id} has unsupported type '{node.type}'",
                        node_id=node_id,
                    )
                )

        if spec is not None:
            specs[node_id] = spec
            try:
                params = parse_params(spec, node.config)
            except PydanticValidationError as e:
                for error in e.errors():
                    loc = ".".join(str(part) for part in error["loc"]) or "config"
                    violations.append(
                        _violation(
                            "node_params_invalid",
                            f"Node {node_id} ({node.type}): {loc}: {error['msg']}",
                            node_id=node_id,
                        )
                    )
            else:
                listens_to = getattr(params, "listens_to_node_id", None)
                if listens_to and listens_to not in nodes:
                    violations.append(
                        _violation(
                            "listens_to_missing",
                            f"Node {node_id} listens to {listens_to}, which does not exist",
                            node_id=node_id,
                        )
                    )

        for output_key, target in node.outputs.items():
            if spec is not None and output_key not in spec.outputs:
                violations.append(
                    _violation(
                        "output_unknown",
                        f"Node {node_id} ({node.type}) has no output '{output_key}'",
                        node_id=node_id,
                        allowed=list(spec.outputs),
                    )
                )
                continue
            if target is None or not target.strip():
                continue
            if target not in nodes:
                violations.append(
                    _violation(
                        "output_target_missing",
                        f"Node {node_id} points to {target} on '{output_key}', which does not exist",
                        node_id=node_id,
                    )
                )
                continue
            adjacency[node_id].append(target)

    entry = definition.entry_node_id
    if entry not in nodes:
        violations.append(
            _violation("entry_node_invalid", f"entry_node_id {entry} is not in nodes")
        )
    else:
        unreachable = sorted(set(nodes) - _reachable(entry, adjacency))
        if unreachable:
            violations.append(
                _violation(
                    "unreachable_nodes",
                    f"Nodes not reachable from {entry}: {', '.join(unreachable)}",
                    nodes=unreachable,
                )
            )

    for cycle in _cycles_without_wait(adjacency, specs):
        violations.append(
            _violation(
                "cycle_without_wait",
                f"Cycle through {', '.join(cycle)} has no wait node",
                nodes=cycle,
            )
        )

    return violations


def _reachable(entry: str, adjacency: dict[str, list[str]]) -> set[str]:
    visited: set[str] = set()
    stack = [entry]
    while stack:
        current = stack.pop()
        if current in visited:
            continue
        visited.add(current)
        stack.extend(n for n in adjacency.get(current, []) if n not in visited)
    return visited


def _cycles_without_wait(
    adjacency: dict[str, list[str]],
    specs: dict[str, NodeSpec],
) -> list[list[str]]:
    """Find strongly connected components that never pass a wait node.

    Loops are allowed as long as every one of them suspends, so wait nodes
    are removed and any remaining cycle is a tight loop.
    """

    def is_wait(node_id: str) -> bool:
        spec = specs.get(node_id)
        return spec is not None and spec.kind == NodeKind.WAIT

    graph = {
        node_id: [t for t in targets if not is_wait(t)]
        for node_id, targets in adjacency.items()
        if not is_wait(node_id)
    }

    # Tarjan's algorithm
    index_counter = 0
    indices: dict[str, int] = {}
    lowlinks: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []

    def strongconnect(node_id: str) -> None:
        nonlocal index_counter
        indices[node_id] = lowlinks[node_id] = index_counter
        index_counter += 1
        stack.append(node_id)
        on_stack.add(node_id)

        for target in graph.get(node_id, []):
            if target not in indices:
                strongconnect(target)
                lowlinks[node_id] = min(lowlinks[node_id], lowlinks[target])
            elif target in on_stack:
                lowlinks[node_id] = min(lowlinks[node_id], indices[target])

        if lowlinks[node_id] == indices[node_id]:
            component = []
            while True:
                member = stack.pop()
                on_stack.discard(member)
                component.append(member)
                if member == node_id:
                    break
            if len(component) > 1 or node_id in graph.get(node_id, []):
                components.append(sorted(component))

    for node_id in graph:
        if node_id not in indices:
            strongconnect(node_id)

    return components
