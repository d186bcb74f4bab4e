"""Pydantic models for versioned automation flow templates."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TemplateScope(str, Enum):
    """Which subjects a template applies to, ordered by specificity."""

    SYSTEM = "system"
    GROUP = "group"
    CLINIC = "clinic"


class NodeDefinition(BaseModel):
    """A single step in a flow graph.

    `type` is the tag from the closed node set, `config` is the typed
    parameter payload for that tag and `outputs` maps each named exit of
    the node to the id of the next node (or None for an unconnected exit).
    """

    type: str
    config: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, str | None] = Field(default_factory=dict)


class TemplateDefinition(BaseModel):
    """Input for publishing a new template version."""

    template_key: str | None = None
    name: str
    description: str | None = None
    engine_version: str = "v2"
    trigger_type: str
    clinic_id: int | None = None
    group_id: int | None = None
    is_active: bool = True
    entry_node_id: str
    nodes: dict[str, NodeDefinition]


class TemplateRef(BaseModel):
    """Stable reference to one published template version."""

    id: str
    template_key: str
    version: int


class Template(BaseModel):
    """A published, immutable template version."""

    id: str
    template_key: str
    version: int
    engine_version: str
    name: str
    description: str | None = None
    trigger_type: str
    clinic_id: int | None = None
    group_id: int | None = None
    is_active: bool = True
    entry_node_id: str
    nodes: dict[str, NodeDefinition]
    published_at: datetime
    published_by: int | None = None

    model_config = {"frozen": True}

    @property
    def scope(self) -> TemplateScope:
        if self.clinic_id is not None:
            return TemplateScope.CLINIC
        if self.group_id is not None:
            return TemplateScope.GROUP
        return TemplateScope.SYSTEM

    @property
    def ref(self) -> TemplateRef:
        return TemplateRef(id=self.id, template_key=self.template_key, version=self.version)

    def get_node(self, node_id: str) -> NodeDefinition | None:
        return self.nodes.get(node_id)


class TemplateSummary(BaseModel):
    """Lightweight listing entry for template versions."""

    id: str
    template_key: str
    version: int
    name: str
    trigger_type: str
    is_active: bool
    scope: TemplateScope
    node_count: int
    published_at: datetime
