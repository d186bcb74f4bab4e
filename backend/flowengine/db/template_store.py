"""TemplateStore - versioned, immutable storage of flow templates."""

import json
import logging
import uuid
from datetime import datetime
from typing import Any

import aiosqlite

from flowengine.clock import from_iso, to_iso, utc_now
from flowengine.db.database import get_db
from flowengine.errors import NotFoundError, ValidationError
from flowengine.models import (
    NodeDefinition,
    Template,
    TemplateDefinition,
    TemplateRef,
    TemplateSummary,
)
from flowengine.services.graph_validator import normalize_template_key, validate_template

logger = logging.getLogger(__name__)

_TEMPLATE_COLUMNS = """
    id, template_key, version, engine_version, name, description, trigger_type,
    clinic_id, group_id, is_active, entry_node_id, nodes_json, published_at, published_by
"""


def _row_to_template(row: aiosqlite.Row) -> Template:
    nodes_raw: dict[str, Any] = json.loads(row["nodes_json"])
    return Template(
        id=row["id"],
        template_key=row["template_key"],
        version=row["version"],
        engine_version=row["engine_version"],
        name=row["name"],
        description=row["description"],
        trigger_type=row["trigger_type"],
        clinic_id=row["clinic_id"],
        group_id=row["group_id"],
        is_active=bool(row["is_active"]),
        entry_node_id=row["entry_node_id"],
        nodes={
            node_id: NodeDefinition.model_validate(node)
            for node_id, node in nodes_raw.items()
        },
        published_at=from_iso(row["published_at"]),
        published_by=row["published_by"],
    )


class TemplateStore:
    """Storage for published template versions.

    Rows are never updated in place except for the `is_active` flag;
    a change to a flow is published as a new version.
    """

    async def publish(
        self,
        definition: TemplateDefinition,
        published_by: int | None = None,
        now: datetime | None = None,
    ) -> TemplateRef:
        """Validate a definition and store it as the next version of its key.

        Raises:
            ValidationError: With every violation if the graph is invalid
        """
        template_key = normalize_template_key(definition.template_key) or normalize_template_key(
            definition.name
        )
        violations = validate_template(definition)
        if template_key is None:
            violations.insert(
                0,
                {"code": "template_key_missing", "message": "template_key or name is required"},
            )
        if violations:
            logger.warning(
                f"Rejected template '{template_key}': {len(violations)} violation(s)"
            )
            raise ValidationError(violations)

        db = await get_db()
        template_id = str(uuid.uuid4())
        nodes_json = json.dumps(
            {node_id: node.model_dump() for node_id, node in definition.nodes.items()}
        )

        # Version is assigned inside the INSERT so concurrent publishes of
        # the same key cannot pick the same number.
        await db.execute(
            """
            INSERT INTO flow_templates
            (id, template_key, version, engine_version, name, description, trigger_type,
             clinic_id, group_id, is_active, entry_node_id, nodes_json, published_at, published_by)
            SELECT ?, ?, COALESCE(MAX(version), 0) + 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
            FROM flow_templates WHERE template_key = ?
            """,
            (
                template_id,
                template_key,
                definition.engine_version,
                definition.name,
                definition.description,
                definition.trigger_type,
                definition.clinic_id,
                definition.group_id,
                1 if definition.is_active else 0,
                definition.entry_node_id,
                nodes_json,
                to_iso(now or utc_now()),
                published_by,
                template_key,
            ),
        )
        await db.commit()

        cursor = await db.execute(
            "SELECT version FROM flow_templates WHERE id = ?", (template_id,)
        )
        row = await cursor.fetchone()
        version = row["version"]

        logger.info(f"Published template {template_key} v{version} ({template_id})")
        return TemplateRef(id=template_id, template_key=template_key, version=version)

    async def get(self, template_key: str, version: int) -> Template:
        """Get one template version.

        Raises:
            NotFoundError: If the version does not exist
        """
        db = await get_db()
        cursor = await db.execute(
            f"SELECT {_TEMPLATE_COLUMNS} FROM flow_templates WHERE template_key = ? AND version = ?",
            (normalize_template_key(template_key), version),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Template {template_key} v{version} not found")
        return _row_to_template(row)

    async def get_by_id(self, template_id: str) -> Template:
        db = await get_db()
        cursor = await db.execute(
            f"SELECT {_TEMPLATE_COLUMNS} FROM flow_templates WHERE id = ?",
            (template_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Template {template_id} not found")
        return _row_to_template(row)

    async def latest_active(self, template_key: str) -> Template:
        """Get the highest active version of a key.

        Never falls back to an inactive version.

        Raises:
            NotFoundError: If no version of the key is active
        """
        db = await get_db()
        cursor = await db.execute(
            f"""
            SELECT {_TEMPLATE_COLUMNS} FROM flow_templates
            WHERE template_key = ? AND is_active = 1
            ORDER BY version DESC
            LIMIT 1
            """,
            (normalize_template_key(template_key),),
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"No active version of template {template_key}")
        return _row_to_template(row)

    async def list_versions(self, template_key: str) -> list[TemplateSummary]:
        """List all versions of a key, newest first."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            SELECT {_TEMPLATE_COLUMNS} FROM flow_templates
            WHERE template_key = ?
            ORDER BY version DESC
            """,
            (normalize_template_key(template_key),),
        )
        rows = await cursor.fetchall()

        summaries = []
        for row in rows:
            template = _row_to_template(row)
            summaries.append(
                TemplateSummary(
                    id=template.id,
                    template_key=template.template_key,
                    version=template.version,
                    name=template.name,
                    trigger_type=template.trigger_type,
                    is_active=template.is_active,
                    scope=template.scope,
                    node_count=len(template.nodes),
                    published_at=template.published_at,
                )
            )
        return summaries

    async def set_active(self, template_key: str, version: int, is_active: bool) -> Template:
        """Activate or deactivate a version. Running executions are unaffected."""
        db = await get_db()
        cursor = await db.execute(
            """
            UPDATE flow_templates SET is_active = ?
            WHERE template_key = ? AND version = ?
            """,
            (1 if is_active else 0, normalize_template_key(template_key), version),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Template {template_key} v{version} not found")

        logger.info(
            f"Template {template_key} v{version} {'activated' if is_active else 'deactivated'}"
        )
        return await self.get(template_key, version)

    async def find_trigger_candidates(self, trigger_type: str) -> list[Template]:
        """Latest active version of every key whose trigger matches."""
        db = await get_db()
        cursor = await db.execute(
            f"""
            SELECT {_TEMPLATE_COLUMNS} FROM flow_templates t
            WHERE t.is_active = 1
              AND t.version = (
                  SELECT MAX(t2.version) FROM flow_templates t2
                  WHERE t2.template_key = t.template_key AND t2.is_active = 1
              )
              AND t.trigger_type = ?
            ORDER BY t.template_key
            """,
            (trigger_type,),
        )
        rows = await cursor.fetchall()
        return [_row_to_template(row) for row in rows]


# Global instance
template_store = TemplateStore()
