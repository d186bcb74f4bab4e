"""Tests for versioned template storage."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import node, welcome_flow_definition
from flowengine.db.template_store import template_store
from flowengine.errors import NotFoundError, ValidationError
from flowengine.models import TemplateScope


class TestPublish:
    """Tests for TemplateStore.publish."""

    @pytest.mark.asyncio
    async def test_first_publish_is_version_one(self):
        ref = await template_store.publish(welcome_flow_definition(), published_by=12)
        assert ref.template_key == "welcome_flow"
        assert ref.version == 1

        template = await template_store.get_by_id(ref.id)
        assert template.published_by == 12
        assert template.entry_node_id == "send_welcome"
        assert template.nodes["wait_reply"].outputs["on_timeout"] == "check_reply"

    @pytest.mark.asyncio
    async def test_versions_increment_per_key(self):
        first = await template_store.publish(welcome_flow_definition())
        second = await template_store.publish(welcome_flow_definition(name="Welcome v2"))
        other = await template_store.publish(welcome_flow_definition(template_key="other"))

        assert (first.version, second.version, other.version) == (1, 2, 1)

    @pytest.mark.asyncio
    async def test_key_falls_back_to_name(self):
        ref = await template_store.publish(
            welcome_flow_definition(template_key=None, name="No Show Follow-up")
        )
        assert ref.template_key == "no_show_follow_up"

    @pytest.mark.asyncio
    async def test_invalid_definition_reports_all_violations(self):
        definition = welcome_flow_definition(
            nodes={
                "send_welcome": node("action/send_whatsapp", {}, on_success="ghost"),
                "stray": node("end/success"),
            }
        )
        with pytest.raises(ValidationError) as exc_info:
            await template_store.publish(definition)

        found = {v["code"] for v in exc_info.value.violations}
        assert found == {"node_params_invalid", "output_target_missing", "unreachable_nodes"}
        assert await template_store.list_versions("welcome_flow") == []

    @pytest.mark.asyncio
    async def test_published_template_is_immutable(self):
        ref = await template_store.publish(welcome_flow_definition())
        template = await template_store.get_by_id(ref.id)
        with pytest.raises(PydanticValidationError):
            template.name = "changed"


class TestLookup:
    """Tests for version lookup and activation."""

    @pytest.mark.asyncio
    async def test_get_missing_version(self):
        with pytest.raises(NotFoundError):
            await template_store.get("welcome_flow", 3)

    @pytest.mark.asyncio
    async def test_latest_active_skips_inactive_versions(self):
        await template_store.publish(welcome_flow_definition())
        await template_store.publish(welcome_flow_definition(is_active=False))

        latest = await template_store.latest_active("welcome-flow")
        assert latest.version == 1

    @pytest.mark.asyncio
    async def test_latest_active_never_falls_back_to_inactive(self):
        await template_store.publish(welcome_flow_definition(is_active=False))
        with pytest.raises(NotFoundError):
            await template_store.latest_active("welcome_flow")

    @pytest.mark.asyncio
    async def test_set_active(self):
        await template_store.publish(welcome_flow_definition())
        await template_store.publish(welcome_flow_definition())

        deactivated = await template_store.set_active("welcome_flow", 2, False)
        assert deactivated.is_active is False
        assert (await template_store.latest_active("welcome_flow")).version == 1

        await template_store.set_active("welcome_flow", 2, True)
        assert (await template_store.latest_active("welcome_flow")).version == 2

    @pytest.mark.asyncio
    async def test_set_active_unknown_version(self):
        with pytest.raises(NotFoundError):
            await template_store.set_active("welcome_flow", 9, True)

    @pytest.mark.asyncio
    async def test_list_versions_newest_first(self):
        await template_store.publish(welcome_flow_definition())
        await template_store.publish(welcome_flow_definition(clinic_id=7))

        versions = await template_store.list_versions("welcome_flow")
        assert [v.version for v in versions] == [2, 1]
        assert versions[0].scope == TemplateScope.CLINIC
        assert versions[1].scope == TemplateScope.SYSTEM
        assert versions[0].node_count == 5

    @pytest.mark.asyncio
    async def test_trigger_candidates_use_latest_active_version(self):
        await template_store.publish(welcome_flow_definition())
        await template_store.publish(welcome_flow_definition(name="newer"))
        await template_store.publish(welcome_flow_definition(template_key="recall", clinic_id=7))
        await template_store.publish(
            welcome_flow_definition(template_key="other", trigger_type="appointment.missed")
        )

        candidates = await template_store.find_trigger_candidates("lead.created")
        assert [(t.template_key, t.version) for t in candidates] == [
            ("recall", 1),
            ("welcome_flow", 2),
        ]
