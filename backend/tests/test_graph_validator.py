"""Tests for publish-time template validation."""

from conftest import node, welcome_flow_definition
from flowengine.models import TemplateDefinition
from flowengine.services.graph_validator import normalize_template_key, validate_template


def codes(violations):
    return [v["code"] for v in violations]


def definition(nodes, entry="start", **kwargs):
    kwargs.setdefault("trigger_type", "lead.created")
    return TemplateDefinition(name="Test flow", entry_node_id=entry, nodes=nodes, **kwargs)


class TestNormalizeTemplateKey:
    """Tests for template key normalization."""

    def test_normalizes(self):
        assert normalize_template_key("  Welcome Flow! ") == "welcome_flow"
        assert normalize_template_key("welcome-flow") == "welcome_flow"

    def test_blank_is_none(self):
        assert normalize_template_key("---") is None
        assert normalize_template_key(None) is None


class TestValidateTemplate:
    """Tests for validate_template."""

    def test_valid_flow(self):
        assert validate_template(welcome_flow_definition()) == []

    def test_unknown_node_type(self):
        violations = validate_template(definition({"start": node("action/launch_rocket")}))
        assert codes(violations) == ["node_type_unsupported"]

    def test_unsupported_engine_version(self):
        violations = validate_template(
            definition({"start": node("end/success")}, engine_version="v1")
        )
        assert "engine_version_unsupported" in codes(violations)

    def test_missing_entry_node(self):
        violations = validate_template(definition({"start": node("end/success")}, entry="nope"))
        assert codes(violations) == ["entry_node_invalid"]

    def test_dangling_output(self):
        violations = validate_template(
            definition({"start": node("action/write_note", {"content": "x"}, on_success="ghost")})
        )
        assert codes(violations) == ["output_target_missing"]

    def test_output_not_allowed_for_type(self):
        violations = validate_template(
            definition(
                {
                    "start": node("action/write_note", {"content": "x"}, on_true="done"),
                    "done": node("end/success"),
                }
            )
        )
        assert "output_unknown" in codes(violations)

    def test_unwired_output_is_allowed(self):
        violations = validate_template(
            definition({"start": node("action/send_whatsapp", {"template_key": "hi"}, on_fail=None)})
        )
        assert violations == []

    def test_invalid_params(self):
        violations = validate_template(
            definition(
                {
                    "start": node("delay/fixed", {"duration": -1, "unit": "fortnights"}),
                }
            )
        )
        assert codes(violations) == ["node_params_invalid", "node_params_invalid"]

    def test_unreachable_nodes(self):
        violations = validate_template(
            definition({"start": node("end/success"), "orphan": node("end/error")})
        )
        assert codes(violations) == ["unreachable_nodes"]
        assert violations[0]["details"]["nodes"] == ["orphan"]

    def test_listens_to_missing_node(self):
        violations = validate_template(
            definition(
                {
                    "start": node("condition/response_check", {"listens_to_node_id": "wait"}),
                }
            )
        )
        assert codes(violations) == ["listens_to_missing"]

    def test_cycle_without_wait_is_rejected(self):
        violations = validate_template(
            definition(
                {
                    "start": node("action/write_note", {"content": "a"}, on_success="check"),
                    "check": node(
                        "condition/field_check",
                        {"field": "score", "operator": "greater_than", "value": 3},
                        on_true="start",
                        on_false="done",
                    ),
                    "done": node("end/success"),
                }
            )
        )
        assert codes(violations) == ["cycle_without_wait"]
        assert violations[0]["details"]["nodes"] == ["check", "start"]

    def test_cycle_through_wait_is_allowed(self):
        violations = validate_template(
            definition(
                {
                    "start": node("action/send_whatsapp", {"template_key": "ping"}, on_success="pause"),
                    "pause": node("delay/fixed", {"duration": 1, "unit": "days"}, on_complete="start"),
                }
            )
        )
        assert violations == []

    def test_self_loop_is_rejected(self):
        violations = validate_template(
            definition({"start": node("action/write_note", {"content": "a"}, on_success="start")})
        )
        assert codes(violations) == ["cycle_without_wait"]

    def test_reports_every_violation(self):
        violations = validate_template(
            definition(
                {
                    "start": node("action/write_note", {"content": "a"}, on_success="ghost"),
                    "bad": node("action/teleport"),
                    "mail": node("action/send_email", {}),
                },
                trigger_type="",
            )
        )
        found = set(codes(violations))
        assert {
            "trigger_type_missing",
            "output_target_missing",
            "node_type_unsupported",
            "node_params_invalid",
            "unreachable_nodes",
        } <= found
