"""Tests for the command policy."""

import pytest

from clawfleet.exceptions import ConfigurationError, PolicyViolation
from clawfleet.policy import CommandPolicy, PolicyRule


class TestEvaluate:
    """Tests for CommandPolicy.evaluate."""

    def test_allow_listed_command_permitted(self):
        result = CommandPolicy.allow_list_only().evaluate("status")
        assert result.permitted

    def test_unknown_command_denied(self):
        result = CommandPolicy().evaluate("bash")
        assert not result.permitted
        assert "Unknown command" in result.reason

    def test_deny_by_instance_glob(self):
        policy = CommandPolicy([PolicyRule("deny", {"command": "st*", "instance": "prod*"}, "No prod changes")])

        assert not policy.evaluate("stop", "prod-eu").permitted
        assert policy.evaluate("stop", "lab").permitted
        assert policy.evaluate("stop", "prod-eu").reason == "No prod changes"

    def test_deny_mutating_commands(self):
        policy = CommandPolicy([PolicyRule("deny", {"read_only": "false"})])

        assert not policy.evaluate("restart").permitted
        assert not policy.evaluate("approve-all-pending").permitted
        assert policy.evaluate("view-log").permitted

    def test_unknown_condition_never_matches(self):
        policy = CommandPolicy([PolicyRule("deny", {"weekday": "monday"})])
        assert policy.evaluate("stop").permitted

    def test_non_deny_rules_ignored(self):
        policy = CommandPolicy([PolicyRule("allow", {"command": "*"})])
        assert not policy.evaluate("bash").permitted
        assert policy.evaluate("stop").permitted

    def test_enforce_raises(self):
        with pytest.raises(PolicyViolation) as exc_info:
            CommandPolicy().enforce("bash", "prod")
        assert exc_info.value.to_dict()["command"] == "bash"
        assert exc_info.value.to_dict()["error_type"] == "policy"

    def test_enforce_returns_spec(self):
        assert CommandPolicy().enforce("view-log").name == "view-log"


class TestFromFile:
    """Tests for loading rules from YAML."""

    def test_load(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            "rules:\n"
            "  - decision: deny\n"
            "    match: {command: stop, instance: 'prod*'}\n"
            "    reason: Never stop production\n"
            "  - match: {read_only: false}\n"
        )

        policy = CommandPolicy.from_file(path)

        assert len(policy.rules) == 2
        assert policy.rules[1].decision == "deny"
        assert not policy.evaluate("stop", "prod").permitted
        assert not policy.evaluate("start", "lab").permitted
        assert policy.evaluate("status", "prod").permitted

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            CommandPolicy.from_file(tmp_path / "absent.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("rules: [\n")

        with pytest.raises(ConfigurationError):
            CommandPolicy.from_file(path)
