"""Command policy for the remote executor.

An operator-requested command runs only if it is on the fixed allow-list
AND no operator deny rule matches it. Operators write deny rules in YAML to
fence off commands per instance, e.g. forbidding ``stop`` on production
gateways. Commands the control plane issues on its own (node listing,
device listing, health) are checked against the allow-list only.
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import yaml

from .commands import ALLOWED_COMMANDS, CommandSpec
from .exceptions import ConfigurationError, PolicyViolation

logger = logging.getLogger(__name__)


@dataclass
class PolicyRule:
    """A single operator rule.

    Attributes:
        decision: "deny" (other decisions are ignored)
        match: fnmatch patterns keyed by condition:
            - command: pattern against the command name
            - instance: pattern against the instance id
            - read_only: "true" or "false"
        reason: Human-readable explanation for the rule
    """

    decision: str
    match: dict[str, str] = field(default_factory=dict)
    reason: str = ""


@dataclass
class PolicyResult:
    permitted: bool
    rule: PolicyRule | None = None
    reason: str = ""


class CommandPolicy:
    """Allow-list plus first-match deny rules.

    Example:
        >>> policy = CommandPolicy([PolicyRule("deny", {"command": "stop", "instance": "prod*"})])
        >>> policy.evaluate("stop", instance_id="prod-eu").permitted
        False
        >>> policy.evaluate("status", instance_id="prod-eu").permitted
        True
    """

    def __init__(
        self,
        rules: Iterable[PolicyRule] = (),
        commands: dict[str, CommandSpec] | None = None,
    ) -> None:
        self.rules = list(rules)
        self.commands = ALLOWED_COMMANDS if commands is None else commands

    def lookup(self, name: str) -> CommandSpec:
        """Return the allow-listed spec for a name, ignoring operator rules.

        Raises:
            PolicyViolation: If the name is not on the allow-list
        """
        spec = self.commands.get(name)
        if spec is None:
            raise PolicyViolation(f"Unknown command: {name}", command=name)
        return spec

    def evaluate(self, name: str, instance_id: str = "") -> PolicyResult:
        """Decide whether a named command may run against an instance."""
        spec = self.commands.get(name)
        if spec is None:
            return PolicyResult(
                permitted=False,
                reason=f"Unknown command: {name}. Allowed: {', '.join(self.commands)}",
            )

        for rule in self.rules:
            if rule.decision != "deny":
                continue
            if self._matches(rule, spec, instance_id):
                logger.debug("Policy denied %s on %s: %s", name, instance_id, rule.reason)
                return PolicyResult(permitted=False, rule=rule, reason=rule.reason or "Denied by policy")

        return PolicyResult(permitted=True, reason="No matching deny rule")

    def enforce(self, name: str, instance_id: str = "") -> CommandSpec:
        """Return the command spec, or raise if the command is not permitted.

        Raises:
            PolicyViolation: If the name is unknown or a deny rule matches
        """
        result = self.evaluate(name, instance_id)
        if not result.permitted:
            logger.warning(f"Refusing command '{name}' for instance '{instance_id}': {result.reason}")
            raise PolicyViolation(result.reason, command=name, instance=instance_id)
        return self.commands[name]

    @staticmethod
    def _matches(rule: PolicyRule, spec: CommandSpec, instance_id: str) -> bool:
        """All conditions in the rule must match for the rule to apply."""
        for key, pattern in rule.match.items():
            pattern = str(pattern)
            if key == "command":
                if not fnmatch.fnmatch(spec.name, pattern):
                    return False
            elif key == "instance":
                if not fnmatch.fnmatch(instance_id, pattern):
                    return False
            elif key == "read_only":
                if str(spec.read_only).lower() != pattern.lower():
                    return False
            else:
                return False
        return True

    @classmethod
    def from_file(cls, path: str | Path) -> "CommandPolicy":
        """Load deny rules from a YAML file.

        Expected format:
            rules:
              - decision: deny
                match:
                  command: "stop"
                  instance: "prod*"
                reason: "Never stop production gateways from the CLI"

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load policy file {path}: {e}") from e

        rules = [
            PolicyRule(
                decision=entry.get("decision", "deny"),
                match=entry.get("match", {}),
                reason=entry.get("reason", ""),
            )
            for entry in data.get("rules", [])
        ]
        logger.debug(f"Loaded {len(rules)} policy rules from {path}")
        return cls(rules)

    @classmethod
    def allow_list_only(cls) -> "CommandPolicy":
        """Policy with no operator rules."""
        return cls()
