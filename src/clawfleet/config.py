"""Configuration loading for clawfleet.

Settings are read from a YAML file (``clawfleet.yaml``) and overlaid with
environment variables. Secrets may be given inline or, preferably, as the
name of an environment variable (``password_env``, ``token_env``).

Example file:

    default_instance: prod
    default_target: {host: 203.0.113.10, user: root, password_env: CLAWFLEET_SSH_PASSWORD}
    instances:
      prod:
        target: {host: 203.0.113.10, key_file: ~/.ssh/id_ed25519}
        gateway: {url: "http://203.0.113.10:18789", token_env: GW_TOKEN}
    ssh: {connect_timeout: 30, command_timeout: 120, known_hosts: null}
    retry: {attempts: 1, delay: 3.0}
    cache_ttl: 15
    store: {machines: ~/.clawfleet/machines.json, pairing: ~/.clawfleet/pairing.json}
    policy_file: ~/.clawfleet/policy.yaml
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

GATEWAY_PORT = 18789
DEFAULT_CONFIG_PATH = Path.home() / ".clawfleet" / "clawfleet.yaml"
CONFIG_ENV = "CLAWFLEET_CONFIG"

_UNSET: Any = object()


def _secret(data: Mapping[str, Any], key: str, env: Mapping[str, str]) -> str | None:
    """Read an inline secret or one named by ``<key>_env``."""
    env_name = data.get(f"{key}_env")
    if env_name:
        value = env.get(env_name)
        if value:
            return value
    value = data.get(key)
    return str(value) if value else None


@dataclass
class TargetSettings:
    """SSH connection settings for one host."""

    host: str
    port: int = 22
    user: str = "root"
    password: str | None = field(default=None, repr=False)
    key_files: list[str] = field(default_factory=list)

    @property
    def has_auth(self) -> bool:
        return bool(self.password) or bool(self.key_files)

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], env: Mapping[str, str] | None = None
    ) -> "TargetSettings":
        env = os.environ if env is None else env
        if not data.get("host"):
            raise ConfigurationError("Target is missing 'host'")
        keys = data.get("key_files") or []
        if data.get("key_file"):
            keys = [data["key_file"], *keys]
        return cls(
            host=str(data["host"]),
            port=int(data.get("port", 22)),
            user=str(data.get("user") or "root"),
            password=_secret(data, "password", env),
            key_files=[str(Path(k).expanduser()) for k in keys],
        )


@dataclass
class GatewaySettings:
    """HTTP API of a gateway instance."""

    url: str
    token: str | None = field(default=None, repr=False)
    # Named commands ignore this and use GATEWAY_PORT; see clawfleet.commands.
    port: int = GATEWAY_PORT

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], env: Mapping[str, str] | None = None
    ) -> "GatewaySettings":
        env = os.environ if env is None else env
        if not data.get("url"):
            raise ConfigurationError("Gateway is missing 'url'")
        return cls(
            url=str(data["url"]).rstrip("/"),
            token=_secret(data, "token", env),
            port=int(data.get("port", GATEWAY_PORT)),
        )


@dataclass
class InstanceSettings:
    target: TargetSettings | None = None
    gateway: GatewaySettings | None = None


@dataclass
class Settings:
    """Resolved clawfleet settings.

    Attributes:
        default_instance: Instance id used when none is given
        default_target: Process-wide fallback target
        instances: Per-instance target and gateway settings
        connect_timeout: SSH connect timeout in seconds
        command_timeout: Whole-session timeout in seconds
        known_hosts: known_hosts path, None to disable checking, "" for default
        retry_attempts: Extra attempts after a transport failure
        retry_delay: Seconds to wait between attempts
        cache_ttl: Node list cache lifetime in seconds
        machines_path: JSON machine store path (None for in-memory)
        pairing_path: JSON pairing ledger path (None for in-memory)
        policy_file: Operator deny rules (YAML)
    """

    default_instance: str = "default"
    default_target: TargetSettings | None = None
    instances: dict[str, InstanceSettings] = field(default_factory=dict)
    connect_timeout: float = 30.0
    command_timeout: float = 120.0
    known_hosts: str | None = None
    retry_attempts: int = 1
    retry_delay: float = 3.0
    cache_ttl: float = 15.0
    machines_path: Path | None = None
    pairing_path: Path | None = None
    policy_file: Path | None = None

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any] | None, env: Mapping[str, str] | None = None
    ) -> "Settings":
        """Create settings from parsed YAML and environment overrides."""
        env = os.environ if env is None else env
        data = data or {}

        settings = cls(default_instance=str(data.get("default_instance") or "default"))

        if data.get("default_target"):
            settings.default_target = TargetSettings.from_dict(data["default_target"], env)

        for instance_id, inst in (data.get("instances") or {}).items():
            inst = inst or {}
            settings.instances[str(instance_id)] = InstanceSettings(
                target=TargetSettings.from_dict(inst["target"], env) if inst.get("target") else None,
                gateway=GatewaySettings.from_dict(inst["gateway"], env) if inst.get("gateway") else None,
            )

        ssh = data.get("ssh") or {}
        settings.connect_timeout = float(ssh.get("connect_timeout", settings.connect_timeout))
        settings.command_timeout = float(ssh.get("command_timeout", settings.command_timeout))
        known_hosts = ssh.get("known_hosts", _UNSET)
        if known_hosts is not _UNSET:
            settings.known_hosts = str(Path(known_hosts).expanduser()) if known_hosts else known_hosts

        retry = data.get("retry") or {}
        settings.retry_attempts = int(retry.get("attempts", settings.retry_attempts))
        settings.retry_delay = float(retry.get("delay", settings.retry_delay))
        settings.cache_ttl = float(data.get("cache_ttl", settings.cache_ttl))

        store = data.get("store") or {}
        if store.get("machines"):
            settings.machines_path = Path(store["machines"]).expanduser()
        if store.get("pairing"):
            settings.pairing_path = Path(store["pairing"]).expanduser()
        if data.get("policy_file"):
            settings.policy_file = Path(data["policy_file"]).expanduser()

        settings._apply_env(env)
        return settings

    def _apply_env(self, env: Mapping[str, str]) -> None:
        host = env.get("CLAWFLEET_SSH_HOST")
        if host:
            base = self.default_target
            self.default_target = TargetSettings(
                host=host,
                port=base.port if base else 22,
                user=base.user if base else "root",
                password=base.password if base else None,
                key_files=list(base.key_files) if base else [],
            )
        if self.default_target is None:
            return
        if env.get("CLAWFLEET_SSH_PORT"):
            self.default_target.port = int(env["CLAWFLEET_SSH_PORT"])
        if env.get("CLAWFLEET_SSH_USER"):
            self.default_target.user = env["CLAWFLEET_SSH_USER"]
        if env.get("CLAWFLEET_SSH_PASSWORD"):
            self.default_target.password = env["CLAWFLEET_SSH_PASSWORD"]
        if env.get("CLAWFLEET_SSH_KEY"):
            self.default_target.key_files = [str(Path(env["CLAWFLEET_SSH_KEY"]).expanduser())]


def load_settings(
    config_file: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings from a YAML file.

    The path is taken from the argument, then ``CLAWFLEET_CONFIG``, then
    ``~/.clawfleet/clawfleet.yaml``. A missing default file is not an error;
    a missing explicit file is.

    Raises:
        ConfigurationError: If an explicit file is missing or malformed
    """
    env = os.environ if env is None else env
    explicit = config_file or env.get(CONFIG_ENV)
    path = Path(explicit).expanduser() if explicit else DEFAULT_CONFIG_PATH

    if not path.exists():
        if explicit:
            raise ConfigurationError(f"Config file not found: {path}")
        logger.debug(f"No config file at {path}, using environment only")
        return Settings.from_dict({}, env)

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    logger.debug(f"Loaded config from {path}")
    return Settings.from_dict(data, env)
