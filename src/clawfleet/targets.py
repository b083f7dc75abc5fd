"""Per-instance remote target resolution."""

import logging

from .config import GATEWAY_PORT, Settings, TargetSettings
from .exceptions import ConfigurationError
from .types import GatewayEndpoint, RemoteTarget

logger = logging.getLogger(__name__)


class TargetResolver:
    """Maps an instance id to the SSH target and gateway endpoint to use.

    An instance's own target takes precedence, then the process-wide default.
    Targets without a password or key are treated as not configured, so the
    executor never attempts a connection with empty credentials.

    Example:
        >>> resolver = TargetResolver(settings)
        >>> target = resolver.require("prod")
        >>> target.host
        '203.0.113.10'
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _to_target(self, cfg: TargetSettings) -> RemoteTarget:
        return RemoteTarget(
            host=cfg.host,
            port=cfg.port,
            user=cfg.user,
            password=cfg.password,
            client_keys=tuple(cfg.key_files),
            known_hosts=self.settings.known_hosts,
        )

    def resolve(self, instance_id: str | None = None) -> RemoteTarget | None:
        """Return the target for an instance, or None if none is configured."""
        instance_id = instance_id or self.settings.default_instance
        instance = self.settings.instances.get(instance_id)
        if instance is not None and instance.target is not None:
            if instance.target.has_auth:
                return self._to_target(instance.target)
            logger.warning(f"Target for instance {instance_id} has no credentials, ignoring")

        default = self.settings.default_target
        if default is not None and default.has_auth:
            return self._to_target(default)
        return None

    def require(self, instance_id: str | None = None) -> RemoteTarget:
        """Return the target for an instance.

        Raises:
            ConfigurationError: If no target with credentials is configured
        """
        target = self.resolve(instance_id)
        if target is None:
            raise ConfigurationError(
                f"No SSH target configured for instance "
                f"'{instance_id or self.settings.default_instance}'",
                instance=instance_id or self.settings.default_instance,
            )
        return target

    def gateway(self, instance_id: str | None = None) -> GatewayEndpoint | None:
        """Return the HTTP endpoint of the instance's gateway, if configured."""
        instance = self.settings.instances.get(instance_id or self.settings.default_instance)
        if instance is None or instance.gateway is None:
            return None
        return GatewayEndpoint(
            url=instance.gateway.url,
            token=instance.gateway.token,
            port=instance.gateway.port,
        )

    def gateway_port(self, instance_id: str | None = None) -> int:
        endpoint = self.gateway(instance_id)
        return endpoint.port if endpoint else GATEWAY_PORT
