"""Pending-device pairing state machine.

    pending --approve--> approved --remove--> removed
    pending --reject---> rejected

Every mutation is attempted on two sides. The gateway side tries the
``openclaw devices`` CLI and falls back to editing the device files
directly; the local side updates the pending list cached in the pairing
ledger. The operation succeeds if either side applied it.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from .cache import NodeListCache
from .commands import (
    build_cli_approve_command,
    build_cli_reject_command,
    build_file_approve_command,
    build_file_reject_command,
    build_remove_device_command,
    sanitize_device_id,
)
from .decoders import (
    MutationOutcome,
    decode_output,
    node_view_from_raw,
    parse_device_list,
    parse_mutation,
    parse_paired_file,
    parse_pending_file,
)
from .exceptions import InvalidIdentifierError, ParseError
from .executor import RemoteExecutor
from .matching import find_matching_record, normalize_platform
from .store import MachineStore, PairingLedger
from .targets import TargetResolver
from .types import (
    ExecutionResult,
    MachineStatus,
    NodeIdentity,
    NodeView,
    PairingOutcome,
    PairingStatus,
    PendingDevice,
    RemoteTarget,
    utcnow,
)

logger = logging.getLogger(__name__)

# Device files are edited by scripts that exit 1 when the id is absent.
_FILE_EXIT_CODES = (0, 1)


@dataclass
class DeviceListing:
    """Devices and the source that reported them."""

    devices: list[Any] = field(default_factory=list)
    source: str = "none"

    def to_dict(self) -> dict[str, Any]:
        return {"devices": [d.to_dict() for d in self.devices], "source": self.source}


@dataclass
class _GatewayAttempt:
    applied: bool = False
    transport_failures: int = 0
    attempts: int = 0
    details: dict[str, Any] | None = None

    @property
    def transport_only(self) -> bool:
        return self.attempts > 0 and self.transport_failures == self.attempts


def _details_from_output(result: ExecutionResult) -> dict[str, Any] | None:
    decoded = decode_output(result.output)
    if not decoded.is_json or not isinstance(decoded.data, dict):
        return None
    data = decoded.data
    for key in ("device", "node", "removed"):
        if isinstance(data.get(key), dict):
            return data[key]
    return data


class PairingStateMachine:
    """Approve, reject and remove devices on a gateway."""

    def __init__(
        self,
        resolver: TargetResolver,
        executor: RemoteExecutor,
        cache: NodeListCache,
        store: MachineStore,
        ledger: PairingLedger,
        now=utcnow,
    ) -> None:
        self.resolver = resolver
        self.executor = executor
        self.cache = cache
        self.store = store
        self.ledger = ledger
        self.now = now

    def _instance(self, instance_id: str | None) -> str:
        return instance_id or self.resolver.settings.default_instance

    async def _mutate(
        self,
        action: str,
        target: RemoteTarget,
        cli_command: str,
        file_command: str | None,
    ) -> _GatewayAttempt:
        """Run the CLI mutation, then the file mutation if the CLI did not apply."""
        attempt = _GatewayAttempt()
        commands = [(cli_command, (0,))]
        if file_command is not None:
            commands.append((file_command, _FILE_EXIT_CODES))

        for command, ok_codes in commands:
            result = await self.executor.run_raw(command, target, ok_exit_codes=ok_codes)
            attempt.attempts += 1
            outcome = parse_mutation(result, action)
            if result.error_type:
                attempt.transport_failures += 1
            elif outcome is MutationOutcome.APPLIED and result.success:
                attempt.applied = True
                attempt.details = _details_from_output(result)
                return attempt
            logger.debug(f"Device mutation not applied: {outcome.value} ({result.output[:200]!r})")
        return attempt

    async def approve(self, instance_id: str | None, device_id: str) -> PairingOutcome:
        """Admit a pending device and track it as a machine."""
        instance_id = self._instance(instance_id)
        try:
            key = sanitize_device_id(device_id)
        except InvalidIdentifierError:
            logger.warning(f"Invalid device id {device_id!r}, checking local pending list only")
            key = None
        lookup = key or device_id

        if self.ledger.is_approved(instance_id, lookup):
            return PairingOutcome(
                device_id=lookup,
                action="approve",
                status=PairingStatus.ALREADY_APPROVED,
                success=True,
                message="Device was already approved",
            )

        target = self.resolver.resolve(instance_id)
        gateway = _GatewayAttempt()
        if target is not None and key is not None:
            gateway = await self._mutate(
                "approve", target, build_cli_approve_command(key), build_file_approve_command(key)
            )

        local = self.ledger.take_pending(instance_id, lookup)

        if not gateway.applied and local is None:
            return self._failure(lookup, "approve", gateway, target is not None and key is not None)

        self.ledger.record_approved(instance_id, lookup)
        if gateway.applied:
            self.cache.invalidate(target)

        machine_id = None
        identity, platform = self._device_identity(gateway.details, local)
        if identity.hostname or identity.name or identity.display_name or identity.ip:
            machine_id = await self._upsert_machine(identity, platform)

        logger.info(
            f"Approved device {lookup} on {instance_id} "
            f"(gateway={gateway.applied}, local={local is not None})"
        )
        return PairingOutcome(
            device_id=lookup,
            action="approve",
            status=PairingStatus.APPROVED,
            success=True,
            gateway_applied=gateway.applied,
            local_applied=local is not None,
            device=gateway.details or (local.to_dict() if local else None),
            machine_id=machine_id,
            message="Device approved",
        )

    async def reject(self, instance_id: str | None, device_id: str) -> PairingOutcome:
        """Discard a pending device request."""
        instance_id = self._instance(instance_id)
        try:
            key = sanitize_device_id(device_id)
        except InvalidIdentifierError:
            logger.warning(f"Invalid device id {device_id!r}, checking local pending list only")
            key = None
        lookup = key or device_id

        if self.ledger.is_rejected(instance_id, lookup):
            return PairingOutcome(
                device_id=lookup,
                action="reject",
                status=PairingStatus.ALREADY_REJECTED,
                success=True,
                message="Device was already rejected",
            )

        target = self.resolver.resolve(instance_id)
        gateway = _GatewayAttempt()
        if target is not None and key is not None:
            gateway = await self._mutate(
                "reject", target, build_cli_reject_command(key), build_file_reject_command(key)
            )

        local = self.ledger.take_pending(instance_id, lookup)

        if not gateway.applied and local is None:
            return self._failure(lookup, "reject", gateway, target is not None and key is not None)

        self.ledger.record_rejected(instance_id, lookup)
        if gateway.applied:
            self.cache.invalidate(target)

        logger.info(f"Rejected device {lookup} on {instance_id}")
        return PairingOutcome(
            device_id=lookup,
            action="reject",
            status=PairingStatus.REJECTED,
            success=True,
            gateway_applied=gateway.applied,
            local_applied=local is not None,
            device=gateway.details or (local.to_dict() if local else None),
            message="Device rejected",
        )

    async def remove(self, instance_id: str | None, device_id: str) -> PairingOutcome:
        """Drop a paired device from the gateway.

        The matching MachineRecord, if any, is kept.

        Raises:
            InvalidIdentifierError: If the id cannot be sanitized
            ConfigurationError: If no target is configured
        """
        instance_id = self._instance(instance_id)
        key = sanitize_device_id(device_id)
        target = self.resolver.require(instance_id)

        result = await self.executor.run_raw(
            build_remove_device_command(key), target, ok_exit_codes=_FILE_EXIT_CODES
        )
        outcome = parse_mutation(result, "remove")

        if result.error_type:
            return PairingOutcome(
                device_id=key,
                action="remove",
                status=PairingStatus.TRANSPORT_ERROR,
                retryable=True,
                message=result.error or "Gateway unreachable",
            )
        if outcome is not MutationOutcome.APPLIED or not result.success:
            return PairingOutcome(
                device_id=key,
                action="remove",
                status=PairingStatus.NOT_FOUND,
                message="Device not found in paired list",
            )

        self.ledger.record_removed(instance_id, key)
        self.cache.invalidate(target)
        logger.info(f"Removed device {key} from {instance_id}")
        return PairingOutcome(
            device_id=key,
            action="remove",
            status=PairingStatus.REMOVED,
            success=True,
            gateway_applied=True,
            device=_details_from_output(result),
            message="Device removed",
        )

    @staticmethod
    def _failure(
        device_id: str, action: str, gateway: _GatewayAttempt, gateway_tried: bool
    ) -> PairingOutcome:
        if gateway_tried and gateway.transport_only:
            return PairingOutcome(
                device_id=device_id,
                action=action,
                status=PairingStatus.TRANSPORT_ERROR,
                retryable=True,
                message="Gateway unreachable and device not in local pending list",
            )
        return PairingOutcome(
            device_id=device_id,
            action=action,
            status=PairingStatus.NOT_FOUND,
            message="Device not found in pending list",
        )

    @staticmethod
    def _device_identity(
        details: dict[str, Any] | None, local: PendingDevice | None
    ) -> tuple[NodeIdentity, str | None]:
        view: NodeView | None = node_view_from_raw(details) if details else None
        identity = view.identity if view else NodeIdentity()
        platform = view.platform if view else None
        if local is not None:
            identity = NodeIdentity(
                hostname=identity.hostname or local.identity.hostname,
                name=identity.name or local.identity.name,
                display_name=identity.display_name or local.identity.display_name,
                ip=identity.ip or local.identity.ip,
                node_id=identity.node_id or local.identity.node_id or local.request_id,
            )
            platform = platform or local.platform
        return identity, platform

    async def _upsert_machine(self, identity: NodeIdentity, platform: str | None) -> str:
        """Mark the matching record connected, or create one."""
        now = self.now()
        # node_id never appears on records, so match on the naming fields only.
        naming = NodeIdentity(
            hostname=identity.hostname,
            name=identity.name,
            display_name=identity.display_name,
            ip=identity.ip,
        )
        existing = find_matching_record(naming, await self.store.list_machines())
        if existing is not None:
            updated = await self.store.update_machine(
                existing.id,
                hostname=existing.hostname or identity.hostname or "",
                ip_address=existing.ip_address or identity.ip or "",
                status=MachineStatus.CONNECTED,
                last_seen=now,
            )
            return updated.id

        label = identity.hostname or identity.name or identity.display_name or identity.ip or ""
        created = await self.store.create_machine(
            name=label,
            display_name=identity.display_name or label,
            hostname=identity.hostname or label,
            ip_address=identity.ip or "",
            os=normalize_platform(platform),
            status=MachineStatus.CONNECTED,
            last_seen=now,
        )
        logger.info(f"Created machine {created.id} for approved device {label}")
        return created.id

    async def list_pending(self, instance_id: str | None = None) -> DeviceListing:
        """Pending devices from the CLI, else the pending file, else the local cache.

        A gateway answer refreshes the local cache.
        """
        instance_id = self._instance(instance_id)
        target = self.resolver.resolve(instance_id)
        if target is not None:
            result = await self.executor.run_allowed("cli-devices-list", target)
            if result.success:
                try:
                    pending = parse_device_list(decode_output(result.output)).pending
                except ParseError as e:
                    logger.debug(f"devices list unusable: {e}")
                else:
                    self.ledger.set_pending(instance_id, pending)
                    return DeviceListing(pending, "cli")

            result = await self.executor.run_allowed("list-pending-nodes", target)
            if result.success:
                try:
                    pending = parse_pending_file(decode_output(result.output))
                except ParseError as e:
                    logger.debug(f"pending file unusable: {e}")
                else:
                    if pending:
                        self.ledger.set_pending(instance_id, pending)
                        return DeviceListing(pending, "file")

        return DeviceListing(self.ledger.list_pending(instance_id), "local")

    async def list_paired(self, instance_id: str | None = None) -> DeviceListing:
        """Connected nodes from the node list, else the paired file."""
        instance_id = self._instance(instance_id)
        target = self.resolver.resolve(instance_id)
        if target is None:
            return DeviceListing([], "none")

        snapshot = await self.cache.get(target)
        if snapshot is not None and snapshot.nodes:
            return DeviceListing([n for n in snapshot.nodes if n.connected], "node-list")

        result = await self.executor.run_allowed("list-paired-nodes", target)
        if result.success:
            try:
                return DeviceListing(parse_paired_file(decode_output(result.output)), "file")
            except ParseError as e:
                logger.debug(f"paired file unusable: {e}")
        return DeviceListing([], "local")
