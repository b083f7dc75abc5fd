"""Command-line interface for clawfleet."""

import asyncio
import json
import logging
from typing import Any, Coroutine

import click

from clawfleet import __version__
from clawfleet.config import load_settings
from clawfleet.control import ControlPlane, GatewayHealth
from clawfleet.exceptions import ClawfleetError
from clawfleet.logging import (
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
)
from clawfleet.pairing import DeviceListing
from clawfleet.types import (
    ExecutionResult,
    FleetView,
    HealthCheckResult,
    MachineRecord,
    PairingOutcome,
    PairingStatus,
)

logger = get_logger("clawfleet.cli")

FORMAT_OPTION = click.option(
    "--format", "-f", "output_format", type=click.Choice(["text", "json"]),
    default="text", help="Output format",
)
INSTANCE_OPTION = click.option(
    "--instance", "-I", default=None, help="Gateway instance id (defaults to the configured default)",
)


def format_fleet_text(view: FleetView) -> str:
    """Format a reconciled fleet view for terminal output."""
    lines = [
        "",
        f"Instance: {view.instance_id}",
        f"Gateway:  {view.gateway_status}" + (f" (via {view.method})" if view.method else ""),
        "",
        f"Machines ({len(view.tracked_machines)}):",
    ]
    for tracked in view.tracked_machines:
        record = tracked.record
        name = record.display_name or record.name or record.hostname or record.id
        source = tracked.live.source.value if tracked.live else "local"
        lines.append(f"  {name:<24} {tracked.status.value:<13} {record.hostname or '-':<20} [{source}]")

    lines.append("")
    lines.append(f"Pending ({len(view.pending_devices)}, source: {view.pending_source}):")
    for device in view.pending_devices:
        age = f" ({device.first_seen_age})" if device.first_seen_age else ""
        lines.append(f"  {device.request_id}  {device.label}{age}")

    if view.discovered:
        lines.append("")
        lines.append(f"Discovered {len(view.discovered)} new machine(s)")
    lines.append("")
    return "\n".join(lines)


def format_health_text(result: HealthCheckResult) -> str:
    lines = [f"Machine {result.machine_id}: {result.status.value}"]
    if result.method:
        latency = f" in {result.latency_ms}ms" if result.latency_ms is not None else ""
        lines.append(f"  reachable via {result.method}{latency}")
    for probe in result.results:
        state = "OK" if probe.reachable else f"FAILED - {probe.error or 'unreachable'}"
        lines.append(f"  {probe.method}: {state}")
    if result.message:
        lines.append(f"  {result.message}")
    return "\n".join(lines)


def format_listing_text(listing: DeviceListing, title: str) -> str:
    lines = [f"{title} ({len(listing.devices)}, source: {listing.source}):"]
    for device in listing.devices:
        data = device.to_dict()
        ident = data.get("requestId") or data.get("id") or ""
        lines.append(f"  {ident}  {data.get('name') or ''}".rstrip())
    return "\n".join(lines)


def _emit(payload: Any, output_format: str, text: str) -> None:
    if output_format == "json":
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        click.echo(text)


def _plane(ctx: click.Context, output_format: str = "text") -> ControlPlane:
    """Configure logging for this invocation and return the control plane."""
    obj = ctx.ensure_object(dict)
    level = obj.get("level", logging.WARNING)

    # JSON output must stay parseable; keep console logs out of it.
    configure_logging(
        level=logging.CRITICAL if output_format == "json" else level,
        log_file=obj.get("log_file"),
        file_level=level if obj.get("log_file") else None,
        debug=(level <= logging.DEBUG),
    )

    if obj.get("plane") is None:
        try:
            obj["plane"] = ControlPlane.from_settings(load_settings(obj.get("config")))
        except ClawfleetError as e:
            raise click.ClickException(str(e))
    return obj["plane"]


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return asyncio.run(coro)
    except ClawfleetError as e:
        logger.debug("Command failed", error_type=e.error_type)
        raise click.ClickException(str(e))


# Main CLI group
@click.group(invoke_without_command=True)
@click.option("--config", "-c", "config_file", type=click.Path(dir_okay=False),
              default=None, help="Config file (YAML, default ~/.clawfleet/clawfleet.yaml)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity (-v info, -vv debug, -vvv trace)")
@click.option("--log-level", type=click.Choice(["trace", "debug", "info", "warning", "error"]),
              default=None, help="Set log level explicitly")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None,
              help="Also write logs to this file")
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: str | None,
    verbose: int,
    log_level: str | None,
    log_file: str | None,
    version: bool,
) -> None:
    """clawfleet - control plane for a fleet of gateway-paired nodes."""
    if version:
        click.echo(f"clawfleet {__version__}")
        ctx.exit(0)

    obj = ctx.ensure_object(dict)
    obj["config"] = config_file
    obj["log_file"] = log_file
    obj["level"] = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("commands")
@FORMAT_OPTION
@click.pass_context
def commands_list(ctx: click.Context, output_format: str) -> None:
    """List the allow-listed remote commands."""
    specs = _plane(ctx, output_format).list_commands()
    text = "\n".join(
        f"  {spec.name:<26} {'' if spec.read_only else '[mutating] '}{spec.description}"
        for spec in specs
    )
    _emit({"commands": [spec.to_dict() for spec in specs]}, output_format, text)


@cli.command("run")
@click.argument("name")
@INSTANCE_OPTION
@click.option(
    "--retries", type=int, default=None, help="Extra attempts after a transport failure (overrides config)"
)
@click.option("--timeout", type=float, default=None, help="Whole-session timeout in seconds")
@FORMAT_OPTION
@click.pass_context
def run_command(
    ctx: click.Context,
    name: str,
    instance: str | None,
    retries: int | None,
    timeout: float | None,
    output_format: str,
) -> None:
    """Run one allow-listed command on the gateway host.

    Examples:
        clawfleet run status

        clawfleet run view-log --instance prod --format json
    """
    plane = _plane(ctx, output_format)
    result: ExecutionResult = _run(plane.run_named(name, instance, retries=retries, timeout=timeout))
    _emit({"command": name, **result.to_dict()}, output_format, result.output)
    if not result.success:
        raise click.ClickException(result.error or f"Command {name} failed")


@cli.command("reconcile")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def reconcile(ctx: click.Context, instance: str | None, output_format: str) -> None:
    """Reconcile the gateway's live nodes with tracked machines."""
    view: FleetView = _run(_plane(ctx, output_format).reconcile(instance))
    _emit(view.to_dict(), output_format, format_fleet_text(view))


@cli.command("health-check")
@click.argument("machine_id")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def health_check(ctx: click.Context, machine_id: str, instance: str | None, output_format: str) -> None:
    """Check whether one tracked machine is reachable."""
    result: HealthCheckResult = _run(_plane(ctx, output_format).health_check(machine_id, instance))
    _emit(result.to_dict(), output_format, format_health_text(result))


# Nodes subcommand group
@cli.group()
def nodes() -> None:
    """Pending and paired node management."""
    pass


@nodes.command("pending")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def nodes_pending(ctx: click.Context, instance: str | None, output_format: str) -> None:
    """List devices waiting for approval."""
    listing: DeviceListing = _run(_plane(ctx, output_format).list_pending(instance))
    _emit(listing.to_dict(), output_format, format_listing_text(listing, "Pending"))


@nodes.command("paired")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def nodes_paired(ctx: click.Context, instance: str | None, output_format: str) -> None:
    """List paired nodes."""
    listing: DeviceListing = _run(_plane(ctx, output_format).list_paired(instance))
    _emit(listing.to_dict(), output_format, format_listing_text(listing, "Paired"))


def _pairing_command(ctx: click.Context, action: str, device_id: str, instance: str | None,
                     output_format: str) -> None:
    plane = _plane(ctx, output_format)
    operation = getattr(plane, action)
    outcome: PairingOutcome = _run(operation(device_id, instance))
    text = f"{action} {outcome.device_id}: {outcome.status.value}"
    if outcome.message:
        text += f" - {outcome.message}"
    _emit(outcome.to_dict(), output_format, text)
    if outcome.status in (PairingStatus.NOT_FOUND, PairingStatus.TRANSPORT_ERROR):
        raise click.ClickException(outcome.message or f"{action} failed for {outcome.device_id}")


@nodes.command("approve")
@click.argument("device_id")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def nodes_approve(ctx: click.Context, device_id: str, instance: str | None, output_format: str) -> None:
    """Approve a pending device."""
    _pairing_command(ctx, "approve", device_id, instance, output_format)


@nodes.command("reject")
@click.argument("device_id")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def nodes_reject(ctx: click.Context, device_id: str, instance: str | None, output_format: str) -> None:
    """Reject a pending device."""
    _pairing_command(ctx, "reject", device_id, instance, output_format)


@nodes.command("remove")
@click.argument("device_id")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def nodes_remove(ctx: click.Context, device_id: str, instance: str | None, output_format: str) -> None:
    """Remove a paired device from the gateway."""
    _pairing_command(ctx, "remove", device_id, instance, output_format)


# Machines subcommand group
@cli.group()
def machines() -> None:
    """Tracked machine records."""
    pass


@machines.command("list")
@FORMAT_OPTION
@click.pass_context
def machines_list(ctx: click.Context, output_format: str) -> None:
    """List tracked machines."""
    records: list[MachineRecord] = _run(_plane(ctx, output_format).list_machines())
    text = "\n".join(
        f"  {r.id}  {r.display_name or r.name or '-':<24} {r.status.value:<13} {r.hostname or '-'}"
        for r in records
    ) or "No machines tracked."
    _emit({"machines": [r.to_dict() for r in records]}, output_format, text)


@machines.command("dedup")
@FORMAT_OPTION
@click.pass_context
def machines_dedup(ctx: click.Context, output_format: str) -> None:
    """Merge machine records that share a hostname."""
    report = _run(_plane(ctx, output_format).deduplicate())
    text = f"Removed {report.removed} duplicate(s), {report.remaining} machine(s) remaining"
    _emit(report.to_dict(), output_format, text)


# Gateway subcommand group
@cli.group()
def gateway() -> None:
    """Gateway inspection."""
    pass


@gateway.command("health")
@INSTANCE_OPTION
@FORMAT_OPTION
@click.pass_context
def gateway_health(ctx: click.Context, instance: str | None, output_format: str) -> None:
    """Ask the gateway for its own health report."""
    health: GatewayHealth = _run(_plane(ctx, output_format).gateway_health(instance))
    text = f"Gateway {health.instance_id}: " + ("healthy" if health.healthy else "unhealthy")
    if health.error:
        text += f" ({health.error})"
    if health.http is not None:
        text += f"\n  http: {'OK' if health.http.reachable else 'unreachable'}"
    _emit(health.to_dict(), output_format, text)
    if not health.healthy:
        raise click.ClickException(health.error or "Gateway is not healthy")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
