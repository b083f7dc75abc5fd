"""Remote command executor.

Runs allow-listed commands (and internally built, sanitized commands) on a
gateway host. Every call opens fresh sessions through a Transport, retries
transport failures, and reports the outcome as an ExecutionResult. Transport
failures never escape as exceptions; policy violations always do, and they
are raised before any connection is attempted.
"""

import asyncio
import logging
from typing import Iterable

from .commands import CommandSpec
from .exceptions import TransportError
from .logging import TRACE, log_performance, redact
from .policy import CommandPolicy
from .retry import RetryConfig, retry_with_backoff
from .ssh import RawOutput, Transport
from .types import ExecutionResult, RemoteTarget

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 120.0


class RemoteExecutor:
    """Execute commands on remote targets.

    Attributes:
        transport: Session factory (asyncssh in production)
        policy: Allow-list and operator rules
        retry: Delay and backoff between attempts
        timeout: Default whole-session timeout in seconds

    Example:
        >>> executor = RemoteExecutor(AsyncSSHTransport(), CommandPolicy())
        >>> result = await executor.run_named("status", target)
        >>> result.success
        True
    """

    def __init__(
        self,
        transport: Transport,
        policy: CommandPolicy | None = None,
        retry: RetryConfig | None = None,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.transport = transport
        self.policy = policy or CommandPolicy()
        self.retry = retry or RetryConfig()
        self.timeout = timeout
        self._inflight: set[asyncio.Task] = set()

    async def run_named(
        self,
        name: str,
        target: RemoteTarget,
        retries: int | None = None,
        timeout: float | None = None,
        instance_id: str = "",
    ) -> ExecutionResult:
        """Run an allow-listed command by name.

        Args:
            name: Command name from the allow-list
            target: Host to run on
            retries: Extra attempts on transport failure (defaults to config)
            timeout: Whole-session timeout in seconds
            instance_id: Instance the target belongs to, for policy rules

        Raises:
            PolicyViolation: If the command is unknown or denied
        """
        spec = self.policy.enforce(name, instance_id)
        return await self._execute(
            spec.command,
            target,
            retries=retries,
            timeout=timeout,
            ok_exit_codes=(0,),
            spec=spec,
        )

    async def run_allowed(
        self,
        name: str,
        target: RemoteTarget,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run an allow-listed command the control plane issues on its own.

        Operator deny rules are not consulted; they fence off what operators
        request, not the reads reconciliation and pairing depend on.

        Raises:
            PolicyViolation: If the name is not on the allow-list
        """
        spec = self.policy.lookup(name)
        return await self._execute(
            spec.command,
            target,
            retries=retries,
            timeout=timeout,
            ok_exit_codes=(0,),
            spec=spec,
        )

    async def run_raw(
        self,
        command: str,
        target: RemoteTarget,
        retries: int | None = None,
        timeout: float | None = None,
        ok_exit_codes: Iterable[int] = (0,),
    ) -> ExecutionResult:
        """Run a command built inside this package from sanitized arguments.

        Not exposed through the CLI or facade by name.
        """
        return await self._execute(
            command, target, retries=retries, timeout=timeout, ok_exit_codes=ok_exit_codes
        )

    def _spawn(self, target: RemoteTarget, command: str, timeout: float) -> asyncio.Task:
        task = asyncio.ensure_future(self.transport.run(target, command, timeout))
        self._inflight.add(task)
        task.add_done_callback(self._session_done)
        return task

    def _session_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # Retrieve the exception of sessions nobody awaits any more.
        if not task.cancelled():
            task.exception()

    async def _execute(
        self,
        command: str,
        target: RemoteTarget,
        retries: int | None,
        timeout: float | None,
        ok_exit_codes: Iterable[int],
        spec: CommandSpec | None = None,
    ) -> ExecutionResult:
        timeout = timeout or self.timeout
        retry = self.retry if retries is None else self.retry.with_attempts(retries)

        label = spec.name if spec else "raw"
        logger.log(TRACE, f"Running on {target.host} [{label}]: {redact(command, target.secrets())}")

        attempts = 0

        async def attempt() -> RawOutput:
            nonlocal attempts
            attempts += 1
            # A cancelled caller abandons the session; it runs to its own timeout.
            return await asyncio.shield(self._spawn(target, command, timeout))

        try:
            with log_performance(logger, "Remote command", host=target.host, command=label):
                raw, state = await retry_with_backoff(attempt, retry, host=target.host)
        except TransportError as e:
            logger.warning(f"Command {label} on {target.host} failed: {redact(str(e), target.secrets())}")
            return ExecutionResult(
                success=False,
                error=redact(str(e), target.secrets()),
                attempts=attempts,
                error_type=e.error_type,
            )

        if state.errors:
            logger.info(
                f"Command {label} on {target.host} recovered after {state.attempts} attempts "
                f"(last error: {state.last_error_type})"
            )
        return self._to_result(raw, state.attempts, ok_exit_codes, spec, target)

    @staticmethod
    def _to_result(
        raw: RawOutput,
        attempts: int,
        ok_exit_codes: Iterable[int],
        spec: CommandSpec | None,
        target: RemoteTarget,
    ) -> ExecutionResult:
        output = raw.stdout.strip()
        stderr = raw.stderr.strip()
        accepted = raw.exit_status in tuple(ok_exit_codes)
        if not accepted and spec is not None and spec.accept_output_on_failure and output:
            accepted = True

        if accepted:
            return ExecutionResult(
                success=True,
                output=output,
                error=stderr or None,
                exit_code=raw.exit_status,
                attempts=attempts,
            )

        error = stderr or f"Command exited with status {raw.exit_status}"
        logger.debug(f"Command on {target.host} exited {raw.exit_status}: {redact(error, target.secrets())}")
        return ExecutionResult(
            success=False,
            output=output,
            error=error,
            exit_code=raw.exit_status,
            attempts=attempts,
        )
