"""Async SSH transport for clawfleet.

Runs one command per SSH session using asyncssh. Sessions are never pooled:
each call connects, executes, reads to EOF and closes. Failures are raised
as TransportError with an ErrorTypes classification so the retry layer can
decide what to do with them.
"""

import asyncio
import errno
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import asyncssh

from .exceptions import ErrorTypes, TransportError
from .types import RemoteTarget

logger = logging.getLogger(__name__)

_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH, errno.EHOSTDOWN}


@dataclass
class RawOutput:
    """What came back from one completed session."""

    stdout: str
    stderr: str
    exit_status: int


class Transport(ABC):
    """Executes one command on a target in one session."""

    @abstractmethod
    async def run(self, target: RemoteTarget, command: str, timeout: float) -> RawOutput:
        """Run a command and return its output.

        Raises:
            TransportError: If the session could not be completed
        """


def to_asyncssh_options(target: RemoteTarget, connect_timeout: float) -> dict[str, Any]:
    """Convert a target to asyncssh.connect() kwargs."""
    options: dict[str, Any] = {
        "host": target.host,
        "port": target.port,
        "username": target.user,
        "connect_timeout": connect_timeout,
    }
    if target.password:
        options["password"] = target.password
    if target.client_keys:
        options["client_keys"] = list(target.client_keys)
    if target.known_hosts is None:
        options["known_hosts"] = None  # Disable host key checking
    elif target.known_hosts != ():
        options["known_hosts"] = target.known_hosts
    return options


def classify_os_error(exc: OSError) -> str:
    if isinstance(exc, ConnectionRefusedError):
        return ErrorTypes.CONNECTION_REFUSED
    if exc.errno in _UNREACHABLE_ERRNOS:
        return ErrorTypes.HOST_UNREACHABLE
    if isinstance(exc, TimeoutError):
        return ErrorTypes.CONNECTION_TIMEOUT
    return ErrorTypes.HOST_UNREACHABLE


class AsyncSSHTransport(Transport):
    """Transport backed by asyncssh.

    Example:
        transport = AsyncSSHTransport(connect_timeout=30)
        out = await transport.run(target, "uptime", timeout=120)
        print(out.stdout)
    """

    def __init__(self, connect_timeout: float = 30.0) -> None:
        self.connect_timeout = connect_timeout

    async def _session(self, target: RemoteTarget, command: str) -> RawOutput:
        logger.debug(f"Connecting to {target.host}:{target.port} as {target.user}")
        async with asyncssh.connect(**to_asyncssh_options(target, self.connect_timeout)) as conn:
            result = await conn.run(command, check=False)

        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if isinstance(stdout, bytes):
            stdout = stdout.decode("utf-8", errors="replace")
        if isinstance(stderr, bytes):
            stderr = stderr.decode("utf-8", errors="replace")
        exit_status = result.exit_status if result.exit_status is not None else -1

        logger.debug(
            f"Command completed on {target.host}: rc={exit_status}, "
            f"stdout={len(stdout)} bytes, stderr={len(stderr)} bytes"
        )
        return RawOutput(stdout, stderr, exit_status)

    async def run(self, target: RemoteTarget, command: str, timeout: float) -> RawOutput:
        try:
            return await asyncio.wait_for(self._session(target, command), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"SSH session to {target.host} timed out after {timeout}s",
                ErrorTypes.CONNECTION_TIMEOUT,
                host=target.host,
            ) from e
        except asyncssh.PermissionDenied as e:
            raise TransportError(
                f"SSH authentication failed for {target.user}@{target.host}",
                ErrorTypes.AUTHENTICATION_FAILED,
                host=target.host,
            ) from e
        except asyncssh.Error as e:
            raise TransportError(
                f"SSH session error on {target.host}: {e.reason or e}",
                ErrorTypes.SESSION_ERROR,
                host=target.host,
            ) from e
        except OSError as e:
            raise TransportError(
                f"SSH connection failed to {target.host}:{target.port}: {e}",
                classify_os_error(e),
                host=target.host,
            ) from e
