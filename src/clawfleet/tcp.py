"""TCP reachability probe, the last resort of a health check."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Iterable

from .config import GATEWAY_PORT

logger = logging.getLogger(__name__)

DEFAULT_PORTS = (22, 80, 443, GATEWAY_PORT)
DEFAULT_TIMEOUT = 3.0


@dataclass
class TcpProbeResult:
    reachable: bool
    port: int | None = None
    latency_ms: int | None = None
    error: str | None = None


async def _can_connect(host: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def probe_tcp(
    host: str,
    ports: Iterable[int] = DEFAULT_PORTS,
    timeout: float = DEFAULT_TIMEOUT,
) -> TcpProbeResult:
    """Try each port in turn; reachable as soon as one accepts a connection.

    Example:
        >>> result = await probe_tcp("198.51.100.7")
        >>> result.reachable, result.port
        (True, 22)
    """
    ports = list(ports)
    for port in ports:
        started = time.perf_counter()
        if await _can_connect(host, port, timeout):
            latency_ms = int((time.perf_counter() - started) * 1000)
            logger.debug(f"TCP {host}:{port} open ({latency_ms}ms)")
            return TcpProbeResult(True, port, latency_ms)
    return TcpProbeResult(
        False,
        error=f"No open ports found on common ports ({', '.join(str(p) for p in ports)})",
    )
