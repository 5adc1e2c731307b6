"""Bounded polling for instance boot and SSH port reachability."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from .errors import AuthenticationError, InstanceNotFoundError, ProviderError, TransportError
from .providers.base import CloudProvider, InstanceInfo, InstanceRef, InstanceStatus

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
OpenConnection = Callable[..., Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]


@dataclass(slots=True, frozen=True)
class ProbeResult:
    ready: bool
    attempts: int
    info: InstanceInfo | None = None

    def __bool__(self) -> bool:
        return self.ready


class ReadinessProber:
    """Fixed-interval retry loops; individual failures only mean "not yet"."""

    def __init__(
        self,
        provider: CloudProvider,
        *,
        sleep: Sleep = asyncio.sleep,
        open_connection: OpenConnection = asyncio.open_connection,
    ) -> None:
        self._provider = provider
        self._sleep = sleep
        self._open_connection = open_connection

    async def wait_for_running(
        self,
        ref: InstanceRef,
        max_attempts: int = 60,
        interval: float = 5.0,
    ) -> ProbeResult:
        """Poll instance status until RUNNING or the budget runs out.

        Not-found and permission errors propagate immediately.
        """
        last_status: InstanceStatus | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                info = await self._provider.get_instance(ref)
            except (AuthenticationError, InstanceNotFoundError):
                raise
            except (TransportError, ProviderError) as exc:
                logger.info(
                    "Status check for %s failed (attempt %d/%d): %s",
                    ref, attempt, max_attempts, exc,
                )
            else:
                if info.status is InstanceStatus.RUNNING:
                    logger.info("Instance %s is running after %d checks", ref, attempt)
                    return ProbeResult(True, attempt, info)
                if info.status is not last_status:
                    logger.info("Instance %s is %s", ref, info.status.value)
                    last_status = info.status
            if attempt < max_attempts:
                await self._sleep(interval)
        logger.warning("Instance %s did not reach RUNNING after %d checks", ref, max_attempts)
        return ProbeResult(False, max_attempts)

    async def wait_for_ssh_reachable(
        self,
        host: str,
        port: int = 22,
        max_attempts: int = 30,
        interval: float = 2.0,
        *,
        connect_timeout: float = 5.0,
    ) -> ProbeResult:
        """TCP connect-and-close against ``host:port`` until it succeeds."""
        for attempt in range(1, max_attempts + 1):
            try:
                _, writer = await asyncio.wait_for(
                    self._open_connection(host, port),
                    timeout=connect_timeout,
                )
            except (OSError, asyncio.TimeoutError) as exc:
                logger.debug(
                    "SSH port %s:%d not reachable (attempt %d/%d): %s",
                    host, port, attempt, max_attempts, exc,
                )
            else:
                writer.close()
                try:
                    await writer.wait_closed()
                except OSError:
                    pass
                logger.info("SSH port %s:%d reachable after %d probes", host, port, attempt)
                return ProbeResult(True, attempt)
            if attempt < max_attempts:
                await self._sleep(interval)
        logger.warning("SSH port %s:%d unreachable after %d probes", host, port, max_attempts)
        return ProbeResult(False, max_attempts)
