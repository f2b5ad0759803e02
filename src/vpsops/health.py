"""Reachability probes used by the engines to decide when to stop waiting."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import requests

from .errors import get_error_message
from .models import ServerRecord
from .providers import CloudProvider
from .ssh_channel import assert_valid_ip

logger = logging.getLogger(__name__)

PLATFORM_RUNNING = "running"
PLATFORM_UNREACHABLE = "not reachable"

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class StatusResult:
    server: ServerRecord
    server_status: str
    platform_status: str
    error: Optional[str] = None


class HealthProbe:
    """
    HTTP reachability of the platform dashboard plus cloud-side status.

    Any HTTP response at all counts as "running": the dashboard answers
    with redirects and login pages, only a refused or timed out
    connection means the platform is down.
    """

    def __init__(self, port: int = 8000, timeout: float = 5, sleep: SleepFn = asyncio.sleep):
        self.port = port
        self.timeout = timeout
        self._sleep = sleep

    def _probe(self, ip: str) -> bool:
        try:
            requests.get(f"http://{ip}:{self.port}", timeout=self.timeout, allow_redirects=False)
            return True
        except requests.RequestException:
            return False

    async def check_platform(self, ip: str) -> str:
        assert_valid_ip(ip)
        ok = await asyncio.to_thread(self._probe, ip)
        return PLATFORM_RUNNING if ok else PLATFORM_UNREACHABLE

    async def poll_platform(self, ip: str, attempts: int, interval: float) -> bool:
        """Check up to `attempts` times, sleeping `interval` seconds between tries."""
        for attempt in range(attempts):
            if await self.check_platform(ip) == PLATFORM_RUNNING:
                return True
            if attempt < attempts - 1:
                await self._sleep(interval)
        logger.warning(f"Platform on {ip} did not respond after {attempts} attempts")
        return False

    async def wait_for_platform(
        self, ip: str, min_wait: float, interval: float = 5, attempts: int = 60,
    ) -> bool:
        """Give a fresh install time to start, then poll."""
        await self._sleep(min_wait)
        return await self.poll_platform(ip, attempts, interval)

    async def server_status(self, server: ServerRecord, provider: CloudProvider) -> str:
        if server.is_manual:
            return "unknown (manual)"
        return await provider.get_server_status(server.id)

    async def check_server(
        self, server: ServerRecord, provider: Optional[CloudProvider],
    ) -> StatusResult:
        try:
            if provider is None and not server.is_manual:
                server_status = "unknown (no token)"
            else:
                server_status = await self.server_status(server, provider)
            platform_status = await self.check_platform(server.ip)
            return StatusResult(server, server_status, platform_status)
        except Exception as e:  # noqa: BLE001
            return StatusResult(server, "error", "unknown", error=get_error_message(e))

    async def check_all(
        self, servers: List[ServerRecord], providers: Dict[str, CloudProvider],
    ) -> List[StatusResult]:
        """Check every server concurrently; results keep the input order."""
        return list(await asyncio.gather(
            *(self.check_server(s, providers.get(s.provider)) for s in servers)
        ))
