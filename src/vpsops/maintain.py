#!/usr/bin/env python3
"""
Fleet Maintenance Engine — five-phase update/reboot sequence per server

Phases (always reported, in order):
  1. Status Check: cloud-side status; manual servers skip it
  2. Update      : platform install script (managed) or apt upgrade (bare)
  3. Health Check: soft: a failure is recorded, the sequence continues
  4. Reboot      : via the provider API; skipped on opt-out or manual
  5. Final Check : health again after the reboot

A hard failure in phases 1, 2 or 4 marks every later phase skipped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .errors import get_error_message, map_provider_error, map_ssh_error
from .health import HealthProbe
from .models import ServerMode, ServerRecord, StepResult, StepStatus
from .providers import CloudProvider, ProviderFactory, create_provider
from .ssh_channel import SSHChannel, assert_valid_ip

logger = logging.getLogger(__name__)

PLATFORM_UPDATE_CMD = "curl -fsSL https://cdn.coollabs.io/coolify/install.sh | bash"
BARE_UPDATE_CMD = (
    "export DEBIAN_FRONTEND=noninteractive && apt-get update -qq && "
    "apt-get -y -o Dpkg::Options::=--force-confdef -o Dpkg::Options::=--force-confold upgrade"
)
SSH_PROBE_CMD = "true"

PHASES = {
    1: "Status Check",
    2: "Update",
    3: "Health Check",
    4: "Reboot",
    5: "Final Check",
}

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class MaintainOptions:
    health_attempts: int = 12
    health_interval: float = 5
    reboot_attempts: int = 30
    reboot_interval: float = 2
    reboot_initial_wait: float = 10

    @classmethod
    def from_config(cls, config) -> "MaintainOptions":
        return cls(
            health_attempts=config.health_attempts,
            health_interval=config.health_interval,
            reboot_attempts=config.reboot_attempts,
            reboot_interval=config.reboot_interval,
            reboot_initial_wait=config.reboot_initial_wait,
        )


@dataclass
class UpdateResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class RebootResult:
    success: bool
    final_status: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class MaintainResult:
    server: str
    ip: str
    provider: str
    steps: List[StepResult] = field(default_factory=list)
    success: bool = False

    def to_dict(self) -> Dict:
        return {
            "server": self.server,
            "ip": self.ip,
            "provider": self.provider,
            "steps": [s.to_dict() for s in self.steps],
            "success": self.success,
        }


class MaintenanceEngine:
    """Runs the maintenance sequence against one server or a fleet."""

    def __init__(
        self,
        channel: SSHChannel,
        probe: HealthProbe,
        provider_factory: ProviderFactory = create_provider,
        options: MaintainOptions = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.channel = channel
        self.probe = probe
        self.provider_factory = provider_factory
        self.options = options or MaintainOptions()
        self._sleep = sleep

    # ── Single operations ────────────────────────────────────────

    async def execute_update(self, server: ServerRecord) -> UpdateResult:
        try:
            assert_valid_ip(server.ip)
            if server.mode is ServerMode.MANAGED:
                command = PLATFORM_UPDATE_CMD
            elif server.mode is ServerMode.BARE:
                command = BARE_UPDATE_CMD
            else:
                raise ValueError(f"Unsupported server mode: {server.mode}")

            result = await self.channel.exec(server.ip, command)
            if result.success:
                logger.info(f"Update completed on {server.name}")
                return UpdateResult(success=True, output=result.stdout or None)
            hint = map_ssh_error(result.stderr, server.ip)
            return UpdateResult(
                success=False,
                error=f"Update failed (exit code {result.exit_code})",
                output=result.stderr or result.stdout or None,
                hint=hint or None,
            )
        except Exception as e:  # noqa: BLE001
            hint = map_ssh_error(e, server.ip)
            return UpdateResult(success=False, error=get_error_message(e), hint=hint or None)

    async def reboot_and_wait(self, server: ServerRecord, api_token: str) -> RebootResult:
        if server.is_manual:
            return RebootResult(
                success=False,
                error=f"Cannot reboot manually added server via API. Use SSH: ssh root@{server.ip} reboot",
            )
        opts = self.options
        try:
            provider = self.provider_factory(server.provider, api_token)
            await provider.reboot_server(server.id)
            await self._sleep(opts.reboot_initial_wait)

            for _ in range(opts.reboot_attempts):
                try:
                    if await provider.get_server_status(server.id) == "running":
                        logger.info(f"{server.name} is back after reboot")
                        return RebootResult(success=True, final_status="running")
                except Exception as e:  # noqa: BLE001
                    logger.debug(f"Status poll during reboot of {server.name} failed: {e}")
                await self._sleep(opts.reboot_interval)

            return RebootResult(
                success=False,
                final_status="timeout",
                error="Server did not come back online in time",
                hint="The server may still be rebooting. Check status later.",
            )
        except Exception as e:  # noqa: BLE001
            hint = map_provider_error(e, server.provider)
            return RebootResult(success=False, error=get_error_message(e), hint=hint or None)

    async def _poll_ssh(self, ip: str, attempts: int, interval: float) -> bool:
        for attempt in range(attempts):
            result = await self.channel.exec(ip, SSH_PROBE_CMD)
            if result.success:
                return True
            if attempt < attempts - 1:
                await self._sleep(interval)
        return False

    async def check_health(self, server: ServerRecord) -> bool:
        """Managed: platform answers on HTTP. Bare: SSH answers."""
        opts = self.options
        if server.mode is ServerMode.MANAGED:
            return await self.probe.poll_platform(server.ip, opts.health_attempts, opts.health_interval)
        elif server.mode is ServerMode.BARE:
            return await self._poll_ssh(server.ip, opts.health_attempts, opts.health_interval)
        raise ValueError(f"Unsupported server mode: {server.mode}")

    # ── Sequence ─────────────────────────────────────────────────

    async def maintain(
        self, server: ServerRecord, api_token: str, skip_reboot: bool = False,
    ) -> MaintainResult:
        result = MaintainResult(server=server.name, ip=server.ip, provider=server.provider)
        try:
            await self._run_phases(server, api_token, skip_reboot, result.steps)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Maintenance of {server.name} failed unexpectedly: {e}")
            step = len(result.steps) + 1
            if step in PHASES:
                result.steps.append(StepResult(step, PHASES[step], StepStatus.FAILURE,
                                               error=get_error_message(e)))
                _skip_from(step + 1, result.steps)
        result.success = all(s.status is not StepStatus.FAILURE for s in result.steps)
        level = logging.INFO if result.success else logging.WARNING
        logger.log(level, f"Maintenance of {server.name}: {'ok' if result.success else 'failed'}")
        return result

    async def _run_phases(
        self, server: ServerRecord, api_token: str, skip_reboot: bool, steps: List[StepResult],
    ) -> None:
        # Phase 1
        if server.is_manual:
            steps.append(StepResult(1, PHASES[1], StepStatus.SKIPPED,
                                    detail="Manual server, assuming running"))
        else:
            try:
                provider: CloudProvider = self.provider_factory(server.provider, api_token)
                status = await provider.get_server_status(server.id)
            except Exception as e:  # noqa: BLE001
                hint = map_provider_error(e, server.provider)
                steps.append(StepResult(1, PHASES[1], StepStatus.FAILURE,
                                        error=get_error_message(e), hint=hint or None))
                _skip_from(2, steps)
                return
            if status != "running":
                steps.append(StepResult(1, PHASES[1], StepStatus.FAILURE,
                                        detail=f"Server is {status}"))
                _skip_from(2, steps)
                return
            steps.append(StepResult(1, PHASES[1], StepStatus.SUCCESS, detail="Server is running"))

        # Phase 2
        update = await self.execute_update(server)
        if not update.success:
            steps.append(StepResult(2, PHASES[2], StepStatus.FAILURE,
                                    error=update.error, hint=update.hint))
            _skip_from(3, steps)
            return
        steps.append(StepResult(2, PHASES[2], StepStatus.SUCCESS))

        # Phase 3
        if await self.check_health(server):
            steps.append(StepResult(3, PHASES[3], StepStatus.SUCCESS, detail="Healthy after update"))
        else:
            steps.append(StepResult(3, PHASES[3], StepStatus.FAILURE,
                                    detail="Did not respond after update"))

        # Phases 4 and 5
        if skip_reboot or server.is_manual:
            reason = "Manual server, no API reboot" if server.is_manual else "Skipped by user"
            _skip_from(4, steps, detail=reason)
            return

        reboot = await self.reboot_and_wait(server, api_token)
        if not reboot.success:
            steps.append(StepResult(4, PHASES[4], StepStatus.FAILURE,
                                    error=reboot.error, hint=reboot.hint))
            _skip_from(5, steps)
            return
        steps.append(StepResult(4, PHASES[4], StepStatus.SUCCESS, detail="Server rebooted"))

        if await self.check_health(server):
            steps.append(StepResult(5, PHASES[5], StepStatus.SUCCESS, detail="Server and services are running"))
        else:
            steps.append(StepResult(5, PHASES[5], StepStatus.FAILURE,
                                    detail="Server running but services did not respond"))

    async def maintain_all(
        self, servers: List[ServerRecord], tokens: Dict[str, str], skip_reboot: bool = False,
    ) -> List[MaintainResult]:
        """Maintain several servers concurrently; results keep the input order."""
        return list(await asyncio.gather(*(
            self.maintain(s, tokens.get(s.provider, ""), skip_reboot=skip_reboot)
            for s in servers
        )))


def _skip_from(first: int, steps: List[StepResult], detail: str = None) -> None:
    for step in range(first, len(PHASES) + 1):
        steps.append(StepResult(step, PHASES[step], StepStatus.SKIPPED, detail=detail))
