"""
Server management — register existing servers, forget them, destroy them

Manually registered servers get a local "manual-<ms>" id; the engines
treat such records as having no vendor identity (no API status, reboot
or snapshots). Destroying a server deletes it at the vendor and then
drops the local record.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import get_provider_token, token_env_name
from .errors import ProviderError, get_error_message, map_provider_error
from .models import MANUAL_ID_PREFIX, ServerMode, ServerRecord
from .providers import SUPPORTED_PROVIDERS, ProviderFactory, create_provider
from .provision import TokenLookup, is_valid_provider, validate_server_name
from .ssh_channel import SSHChannel, check_ssh_available, is_valid_ip
from .store import ServerStore

logger = logging.getLogger(__name__)

PLATFORM_HEALTH_CMD = "curl -s -o /dev/null -w '%{http_code}' http://localhost:8000/api/health"
PLATFORM_CONTAINERS_CMD = "docker ps --format '{{.Names}}' 2>/dev/null | grep -q coolify && echo OK"


@dataclass
class AddServerResult:
    success: bool
    server: Optional[ServerRecord] = None
    platform_status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RemoveServerResult:
    success: bool
    server: Optional[ServerRecord] = None
    error: Optional[str] = None


@dataclass
class DestroyServerResult:
    success: bool
    server: Optional[ServerRecord] = None
    cloud_deleted: bool = False
    local_removed: bool = False
    error: Optional[str] = None
    hint: Optional[str] = None


def validate_ip_address(ip: str) -> Optional[str]:
    """Error message for an address that cannot be registered, None when fine."""
    if not ip:
        return "IP address is required"
    if not is_valid_ip(ip):
        return "Invalid IP address format"
    if ip == "0.0.0.0" or ip.startswith("127."):
        return "Reserved IP address not allowed"
    return None


def _is_not_found(error: BaseException) -> bool:
    if isinstance(error, ProviderError) and error.status_code == 404:
        return True
    message = get_error_message(error).lower()
    return "not found" in message or "not_found" in message


class ServerManager:

    def __init__(
        self,
        store: ServerStore,
        provider_factory: ProviderFactory = create_provider,
        channel: SSHChannel = None,
        token_lookup: TokenLookup = get_provider_token,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.provider_factory = provider_factory
        self.channel = channel or SSHChannel()
        self._token_lookup = token_lookup
        self._clock = clock

    # ── Register ─────────────────────────────────────────────────

    async def add_server(
        self, provider: str, ip: str, name: str,
        mode: ServerMode = ServerMode.MANAGED, skip_verify: bool = False,
    ) -> AddServerResult:
        if not is_valid_provider(provider):
            return AddServerResult(
                success=False,
                error=f"Invalid provider: {provider}. Valid: {', '.join(SUPPORTED_PROVIDERS)}",
            )

        token = self._token_lookup(provider)
        if not token:
            return AddServerResult(
                success=False,
                error=f"No API token found for provider: {provider}. "
                      f"Set {token_env_name(provider)} environment variable",
            )

        ip_error = validate_ip_address(ip)
        if ip_error:
            return AddServerResult(success=False, error=ip_error)

        duplicate = next((s for s in self.store.list() if s.ip == ip), None)
        if duplicate is not None:
            return AddServerResult(
                success=False, error=f"Server with IP {ip} already exists: {duplicate.name}",
            )

        name_error = validate_server_name(name)
        if name_error:
            return AddServerResult(success=False, error=name_error)

        try:
            if not await self.provider_factory(provider, token).validate_token(token):
                return AddServerResult(success=False, error=f"Invalid API token for {provider}")
        except Exception as e:  # noqa: BLE001
            return AddServerResult(success=False, error=f"Token validation failed: {get_error_message(e)}")

        if skip_verify or mode is not ServerMode.MANAGED:
            platform_status = "skipped"
        else:
            platform_status = await self._verify_platform(ip)

        record = ServerRecord(
            id=f"{MANUAL_ID_PREFIX}{int(self._clock() * 1000)}",
            name=name,
            provider=provider,
            ip=ip,
            mode=mode,
        )
        self.store.save(record)
        return AddServerResult(success=True, server=record, platform_status=platform_status)

    async def _verify_platform(self, ip: str) -> str:
        if not check_ssh_available():
            return "ssh_unavailable"
        try:
            result = await self.channel.exec(ip, PLATFORM_HEALTH_CMD)
            if result.success and "200" in result.stdout.strip():
                return "running"
            result = await self.channel.exec(ip, PLATFORM_CONTAINERS_CMD)
            if result.success and "OK" in result.stdout.strip():
                return "containers_detected"
            return "not_detected"
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Platform verification on {ip} failed: {e}")
            return "verification_failed"

    # ── Forget / destroy ─────────────────────────────────────────

    def remove_server(self, query: str) -> RemoveServerResult:
        server = self.store.find(query)
        if server is None:
            return RemoveServerResult(success=False, error=f"Server not found: {query}")
        if not self.store.remove(server.id):
            return RemoveServerResult(success=False, server=server,
                                      error=f"Failed to remove server: {server.name}")
        logger.info(f"Removed {server.name} from the registry")
        return RemoveServerResult(success=True, server=server)

    async def destroy_server(self, query: str, safe_mode: bool = False) -> DestroyServerResult:
        if safe_mode:
            return DestroyServerResult(
                success=False,
                error="Destroy is disabled while safe mode is enabled",
                hint="Disable safe mode to run destructive operations",
            )
        server = self.store.find(query)
        if server is None:
            return DestroyServerResult(success=False, error=f"Server not found: {query}")
        if server.is_manual:
            return DestroyServerResult(
                success=False,
                server=server,
                error=f'Server "{server.name}" was manually added (no cloud provider ID). '
                      f"Remove it from the registry instead.",
            )

        token = self._token_lookup(server.provider)
        if not token:
            return DestroyServerResult(
                success=False,
                server=server,
                error=f"No API token for {server.provider}. "
                      f"Set {token_env_name(server.provider)} environment variable",
            )

        try:
            await self.provider_factory(server.provider, token).destroy_server(server.id)
        except Exception as e:  # noqa: BLE001
            if _is_not_found(e):
                self.store.remove(server.id)
                return DestroyServerResult(
                    success=True,
                    server=server,
                    local_removed=True,
                    hint=f"Server not found on {server.provider} (may have been deleted manually). "
                         f"Removed from local registry.",
                )
            hint = map_provider_error(e, server.provider)
            return DestroyServerResult(
                success=False, server=server, error=get_error_message(e), hint=hint or None,
            )

        self.store.remove(server.id)
        logger.info(f"Destroyed {server.name} on {server.provider}")
        return DestroyServerResult(success=True, server=server, cloud_deleted=True, local_removed=True)
