#!/usr/bin/env python3
"""
Provisioning Workflow — validate, create, wait, register

Stages run strictly in order and each one returns a ProvisionResult
with an error (and, where we can tell, a hint) instead of raising:

  vendor -> name -> region/size -> token -> token check -> SSH key
  -> bootstrap script -> create -> boot poll -> IP poll -> persist

SSH key setup never fails a provision: the server is created key-less.
A server whose IP is still pending after the vendor's poll window is
registered as "pending" and reported as a success with a hint.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .config import OrchestratorConfig, ProvisioningConfig, get_provider_token, token_env_name
from .errors import ValidationError, get_error_message, map_provider_error
from .models import ServerConfig, ServerMode, ServerRecord
from .providers import SUPPORTED_PROVIDERS, CloudProvider, ProviderFactory, create_provider
from .sshkey import SshKeyManager
from .ssh_channel import assert_valid_ip, is_valid_ip
from .store import ServerStore
from .templates import get_bootstrap_script, get_template_defaults

logger = logging.getLogger(__name__)

# (attempts, interval seconds) for IP assignment; vendors differ a lot
IP_WAIT: Dict[str, Tuple[int, float]] = {
    "hetzner": (10, 3),
    "digitalocean": (20, 3),
    "vultr": (40, 5),
    "linode": (30, 5),
}
DEFAULT_IP_WAIT = (20, 3)

PENDING_IP = "pending"
PENDING_IPS = frozenset({"", PENDING_IP, "0.0.0.0"})

SERVER_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*[a-z0-9]$")

SleepFn = Callable[[float], Awaitable[None]]
TokenLookup = Callable[[str], Optional[str]]


@dataclass
class ProvisionRequest:
    provider: str
    name: str
    region: Optional[str] = None
    size: Optional[str] = None
    template: Optional[str] = None
    mode: ServerMode = ServerMode.MANAGED


@dataclass
class ProvisionResult:
    success: bool
    server: Optional[ServerRecord] = None
    error: Optional[str] = None
    hint: Optional[str] = None


def is_pending_ip(ip: Optional[str]) -> bool:
    return not ip or ip in PENDING_IPS


def is_valid_provider(name: str) -> bool:
    return name in SUPPORTED_PROVIDERS


def validate_server_name(name: str) -> Optional[str]:
    """Error message for an invalid server name, None when it is acceptable."""
    if not name:
        return "Server name is required"
    if len(name) < 3 or len(name) > 63:
        return "Server name must be 3-63 characters"
    if not SERVER_NAME_RE.fullmatch(name):
        return "Must start with a letter, end with letter/number, only lowercase letters, numbers, hyphens"
    return None


async def upload_ssh_key_best_effort(provider: CloudProvider, key_manager: SshKeyManager) -> List[str]:
    """Upload the local public key; any failure yields no key ids."""
    try:
        public_key = key_manager.get_or_create_public_key()
    except Exception as e:  # noqa: BLE001
        logger.warning(f"SSH key lookup failed: {e}. Continuing without SSH key.")
        return []
    if not public_key:
        logger.warning("No local SSH key available, skipping upload")
        return []
    try:
        key_id = await provider.upload_ssh_key(key_manager.key_name(), public_key)
    except Exception as e:  # noqa: BLE001
        logger.warning(f"SSH key upload failed: {get_error_message(e)}. Continuing without SSH key.")
        return []
    return [key_id] if key_id else []


class ProvisioningWorkflow:

    def __init__(
        self,
        provider_factory: ProviderFactory = create_provider,
        store: ServerStore = None,
        key_manager: SshKeyManager = None,
        config: ProvisioningConfig = None,
        sleep: SleepFn = asyncio.sleep,
        token_lookup: TokenLookup = get_provider_token,
    ):
        self.provider_factory = provider_factory
        self.store = store or ServerStore(OrchestratorConfig().servers_file)
        self.key_manager = key_manager or SshKeyManager()
        self.config = config or ProvisioningConfig()
        self._sleep = sleep
        self._token_lookup = token_lookup

    async def provision(self, request: ProvisionRequest) -> ProvisionResult:
        try:
            return await self._provision(request)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Provisioning {request.name} failed unexpectedly: {e}")
            hint = map_provider_error(e, request.provider)
            return ProvisionResult(success=False, error=get_error_message(e), hint=hint or None)

    async def _provision(self, request: ProvisionRequest) -> ProvisionResult:
        if not is_valid_provider(request.provider):
            return ProvisionResult(
                success=False,
                error=f"Invalid provider: {request.provider}. Valid: {', '.join(SUPPORTED_PROVIDERS)}",
            )

        name_error = validate_server_name(request.name)
        if name_error:
            return ProvisionResult(success=False, error=name_error)

        template = request.template or self.config.default_template
        defaults = get_template_defaults(template, request.provider)
        region = request.region or (defaults.region if defaults else None)
        size = request.size or (defaults.size if defaults else None)
        if not region or not size:
            return ProvisionResult(
                success=False,
                error=f'Could not resolve region/size for provider "{request.provider}" with template "{template}"',
                hint="Provide explicit region and size parameters, or use a valid template",
            )

        token = self._token_lookup(request.provider)
        if not token:
            return ProvisionResult(
                success=False,
                error=f"No API token found for {request.provider}",
                hint=f"Set {token_env_name(request.provider)} environment variable",
            )

        provider = self.provider_factory(request.provider, token)

        try:
            if not await provider.validate_token(token):
                return ProvisionResult(success=False, error=f"Invalid API token for {request.provider}")
        except Exception as e:  # noqa: BLE001
            hint = map_provider_error(e, request.provider)
            return ProvisionResult(
                success=False,
                error=f"Token validation failed: {get_error_message(e)}",
                hint=hint or None,
            )

        ssh_key_ids = await upload_ssh_key_best_effort(provider, self.key_manager)
        cloud_init = get_bootstrap_script(request.name, request.mode)

        try:
            created = await provider.create_server(ServerConfig(
                name=request.name,
                size=size,
                region=region,
                cloud_init=cloud_init,
                ssh_key_ids=ssh_key_ids,
            ))
        except Exception as e:  # noqa: BLE001
            hint = map_provider_error(e, request.provider)
            return ProvisionResult(
                success=False,
                error=f"Server creation failed: {get_error_message(e)}",
                hint=hint or None,
            )
        logger.info(f"Created {request.provider} server {request.name} (id {created.id})")

        if not await self._wait_for_boot(provider, created.id):
            return ProvisionResult(
                success=False,
                error=f"Server did not boot in time ({self.config.boot_attempts} status checks)",
                hint="The server may still be booting. Check status manually.",
            )

        ip = created.ip
        if is_pending_ip(ip):
            ip = await self._wait_for_ip(provider, request.provider, created.id)
        elif not is_valid_ip(ip):
            logger.warning(f"IP validation failed for {ip}, marking as pending")
            ip = PENDING_IP

        record = ServerRecord(
            id=created.id,
            name=request.name,
            provider=request.provider,
            ip=ip,
            region=region,
            size=size,
            mode=request.mode,
        )
        self.store.save(record)

        if is_pending_ip(ip):
            return ProvisionResult(
                success=True,
                server=record,
                hint=f"IP address not yet assigned. Check the status of '{request.name}' again shortly.",
            )
        return ProvisionResult(success=True, server=record)

    async def _wait_for_boot(self, provider: CloudProvider, server_id: str) -> bool:
        attempts = self.config.boot_attempts
        for attempt in range(attempts):
            try:
                if await provider.get_server_status(server_id) == "running":
                    return True
            except Exception as e:  # noqa: BLE001
                logger.debug(f"Boot status poll for {server_id} failed: {e}")
            if attempt < attempts - 1:
                await self._sleep(self.config.boot_interval)
        return False

    async def _wait_for_ip(self, provider: CloudProvider, vendor: str, server_id: str) -> str:
        attempts, interval = IP_WAIT.get(vendor, DEFAULT_IP_WAIT)
        for _ in range(attempts):
            await self._sleep(interval)
            try:
                details = await provider.get_server_details(server_id)
            except Exception as e:  # noqa: BLE001
                logger.debug(f"IP poll for {server_id} failed: {e}")
                continue
            if is_pending_ip(details.ip):
                continue
            try:
                assert_valid_ip(details.ip)
            except ValidationError:
                continue
            return details.ip
        logger.warning(f"No IP assigned to {server_id} after {attempts} polls")
        return PENDING_IP
