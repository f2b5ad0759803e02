#!/usr/bin/env python3
"""
Hetzner Cloud API Client — CloudProvider implementation
Wraps the Hetzner Cloud public API (api.hetzner.cloud/v1).

Implements:
- validate_token(token) -> bool
- create_server(config) -> ServerResult
- get_server_status(server_id) -> str
- get_server_details(server_id) -> ServerResult
- reboot_server(server_id) / destroy_server(server_id)
- upload_ssh_key(name, public_key) -> key id
- create_snapshot / list_snapshots / delete_snapshot

HTTP is done with blocking `requests` calls pushed onto a worker thread,
so the async engines never stall the event loop on the network.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from ..errors import ProviderError
from ..models import Region, ServerConfig, ServerResult, ServerSize, SnapshotInfo
from .base import CloudProvider, sanitize_response_data

logger = logging.getLogger(__name__)

BASE_URL = "https://api.hetzner.cloud/v1"
SERVER_IMAGE = "ubuntu-24.04"
SNAPSHOT_PRICE_PER_GB = 0.0119


class HetznerProvider(CloudProvider):
    """
    Hetzner Cloud provider.

    Auth: Bearer token passed by the caller (the engines resolve it from
    HETZNER_TOKEN). The token is only ever placed in request headers.
    """

    name = "hetzner"
    display_name = "Hetzner Cloud"
    DEFAULT_TIMEOUT = 30

    def __init__(self, api_token: str, timeout: int = None):
        self.api_token = api_token
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._request_count = 0
        self._error_count = 0

    def _headers(self, token: str = None) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {token or self.api_token}",
        }

    def _request(self, method: str, path: str, token: str = None, **kwargs) -> Any:
        """Blocking request. Returns decoded JSON, raises ProviderError."""
        url = f"{BASE_URL}{path}"
        self._request_count += 1
        try:
            resp = requests.request(
                method, url,
                headers=self._headers(token),
                timeout=self.timeout,
                **kwargs,
            )
        except requests.RequestException as e:
            self._error_count += 1
            logger.error(f"Hetzner API {e.__class__.__name__}: {method} {path}")
            raise ProviderError(f"Hetzner API request failed: {e.__class__.__name__}") from e

        if resp.status_code >= 400:
            self._error_count += 1
            try:
                body = sanitize_response_data(resp.json())
            except ValueError:
                body = None
            message = _error_message(body) or f"HTTP {resp.status_code}"
            logger.warning(f"Hetzner API error: {method} {path} -> {resp.status_code}")
            raise ProviderError(message, status_code=resp.status_code)

        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(f"Unexpected response from Hetzner: {e}") from e

    async def _call(self, method: str, path: str, **kwargs) -> Any:
        return await asyncio.to_thread(self._request, method, path, **kwargs)

    # ── Token & catalogs ─────────────────────────────────────────

    async def validate_token(self, token: str) -> bool:
        try:
            await self._call("GET", "/servers", token=token, params={"per_page": 1})
            return True
        except ProviderError as e:
            if e.status_code in (401, 403):
                return False
            raise

    def get_regions(self) -> List[Region]:
        return [
            Region("nbg1", "Nuremberg", "Germany"),
            Region("fsn1", "Falkenstein", "Germany"),
            Region("hel1", "Helsinki", "Finland"),
            Region("ash", "Ashburn", "USA"),
        ]

    def get_server_sizes(self) -> List[ServerSize]:
        return [
            ServerSize("cax11", "CAX11", 2, 4, 40, "€3.85/mo"),
            ServerSize("cpx11", "CPX11", 2, 2, 40, "€4.15/mo"),
            ServerSize("cax21", "CAX21", 4, 8, 80, "€7.05/mo"),
            ServerSize("cpx21", "CPX21", 3, 4, 80, "€7.35/mo"),
        ]

    # ── Servers ──────────────────────────────────────────────────

    async def create_server(self, config: ServerConfig) -> ServerResult:
        payload: Dict[str, Any] = {
            "name": config.name,
            "server_type": config.size,
            "location": config.region,
            "image": SERVER_IMAGE,
            "user_data": config.cloud_init,
        }
        if config.ssh_key_ids:
            payload["ssh_keys"] = [int(k) if str(k).isdigit() else k for k in config.ssh_key_ids]
        data = await self._call("POST", "/servers", json=payload)
        return self._parse_server(data.get("server", {}))

    async def get_server_status(self, server_id: str) -> str:
        data = await self._call("GET", f"/servers/{server_id}")
        return data.get("server", {}).get("status", "unknown")

    async def get_server_details(self, server_id: str) -> ServerResult:
        data = await self._call("GET", f"/servers/{server_id}")
        return self._parse_server(data.get("server", {}))

    async def destroy_server(self, server_id: str) -> None:
        await self._call("DELETE", f"/servers/{server_id}")

    async def reboot_server(self, server_id: str) -> None:
        await self._call("POST", f"/servers/{server_id}/actions/reboot")

    async def upload_ssh_key(self, name: str, public_key: str) -> str:
        data = await self._call("POST", "/ssh_keys", json={"name": name, "public_key": public_key})
        return str(data.get("ssh_key", {}).get("id", ""))

    # ── Snapshots ────────────────────────────────────────────────

    async def create_snapshot(self, server_id: str, name: str) -> SnapshotInfo:
        data = await self._call(
            "POST", f"/servers/{server_id}/actions/create_image",
            json={"description": name, "type": "snapshot"},
        )
        image = data.get("image", {})
        return SnapshotInfo(
            id=str(image.get("id", "")),
            server_id=str(server_id),
            name=image.get("description", name),
            status=image.get("status", "creating"),
            size_gb=float(image.get("image_size") or 0),
            created_at=image.get("created", ""),
        )

    async def list_snapshots(self, server_id: str) -> List[SnapshotInfo]:
        data = await self._call("GET", "/images", params={"type": "snapshot"})
        snapshots = []
        for image in data.get("images", []):
            created_from = image.get("created_from") or {}
            if str(created_from.get("id", "")) != str(server_id):
                continue
            size_gb = float(image.get("image_size") or 0)
            snapshots.append(SnapshotInfo(
                id=str(image.get("id", "")),
                server_id=str(server_id),
                name=image.get("description", ""),
                status=image.get("status", "unknown"),
                size_gb=size_gb,
                created_at=image.get("created", ""),
                cost_per_month=f"€{size_gb * SNAPSHOT_PRICE_PER_GB:.2f}/mo",
            ))
        return snapshots

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self._call("DELETE", f"/images/{snapshot_id}")

    async def get_snapshot_cost_estimate(self, server_id: str) -> str:
        data = await self._call("GET", f"/servers/{server_id}")
        disk_gb = data.get("server", {}).get("server_type", {}).get("disk", 0)
        return f"€{disk_gb * SNAPSHOT_PRICE_PER_GB:.2f}/mo"

    # ── Helpers ──────────────────────────────────────────────────

    @staticmethod
    def _parse_server(data: Dict[str, Any]) -> ServerResult:
        ipv4 = (data.get("public_net") or {}).get("ipv4") or {}
        return ServerResult(
            id=str(data.get("id", "")),
            ip=ipv4.get("ip") or "pending",
            status=data.get("status", "unknown"),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_requests": self._request_count,
            "total_errors": self._error_count,
        }


def _error_message(body: Optional[Any]) -> str:
    if isinstance(body, str):
        return body[:200]
    if not isinstance(body, dict):
        return ""
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message", "")
    if isinstance(error, str):
        return error
    return body.get("message", "")
