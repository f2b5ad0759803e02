"""Cloud provider capability consumed by the orchestration engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import Region, ServerConfig, ServerResult, ServerSize, SnapshotInfo


class CloudProvider(ABC):
    """
    Per-vendor handle. Engines only ever talk to this interface;
    every call may raise ProviderError (or a requests exception).
    """

    name: str = ""
    display_name: str = ""

    @abstractmethod
    async def validate_token(self, token: str) -> bool: ...

    @abstractmethod
    def get_regions(self) -> List[Region]: ...

    @abstractmethod
    def get_server_sizes(self) -> List[ServerSize]: ...

    @abstractmethod
    async def upload_ssh_key(self, name: str, public_key: str) -> str: ...

    @abstractmethod
    async def create_server(self, config: ServerConfig) -> ServerResult: ...

    @abstractmethod
    async def get_server_status(self, server_id: str) -> str: ...

    @abstractmethod
    async def get_server_details(self, server_id: str) -> ServerResult: ...

    @abstractmethod
    async def destroy_server(self, server_id: str) -> None: ...

    @abstractmethod
    async def reboot_server(self, server_id: str) -> None: ...

    @abstractmethod
    async def create_snapshot(self, server_id: str, name: str) -> SnapshotInfo: ...

    @abstractmethod
    async def list_snapshots(self, server_id: str) -> List[SnapshotInfo]: ...

    @abstractmethod
    async def delete_snapshot(self, snapshot_id: str) -> None: ...

    async def get_snapshot_cost_estimate(self, server_id: str) -> str:
        return "unknown"


def sanitize_response_data(data: Any) -> Optional[Any]:
    """
    Keep only known error-message fields from a vendor error body so
    nothing else from the response (echoed headers, tokens) ends up in
    exception messages.
    """
    if data is None:
        return None
    if isinstance(data, str):
        return data
    if not isinstance(data, dict):
        return None

    clean: Dict[str, Any] = {}
    error = data.get("error")
    if isinstance(error, dict):
        err_clean = {k: error[k] for k in ("message", "code") if isinstance(error.get(k), str)}
        if err_clean:
            clean["error"] = err_clean
    elif isinstance(error, str):
        clean["error"] = error

    if isinstance(data.get("message"), str):
        clean["message"] = data["message"]

    errors = data.get("errors")
    if isinstance(errors, list):
        clean["errors"] = [
            {"reason": e["reason"]} if isinstance(e.get("reason"), str) else {}
            for e in errors if isinstance(e, dict)
        ]

    return clean or None
