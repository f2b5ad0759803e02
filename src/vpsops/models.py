"""
Shared data model for the orchestrator.

Server records and backup manifests round-trip through JSON with the
camelCase keys used on disk; everything else is an in-memory value type.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


MANUAL_ID_PREFIX = "manual-"


class ServerMode(Enum):
    """Operating mode of a server."""
    MANAGED = "managed"
    BARE = "bare"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ServerMode":
        # Records and manifests written before modes existed are managed.
        if value is None or value == "":
            return cls.MANAGED
        if isinstance(value, ServerMode):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown server mode: {value!r}") from None


class StepStatus(Enum):
    """Outcome of one engine phase."""
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass
class ServerRecord:
    """A registered server."""
    id: str
    name: str
    provider: str
    ip: str
    region: str = "unknown"
    size: str = "unknown"
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    mode: ServerMode = ServerMode.MANAGED

    @property
    def is_manual(self) -> bool:
        """True when the server has no vendor-assigned identity."""
        return self.id.startswith(MANUAL_ID_PREFIX)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "ip": self.ip,
            "region": self.region,
            "size": self.size,
            "createdAt": self.created_at,
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerRecord":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            provider=data["provider"],
            ip=data.get("ip", ""),
            region=data.get("region", "unknown"),
            size=data.get("size", "unknown"),
            created_at=data.get("createdAt", ""),
            mode=ServerMode.parse(data.get("mode")),
        )


@dataclass
class BackupManifest:
    """Describes one completed backup directory."""
    server_name: str
    provider: str
    timestamp: str
    platform_version: str
    files: List[str]
    mode: ServerMode = ServerMode.MANAGED
    server_ip: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "serverName": self.server_name,
            "provider": self.provider,
            "timestamp": self.timestamp,
            "platformVersion": self.platform_version,
            "files": list(self.files),
            "mode": self.mode.value,
        }
        if self.server_ip:
            d["serverIp"] = self.server_ip
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupManifest":
        return cls(
            server_name=data["serverName"],
            provider=data["provider"],
            timestamp=data["timestamp"],
            platform_version=data["platformVersion"],
            files=list(data["files"]),
            mode=ServerMode.parse(data.get("mode")),
            server_ip=data.get("serverIp"),
        )


@dataclass
class StepResult:
    """One phase of the maintenance sequence."""
    step: int
    name: str
    status: StepStatus
    detail: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class RestoreStep:
    """One phase of a restore."""
    name: str
    status: StepStatus
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "error": self.error}


# ── Provider value types ─────────────────────────────────────────

@dataclass
class Region:
    id: str
    name: str
    location: str


@dataclass
class ServerSize:
    id: str
    name: str
    vcpu: int
    ram: float
    disk: int
    price: str


@dataclass
class ServerConfig:
    """Parameters for creating a server."""
    name: str
    size: str
    region: str
    cloud_init: str
    ssh_key_ids: List[str] = field(default_factory=list)


@dataclass
class ServerResult:
    id: str
    ip: str
    status: str


@dataclass
class SnapshotInfo:
    id: str
    server_id: str
    name: str
    status: str
    size_gb: float = 0.0
    created_at: str = ""
    cost_per_month: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
