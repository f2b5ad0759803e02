"""Configuration loader for the orchestrator."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_HOME = Path.home() / ".vpsops"

PROVIDER_TOKEN_ENV = {
    "hetzner": "HETZNER_TOKEN",
    "digitalocean": "DIGITALOCEAN_TOKEN",
    "vultr": "VULTR_TOKEN",
    "linode": "LINODE_TOKEN",
}


@dataclass(frozen=True)
class ChannelConfig:
    username: str = "root"
    exec_timeout: float = 30
    stream_timeout: float = 120
    transfer_timeout: float = 300
    kill_grace: float = 2


@dataclass(frozen=True)
class MaintenanceConfig:
    health_attempts: int = 12
    health_interval: float = 5
    reboot_attempts: int = 30
    reboot_interval: float = 2
    reboot_initial_wait: float = 10


@dataclass(frozen=True)
class ProvisioningConfig:
    default_template: str = "starter"
    boot_attempts: int = 30
    boot_interval: float = 1


@dataclass(frozen=True)
class OrchestratorConfig:
    backups_root: Path = DEFAULT_HOME / "backups"
    servers_file: Path = DEFAULT_HOME / "servers.json"
    safe_mode: bool = False
    health_port: int = 8000
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorConfig":
        ch = data.get("channel", {})
        mt = data.get("maintenance", {})
        pv = data.get("provisioning", {})
        return cls(
            backups_root=Path(data.get("backups_root", DEFAULT_HOME / "backups")).expanduser(),
            servers_file=Path(data.get("servers_file", DEFAULT_HOME / "servers.json")).expanduser(),
            safe_mode=_as_bool(data.get("safe_mode", False)),
            health_port=int(data.get("health_port", 8000)),
            channel=ChannelConfig(
                username=ch.get("username", "root"),
                exec_timeout=float(ch.get("exec_timeout", 30)),
                stream_timeout=float(ch.get("stream_timeout", 120)),
                transfer_timeout=float(ch.get("transfer_timeout", 300)),
                kill_grace=float(ch.get("kill_grace", 2)),
            ),
            maintenance=MaintenanceConfig(
                health_attempts=int(mt.get("health_attempts", 12)),
                health_interval=float(mt.get("health_interval", 5)),
                reboot_attempts=int(mt.get("reboot_attempts", 30)),
                reboot_interval=float(mt.get("reboot_interval", 2)),
                reboot_initial_wait=float(mt.get("reboot_initial_wait", 10)),
            ),
            provisioning=ProvisioningConfig(
                default_template=pv.get("default_template", "starter"),
                boot_attempts=int(pv.get("boot_attempts", 30)),
                boot_interval=float(pv.get("boot_interval", 1)),
            ),
        )


ENV_MAP = {
    "backups_root": "VPSOPS_BACKUPS_DIR",
    "servers_file": "VPSOPS_SERVERS_FILE",
    "safe_mode": "VPSOPS_SAFE_MODE",
    "health_port": "VPSOPS_HEALTH_PORT",
    "channel.exec_timeout": "VPSOPS_SSH_TIMEOUT",
    "channel.transfer_timeout": "VPSOPS_TRANSFER_TIMEOUT",
    "maintenance.health_attempts": "VPSOPS_HEALTH_ATTEMPTS",
    "maintenance.health_interval": "VPSOPS_HEALTH_INTERVAL",
    "provisioning.default_template": "VPSOPS_TEMPLATE",
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def merge_env_overrides(config_data: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(config_data, default=str))  # deep copy via json

    for dotted_key, env_name in ENV_MAP.items():
        if env_name not in os.environ:
            continue
        target = merged
        parts = dotted_key.split(".")
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = os.environ[env_name]

    return merged


def load_config(config_path: Optional[str | Path] = None) -> OrchestratorConfig:
    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        data = load_yaml(path)

    data = merge_env_overrides(data)
    return OrchestratorConfig.from_dict(data)


def get_provider_token(provider: str) -> Optional[str]:
    """API token for a vendor from its environment variable, if set."""
    env_name = PROVIDER_TOKEN_ENV.get(provider)
    if not env_name:
        return None
    return os.environ.get(env_name) or None


def token_env_name(provider: str) -> str:
    return PROVIDER_TOKEN_ENV.get(provider, f"{provider.upper()}_TOKEN")
