"""Provider-side disk snapshots of registered servers."""

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .errors import get_error_message, map_provider_error
from .models import ServerRecord, SnapshotInfo
from .providers import CloudProvider

logger = logging.getLogger(__name__)


@dataclass
class SnapshotCreateResult:
    success: bool
    snapshot: Optional[SnapshotInfo] = None
    cost_estimate: Optional[str] = None
    error: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class SnapshotListResult:
    snapshots: List[SnapshotInfo] = field(default_factory=list)
    error: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class SnapshotDeleteResult:
    success: bool
    error: Optional[str] = None
    hint: Optional[str] = None


def _manual_error(server: ServerRecord) -> str:
    return f"Snapshots need a provider API; {server.name} was added manually"


async def create_snapshot(server: ServerRecord, provider: CloudProvider) -> SnapshotCreateResult:
    if server.is_manual:
        return SnapshotCreateResult(success=False, error=_manual_error(server))
    try:
        try:
            cost = await provider.get_snapshot_cost_estimate(server.id)
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Snapshot cost estimate for {server.name} failed: {e}")
            cost = "unknown"

        snapshot = await provider.create_snapshot(server.id, f"vpsops-{int(time.time() * 1000)}")
        logger.info(f"Snapshot {snapshot.id} of {server.name} requested")
        return SnapshotCreateResult(success=True, snapshot=snapshot, cost_estimate=cost)
    except Exception as e:  # noqa: BLE001
        hint = map_provider_error(e, server.provider)
        return SnapshotCreateResult(success=False, error=get_error_message(e), hint=hint or None)


async def list_snapshots(server: ServerRecord, provider: CloudProvider) -> SnapshotListResult:
    if server.is_manual:
        return SnapshotListResult(error=_manual_error(server))
    try:
        return SnapshotListResult(snapshots=await provider.list_snapshots(server.id))
    except Exception as e:  # noqa: BLE001
        hint = map_provider_error(e, server.provider)
        return SnapshotListResult(error=get_error_message(e), hint=hint or None)


async def delete_snapshot(
    server: ServerRecord, provider: CloudProvider, snapshot_id: str, safe_mode: bool = False,
) -> SnapshotDeleteResult:
    if safe_mode:
        return SnapshotDeleteResult(
            success=False,
            error="Snapshot deletion is disabled while safe mode is enabled",
            hint="Disable safe mode to run destructive operations",
        )
    if server.is_manual:
        return SnapshotDeleteResult(success=False, error=_manual_error(server))
    try:
        await provider.delete_snapshot(snapshot_id)
        logger.info(f"Deleted snapshot {snapshot_id} of {server.name}")
        return SnapshotDeleteResult(success=True)
    except Exception as e:  # noqa: BLE001
        hint = map_provider_error(e, server.provider)
        return SnapshotDeleteResult(success=False, error=get_error_message(e), hint=hint or None)
