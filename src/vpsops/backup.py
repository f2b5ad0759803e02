#!/usr/bin/env python3
"""
Backup/Restore Engine — Manifest-Backed Server Backups

Backups live under <backups_root>/<server-name>/<timestamp>/ as one
manifest.json plus the compressed artifacts it lists:

- managed servers: a gzip'd database dump and a tar of the platform
  configuration (coolify-backup.sql.gz, coolify-config.tar.gz)
- bare servers: one tar of system configuration (bare-config.tar.gz)

A directory without a readable, schema-valid manifest is not a backup.

Ordering rules:
- backup: nothing is written locally until both remote archives exist
- restore: the traversal guard runs before any I/O, artifacts are
  uploaded before anything is stopped, and once the platform has been
  stopped a later failure triggers a best-effort "start everything"
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from jsonschema import Draft7Validator

from .errors import (
    PathTraversalError, ValidationError, get_error_message, map_ssh_error,
)
from .models import BackupManifest, RestoreStep, ServerMode, ServerRecord, StepStatus
from .ssh_channel import SSHChannel, assert_valid_ip

logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"

PLATFORM_SOURCE_DIR = "/data/coolify/source"
COMPOSE_FILES = "-f docker-compose.yml -f docker-compose.prod.yml"
DB_CONTAINER = "coolify-db"
DB_USER = "coolify"
DB_NAME = "coolify"

DB_ARCHIVE = "coolify-backup.sql.gz"
CONFIG_ARCHIVE = "coolify-config.tar.gz"
BARE_ARCHIVE = "bare-config.tar.gz"
UPLOAD_STEPS = {
    DB_ARCHIVE: "upload-db",
    CONFIG_ARCHIVE: "upload-config",
    BARE_ARCHIVE: "upload",
}
REMOTE_TMP = "/tmp"

UNKNOWN_VERSION = "unknown"
BARE_VERSION = "n/a"

BARE_CONFIG_PATHS = (
    "etc/ssh/sshd_config",
    "etc/ufw",
    "etc/fail2ban",
    "etc/crontab",
    "etc/apt/apt.conf.d/50unattended-upgrades",
    "etc/apt/apt.conf.d/20auto-upgrades",
)

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["serverName", "provider", "timestamp", "platformVersion", "files"],
    "properties": {
        "serverName": {"type": "string", "minLength": 1},
        "provider": {"type": "string"},
        "timestamp": {"type": "string", "minLength": 1},
        "platformVersion": {"type": "string"},
        "serverIp": {"type": "string"},
        "files": {
            "type": "array",
            "minItems": 1,
            "items": {"type": "string", "pattern": r"^[A-Za-z0-9][A-Za-z0-9._-]*$"},
        },
        "mode": {"type": "string", "enum": [m.value for m in ServerMode]},
    },
}

_manifest_validator = Draft7Validator(MANIFEST_SCHEMA)


def _remote(name: str) -> str:
    return f"{REMOTE_TMP}/{name}"


# ── Command Builders ─────────────────────────────────────────────

def build_version_command() -> str:
    return "docker inspect coolify --format '{{.Config.Image}}' 2>/dev/null | sed 's/.*://' || echo unknown"


def build_db_dump_command() -> str:
    return f"docker exec {DB_CONTAINER} pg_dump -U {DB_USER} -d {DB_NAME} | gzip > {_remote(DB_ARCHIVE)}"


def build_config_tar_command() -> str:
    # docker-compose.prod.yml is optional on older installs
    primary = f"tar czf {_remote(CONFIG_ARCHIVE)} -C {PLATFORM_SOURCE_DIR} .env docker-compose.yml docker-compose.prod.yml"
    fallback = f"tar czf {_remote(CONFIG_ARCHIVE)} -C {PLATFORM_SOURCE_DIR} .env docker-compose.yml"
    return f"{primary} 2>/dev/null || {fallback}"


def build_bare_tar_command() -> str:
    paths = " ".join(BARE_CONFIG_PATHS)
    return f"tar czf {_remote(BARE_ARCHIVE)} --ignore-failed-read -C / {paths} 2>/dev/null; test -s {_remote(BARE_ARCHIVE)}"


def build_cleanup_command(mode: ServerMode) -> str:
    files = " ".join(_remote(name) for name in artifact_names(mode))
    return f"rm -f {files}"


def build_stop_platform_command() -> str:
    return f"cd {PLATFORM_SOURCE_DIR} && docker compose {COMPOSE_FILES} stop"


def build_start_platform_command() -> str:
    return f"cd {PLATFORM_SOURCE_DIR} && docker compose {COMPOSE_FILES} up -d"


def build_start_db_command() -> str:
    return f"cd {PLATFORM_SOURCE_DIR} && docker compose {COMPOSE_FILES} up -d postgres && sleep 3"


def build_restore_db_command() -> str:
    return f"gunzip -c {_remote(DB_ARCHIVE)} | docker exec -i {DB_CONTAINER} psql -U {DB_USER} -d {DB_NAME}"


def build_restore_config_command() -> str:
    return f"tar xzf {_remote(CONFIG_ARCHIVE)} -C {PLATFORM_SOURCE_DIR}"


def build_bare_restore_command() -> str:
    return f"tar xzf {_remote(BARE_ARCHIVE)} -C /"


def artifact_names(mode: ServerMode) -> List[str]:
    if mode is ServerMode.MANAGED:
        return [DB_ARCHIVE, CONFIG_ARCHIVE]
    elif mode is ServerMode.BARE:
        return [BARE_ARCHIVE]
    raise ValueError(f"Unsupported server mode: {mode}")


# ── Paths & Manifests ────────────────────────────────────────────

def format_timestamp(moment: datetime) -> str:
    """Filesystem-safe UTC timestamp, e.g. 2026-10-19_12-34-56-789."""
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d_%H-%M-%S-") + f"{moment.microsecond // 1000:03d}"


def get_backup_dir(server_name: str, backups_root: Path) -> Path:
    return Path(backups_root) / server_name


def resolve_backup_path(server_name: str, backup_id: str, backups_root: Path) -> Path:
    """
    Path of one backup, guaranteed to sit directly inside the server's
    namespace. Pure string arithmetic: touches neither disk nor network.
    """
    root = os.path.normpath(os.path.abspath(str(backups_root)))
    server_dir = os.path.normpath(os.path.join(root, server_name))
    candidate = os.path.normpath(os.path.join(server_dir, backup_id))

    if os.path.dirname(server_dir) != root or not server_name:
        raise PathTraversalError(f"Invalid server name for backup path: {server_name!r}")
    if os.path.dirname(candidate) != server_dir or not backup_id:
        raise PathTraversalError(f"Backup id escapes the backup directory: {backup_id!r}")
    return Path(candidate)


def load_manifest(backup_path: Path) -> Optional[BackupManifest]:
    """Manifest of a backup directory, or None if missing, corrupt or invalid."""
    manifest_path = Path(backup_path) / MANIFEST_FILE
    if not manifest_path.is_file():
        return None
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Unreadable manifest {manifest_path}: {e}")
        return None

    errors = sorted(_manifest_validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        logger.warning(
            f"Invalid manifest {manifest_path}: "
            + ", ".join(error.message for error in errors)
        )
        return None
    return BackupManifest.from_dict(data)


def write_manifest(backup_path: Path, manifest: BackupManifest) -> Path:
    manifest_path = Path(backup_path) / MANIFEST_FILE
    fd = os.open(manifest_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(manifest.to_dict(), handle, indent=2)
    return manifest_path


def list_backups(server_name: str, backups_root: Path) -> List[str]:
    """Backup ids for a server, newest first."""
    server_dir = get_backup_dir(server_name, backups_root)
    if not server_dir.is_dir():
        return []
    try:
        entries = [p for p in server_dir.iterdir() if p.is_dir()]
    except OSError:
        return []
    return sorted(
        (p.name for p in entries if load_manifest(p) is not None),
        reverse=True,
    )


def find_orphan_backups(active_server_names, backups_root: Path) -> List[str]:
    """Server directories under the backups root with no matching active server."""
    root = Path(backups_root)
    if not root.is_dir():
        return []
    active = set(active_server_names)
    return sorted(
        p.name for p in root.iterdir()
        if p.is_dir() and p.name not in active
    )


# ── Results ──────────────────────────────────────────────────────

@dataclass
class BackupResult:
    success: bool
    backup_path: Optional[Path] = None
    manifest: Optional[BackupManifest] = None
    error: Optional[str] = None
    hint: Optional[str] = None


@dataclass
class RestoreResult:
    success: bool
    steps: List[RestoreStep] = field(default_factory=list)
    error: Optional[str] = None
    hint: Optional[str] = None
    rolled_back: bool = False

    def step_statuses(self) -> Dict[str, str]:
        return {s.name: s.status.value for s in self.steps}


class _StepFailed(Exception):
    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


# ── Engine ───────────────────────────────────────────────────────

class BackupEngine:
    """
    Produces and consumes (manifest, artifacts) pairs for one server at
    a time. Callers serialize operations per server; the engine holds no
    lock of its own.
    """

    def __init__(
        self,
        channel: SSHChannel,
        backups_root: Path,
        clock: Callable[[], datetime] = None,
    ):
        self.channel = channel
        self.backups_root = Path(backups_root)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Backup ───────────────────────────────────────────────────

    async def create_backup(self, server: ServerRecord) -> BackupResult:
        try:
            assert_valid_ip(server.ip)
            if server.mode is ServerMode.MANAGED:
                return await self._backup_managed(server)
            elif server.mode is ServerMode.BARE:
                return await self._backup_bare(server)
            raise ValueError(f"Unsupported server mode: {server.mode}")
        except ValidationError as e:
            return BackupResult(success=False, error=get_error_message(e))
        except Exception as e:  # noqa: BLE001
            logger.error(f"Backup of {server.name} failed unexpectedly: {e}")
            hint = map_ssh_error(e, server.ip)
            return BackupResult(success=False, error=get_error_message(e), hint=hint or None)

    async def _backup_managed(self, server: ServerRecord) -> BackupResult:
        ip = server.ip
        version_result = await self.channel.exec(ip, build_version_command())
        version = version_result.stdout.strip() if version_result.success else ""
        version = version or UNKNOWN_VERSION

        dump = await self.channel.exec(ip, build_db_dump_command())
        if not dump.success:
            return BackupResult(
                success=False, error="Database backup failed",
                hint=_hint(dump.stderr, ip),
            )

        config = await self.channel.exec(ip, build_config_tar_command())
        if not config.success:
            return BackupResult(
                success=False, error="Config backup failed",
                hint=_hint(config.stderr, ip),
            )

        return await self._collect(server, version, ServerMode.MANAGED)

    async def _backup_bare(self, server: ServerRecord) -> BackupResult:
        archive = await self.channel.exec(server.ip, build_bare_tar_command())
        if not archive.success:
            return BackupResult(
                success=False, error="System config backup failed",
                hint=_hint(archive.stderr, server.ip),
            )
        return await self._collect(server, BARE_VERSION, ServerMode.BARE)

    async def _collect(self, server: ServerRecord, version: str, mode: ServerMode) -> BackupResult:
        """Download the staged archives, then write the manifest."""
        timestamp = format_timestamp(self._clock())
        backup_path = resolve_backup_path(server.name, timestamp, self.backups_root)
        backup_path.mkdir(parents=True, mode=0o700)

        files = artifact_names(mode)
        for name in files:
            transfer = await self.channel.download(server.ip, _remote(name), str(backup_path / name))
            if not transfer.success:
                shutil.rmtree(backup_path, ignore_errors=True)
                await self._cleanup(server.ip, mode)
                return BackupResult(
                    success=False,
                    error=f"Failed to download {name}",
                    hint=_hint(transfer.stderr, server.ip),
                )

        manifest = BackupManifest(
            server_name=server.name,
            provider=server.provider,
            timestamp=timestamp,
            platform_version=version,
            files=files,
            mode=mode,
            server_ip=server.ip,
        )
        write_manifest(backup_path, manifest)
        logger.info(f"Backup of {server.name} written to {backup_path}")

        await self._cleanup(server.ip, mode)
        return BackupResult(success=True, backup_path=backup_path, manifest=manifest)

    # ── Restore ──────────────────────────────────────────────────

    async def restore_backup(
        self, server: ServerRecord, backup_id: str, safe_mode: bool = False,
    ) -> RestoreResult:
        if safe_mode:
            return RestoreResult(
                success=False,
                error="Restore is disabled while safe mode is enabled",
                hint="Disable safe mode to run destructive operations",
            )
        try:
            backup_path = resolve_backup_path(server.name, backup_id, self.backups_root)
            assert_valid_ip(server.ip)
        except ValidationError as e:
            return RestoreResult(success=False, error=get_error_message(e))

        manifest = load_manifest(backup_path)
        if manifest is None:
            return RestoreResult(success=False, error=f"Backup not found or corrupt: {backup_id}")

        expected = artifact_names(manifest.mode)
        if sorted(manifest.files) != sorted(expected):
            return RestoreResult(
                success=False,
                error=f"Incomplete backup: expected {', '.join(expected)}, found {', '.join(manifest.files)}",
            )

        for name in manifest.files:
            if not (backup_path / name).is_file():
                return RestoreResult(success=False, error=f"Missing backup file: {name}")

        if manifest.mode is not server.mode:
            return RestoreResult(
                success=False,
                error=f"Backup is for a {manifest.mode.value} server but {server.name} is {server.mode.value}",
            )

        steps: List[RestoreStep] = []
        try:
            if manifest.mode is ServerMode.MANAGED:
                return await self._restore_managed(server, backup_path, manifest, steps)
            elif manifest.mode is ServerMode.BARE:
                return await self._restore_bare(server, backup_path, manifest, steps)
            raise ValueError(f"Unsupported server mode: {manifest.mode}")
        except ValidationError as e:
            return RestoreResult(success=False, steps=steps, error=get_error_message(e))
        except Exception as e:  # noqa: BLE001
            logger.error(f"Restore of {server.name} failed unexpectedly: {e}")
            hint = map_ssh_error(e, server.ip)
            return RestoreResult(
                success=False, steps=steps, error=get_error_message(e), hint=hint or None,
            )

    async def _upload_all(
        self, ip: str, backup_path: Path, manifest: BackupManifest, steps: List[RestoreStep],
    ) -> Optional[RestoreResult]:
        for name in manifest.files:
            step_name = UPLOAD_STEPS.get(name, "upload")
            transfer = await self.channel.upload(ip, str(backup_path / name), _remote(name))
            if not transfer.success:
                steps.append(RestoreStep(step_name, StepStatus.FAILURE, transfer.stderr))
                return RestoreResult(
                    success=False, steps=steps, error=f"Failed to upload {name}",
                    hint=_hint(transfer.stderr, ip),
                )
        return None

    async def _step(self, ip: str, name: str, command: str, steps: List[RestoreStep]) -> None:
        result = await self.channel.exec(ip, command)
        if not result.success:
            steps.append(RestoreStep(name, StepStatus.FAILURE, result.stderr))
            raise _StepFailed(result.stderr)
        steps.append(RestoreStep(name, StepStatus.SUCCESS))

    async def _restore_managed(
        self, server: ServerRecord, backup_path: Path,
        manifest: BackupManifest, steps: List[RestoreStep],
    ) -> RestoreResult:
        ip = server.ip
        failed = await self._upload_all(ip, backup_path, manifest, steps)
        if failed is not None:
            return failed

        try:
            await self._step(ip, "stop", build_stop_platform_command(), steps)
        except _StepFailed:
            return RestoreResult(success=False, steps=steps, error="Failed to stop platform")

        recoverable = (
            ("start-db", build_start_db_command(), "Failed to start database"),
            ("restore-db", build_restore_db_command(), "Database restore failed"),
            ("restore-config", build_restore_config_command(), "Config restore failed"),
        )
        for name, command, error in recoverable:
            try:
                await self._step(ip, name, command, steps)
            except _StepFailed:
                await self._rollback(ip)
                return RestoreResult(success=False, steps=steps, error=error, rolled_back=True)

        try:
            await self._step(ip, "start", build_start_platform_command(), steps)
        except _StepFailed:
            return RestoreResult(success=False, steps=steps, error="Failed to start platform")

        await self._cleanup(ip, ServerMode.MANAGED)
        logger.info(f"Restored {server.name} from {manifest.timestamp}")
        return RestoreResult(success=True, steps=steps)

    async def _restore_bare(
        self, server: ServerRecord, backup_path: Path,
        manifest: BackupManifest, steps: List[RestoreStep],
    ) -> RestoreResult:
        ip = server.ip
        failed = await self._upload_all(ip, backup_path, manifest, steps)
        if failed is not None:
            return failed

        try:
            await self._step(ip, "extract", build_bare_restore_command(), steps)
        except _StepFailed:
            return RestoreResult(success=False, steps=steps, error="System config restore failed")

        await self._cleanup(ip, ServerMode.BARE)
        logger.info(f"Restored system config of {server.name} from {manifest.timestamp}")
        return RestoreResult(success=True, steps=steps)

    # ── Best-effort actions ──────────────────────────────────────

    async def _rollback(self, ip: str) -> None:
        logger.warning(f"Restore on {ip} failed after stop, starting platform again")
        try:
            result = await self.channel.exec(ip, build_start_platform_command())
            if not result.success:
                logger.warning(f"Rollback start on {ip} failed: {result.stderr.strip()[:200]}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Rollback start on {ip} raised: {e}")

    async def _cleanup(self, ip: str, mode: ServerMode) -> None:
        try:
            await self.channel.exec(ip, build_cleanup_command(mode))
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Remote cleanup on {ip} failed: {e}")


def _hint(stderr: str, ip: str) -> Optional[str]:
    return map_ssh_error(stderr, ip) or (stderr.strip()[:500] or None)
