"""
Server registry — JSON list of server records on local disk.

The file is created 0600 inside a 0700 directory since it maps names to
addresses of machines we hold root keys for.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional

from .models import ServerRecord

logger = logging.getLogger(__name__)


class ServerStore:

    def __init__(self, path: Path):
        self.path = Path(path)

    def list(self) -> List[ServerRecord]:
        if not self.path.is_file():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable server registry {self.path}: {e}")
            return []
        if not isinstance(data, list):
            return []

        records = []
        for entry in data:
            try:
                records.append(ServerRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed server record: {e}")
        return records

    def save(self, record: ServerRecord) -> None:
        servers = self.list()
        servers.append(record)
        self._write(servers)
        logger.info(f"Registered server {record.name} ({record.ip})")

    def remove(self, server_id: str) -> bool:
        servers = self.list()
        remaining = [s for s in servers if s.id != server_id]
        if len(remaining) == len(servers):
            return False
        self._write(remaining)
        return True

    def find(self, query: str) -> Optional[ServerRecord]:
        """Look up by IP first, then by name."""
        servers = self.list()
        for server in servers:
            if server.ip == query:
                return server
        for server in servers:
            if server.name == query:
                return server
        return None

    def _write(self, servers: List[ServerRecord]) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump([s.to_dict() for s in servers], handle, indent=2)
