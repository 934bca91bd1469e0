"""Decide whether a usable server exists for a library."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from refman.server.liveness import LivenessProber, default_prober
from refman.server.portfile import PortfileStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerConnection:
    base_url: str
    pid: int


def normalize_library_path(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


class ServerDetector:
    def __init__(self, portfiles: PortfileStore, prober: LivenessProber | None = None) -> None:
        self.portfiles = portfiles
        self.prober = prober or default_prober()

    def detect(self, library_path: str | Path) -> ServerConnection | None:
        """Return a connection iff the portfile names a live server for ``library_path``.

        A portfile for another library is left alone (its server may be alive).
        A portfile naming a dead pid, or one that cannot be parsed, is removed.
        """
        present, record = self.portfiles.inspect()
        if record is None:
            if present:
                logger.info("Removing corrupt portfile %s", self.portfiles.path)
                self.portfiles.discard(None)
            return None

        if normalize_library_path(record.library) != normalize_library_path(library_path):
            logger.debug("Server (pid=%d) serves %s, not %s", record.pid, record.library, library_path)
            return None

        if not self.prober.is_alive(record.pid):
            logger.info("Removing stale portfile %s (pid=%d is gone)", self.portfiles.path, record.pid)
            self.portfiles.discard(record)
            return None

        return ServerConnection(base_url=f"http://127.0.0.1:{record.port}", pid=record.pid)
