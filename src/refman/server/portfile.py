"""Sidecar file announcing a running background server.

The file holds one JSON object ``{port, pid, library, started_at}``. It is
advisory: any process may read it, and anything unreadable is treated as
"no server".
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

from refman.core.library import atomic_write_text

logger = logging.getLogger(__name__)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Portfile:
    port: int
    pid: int
    library: str
    started_at: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"port": self.port, "pid": self.pid, "library": self.library}
        if self.started_at:
            data["started_at"] = self.started_at
        return data

    @classmethod
    def from_dict(cls, data: object) -> Portfile | None:
        if not isinstance(data, dict):
            return None
        port, pid, library = data.get("port"), data.get("pid"), data.get("library")
        if not _is_int(port) or not _is_int(pid) or not isinstance(library, str) or not library:
            return None
        started_at = data.get("started_at")
        return cls(port, pid, library, started_at if isinstance(started_at, str) else None)


class PortfileStore:
    """Read/write access to one portfile location."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()

    def write(self, record: Portfile) -> None:
        atomic_write_text(self.path, json.dumps(record.to_dict(), indent=2) + "\n")
        logger.debug("Portfile written: %s (pid=%d, port=%d)", self.path, record.pid, record.port)

    def claim(self, record: Portfile) -> bool:
        """Create the portfile only if none exists; False if another one is in place.

        The record is written to a temp file and hard-linked into place, so
        exactly one of several concurrent claimers succeeds.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".claim", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(record.to_dict(), indent=2) + "\n")
                f.flush()
                os.fsync(f.fileno())
            os.link(tmp_name, self.path)
        except FileExistsError:
            return False
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        logger.debug("Portfile claimed: %s (pid=%d, port=%d)", self.path, record.pid, record.port)
        return True

    def inspect(self) -> tuple[bool, Portfile | None]:
        """Return ``(present, record)``; a present file with no record is corrupt."""
        return self._parse(self.path)

    def read(self) -> Portfile | None:
        return self.inspect()[1]

    def discard(self, expected: Portfile | None) -> bool:
        """Remove the portfile if it still holds ``expected`` (``None`` = corrupt).

        The file is first renamed aside, so a record written by another
        process since ``expected`` was read is put back instead of deleted.
        """
        aside = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False
        _, moved = self._parse(aside)
        if moved == expected:
            aside.unlink(missing_ok=True)
            return True
        try:
            os.link(aside, self.path)
        except FileExistsError:
            pass
        aside.unlink(missing_ok=True)
        return False

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)

    def exists(self) -> bool:
        return self.path.exists()

    @staticmethod
    def _parse(path: Path) -> tuple[bool, Portfile | None]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False, None
        except OSError as e:
            logger.warning("Cannot read portfile %s: %s", path, e)
            return False, None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Corrupt portfile %s", path)
            return True, None
        return True, Portfile.from_dict(data)
