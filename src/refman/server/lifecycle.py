"""Server lifecycle commands: start, stop and status."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from refman.config import RefmanConfig
from refman.errors import ServerNotRunningError
from refman.server.daemon import ServerDaemon, ensure_not_running, spawn_detached, wait_for_portfile
from refman.server.liveness import LivenessProber, default_prober
from refman.server.portfile import Portfile, PortfileStore

logger = logging.getLogger(__name__)

STOP_TIMEOUT = 5.0
START_TIMEOUT = 5.0


@dataclass
class ServerStatus:
    running: bool
    port: int | None = None
    pid: int | None = None
    library: str | None = None
    started_at: str | None = None

    def to_dict(self) -> dict:
        if not self.running:
            return {"running": False}
        return {
            "running": True,
            "port": self.port,
            "pid": self.pid,
            "library": self.library,
            "started_at": self.started_at,
        }


async def server_start(
    config: RefmanConfig,
    *,
    port: int | None = None,
    daemon: bool = False,
    config_path: Path | None = None,
    portfiles: PortfileStore | None = None,
    prober: LivenessProber | None = None,
) -> Portfile | None:
    """Start a server for ``config.library``.

    In the foreground this blocks until the server shuts down and returns
    ``None``. With ``daemon=True`` it returns the child's portfile record
    once the child is accepting requests.
    """
    portfiles = portfiles or PortfileStore(config.server.portfile)
    prober = prober or default_prober()
    ensure_not_running(portfiles, prober)

    if not daemon:
        await ServerDaemon(config, port=port, portfiles=portfiles, prober=prober).run()
        return None

    proc = spawn_detached(config, port=port, config_path=config_path)
    return await wait_for_portfile(portfiles, proc, timeout=START_TIMEOUT)


async def _wait_for_exit(pid: int, prober: LivenessProber, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while prober.is_alive(pid):
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(0.05)
    return True


async def server_stop(
    config: RefmanConfig,
    *,
    portfiles: PortfileStore | None = None,
    prober: LivenessProber | None = None,
    timeout: float = STOP_TIMEOUT,
) -> Portfile:
    """Terminate the server named by the portfile and return its record."""
    portfiles = portfiles or PortfileStore(config.server.portfile)
    prober = prober or default_prober()

    record = portfiles.read()
    if record is None or not prober.is_alive(record.pid):
        portfiles.discard(record)
        raise ServerNotRunningError()

    logger.info("Stopping server (pid=%d)", record.pid)
    try:
        os.kill(record.pid, signal.SIGTERM)
    except ProcessLookupError:
        pass

    if not await _wait_for_exit(record.pid, prober, timeout):
        sigkill = getattr(signal, "SIGKILL", None)
        if sigkill is not None:
            logger.warning("Server (pid=%d) ignored SIGTERM, sending SIGKILL", record.pid)
            try:
                os.kill(record.pid, sigkill)
            except ProcessLookupError:
                pass
            await _wait_for_exit(record.pid, prober, timeout)

    current = portfiles.read()
    if current is None or current.pid == record.pid:
        portfiles.discard(current)
    return record


def server_status(
    config: RefmanConfig,
    *,
    portfiles: PortfileStore | None = None,
    prober: LivenessProber | None = None,
) -> ServerStatus:
    """Report the server named by the portfile; never modifies it."""
    portfiles = portfiles or PortfileStore(config.server.portfile)
    prober = prober or default_prober()

    record = portfiles.read()
    if record is None or not prober.is_alive(record.pid):
        return ServerStatus(running=False)
    return ServerStatus(
        running=True,
        port=record.port,
        pid=record.pid,
        library=record.library,
        started_at=record.started_at,
    )
