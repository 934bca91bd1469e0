"""Background server process: run loop, portfile, signals and idle shutdown.

Usage: python -m refman server start --foreground

Manages:
- Library load and the HTTP listener on 127.0.0.1
- Portfile (announce port/pid, refuse duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT or idle timeout)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path

from aiohttp import web

from refman.config import RefmanConfig
from refman.core.library import Library
from refman.core.reference import now_iso
from refman.errors import PersistenceError, ServerAlreadyRunningError, ServerStartError
from refman.server.app import LibraryServer
from refman.server.detection import normalize_library_path
from refman.server.liveness import LivenessProber, default_prober
from refman.server.portfile import Portfile, PortfileStore

logger = logging.getLogger(__name__)

LOG_FILENAME = "server.log"


def ensure_not_running(portfiles: PortfileStore, prober: LivenessProber) -> None:
    """Refuse to start while the portfile names a live process, whatever library it serves."""
    record = portfiles.read()
    if record is not None and prober.is_alive(record.pid):
        raise ServerAlreadyRunningError(record.pid, record.library)


class ServerDaemon:
    """One background server bound to one library file."""

    def __init__(
        self,
        config: RefmanConfig,
        *,
        port: int | None = None,
        portfiles: PortfileStore | None = None,
        prober: LivenessProber | None = None,
        idle_timeout: float | None = None,
    ) -> None:
        self.config = config
        self.port = config.server.port if port is None else port
        self.portfiles = portfiles or PortfileStore(config.server.portfile)
        self.prober = prober or default_prober()
        if idle_timeout is None and config.server.auto_stop_minutes > 0:
            idle_timeout = config.server.auto_stop_minutes * 60.0
        self.idle_timeout = idle_timeout
        self.server: LibraryServer | None = None
        self.record: Portfile | None = None
        self._shutdown_event = asyncio.Event()
        self._signals: list[signal.Signals] = []

    def shutdown(self) -> None:
        self._shutdown_event.set()

    # ── Portfile ─────────────────────────────────────────────

    def _claim_portfile(self, port: int) -> None:
        """Announce this server, failing if another live server already holds the portfile."""
        record = Portfile(
            port=port,
            pid=os.getpid(),
            library=normalize_library_path(self.config.library),
            started_at=now_iso(),
        )
        for _ in range(2):
            if self.portfiles.claim(record):
                self.record = record
                logger.info("Portfile written: %s (pid=%d, port=%d)", self.portfiles.path, record.pid, port)
                return
            current = self.portfiles.read()
            if current is not None and self.prober.is_alive(current.pid):
                raise ServerAlreadyRunningError(current.pid, current.library)
            logger.info("Replacing stale portfile %s", self.portfiles.path)
            self.portfiles.discard(current)
        raise ServerStartError(f"Could not claim portfile {self.portfiles.path}")

    def _remove_portfile(self) -> None:
        # A newer server may have replaced it since we started
        if self.record is not None and self.portfiles.read() == self.record:
            self.portfiles.remove()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handler for %s not supported here", sig.name)
                continue
            self._signals.append(sig)

    def _teardown_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Idle watcher ─────────────────────────────────────────

    async def _watch_idle(self, timeout: float) -> None:
        interval = max(0.05, min(timeout / 4, 30.0))
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            server = self.server
            if server is None or server.in_flight:
                continue
            if time.monotonic() - server.last_activity >= timeout:
                logger.info("Idle for %.0fs, shutting down", timeout)
                self._shutdown_event.set()

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        ensure_not_running(self.portfiles, self.prober)

        library = Library.load(self.config.library)
        self.server = LibraryServer(library, self.config.citation)

        runner = web.AppRunner(self.server.app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", self.port)
        watcher: asyncio.Task | None = None
        try:
            await site.start()
            port = runner.addresses[0][1]
            self._claim_portfile(port)
            self._setup_signals()
            if self.idle_timeout:
                watcher = asyncio.create_task(self._watch_idle(self.idle_timeout))

            logger.info(
                "refman server listening on 127.0.0.1:%d (library=%s, %d references)",
                port,
                library.path,
                len(library),
            )
            await self._shutdown_event.wait()
        finally:
            if watcher is not None:
                watcher.cancel()
            self._teardown_signals()
            # Stops the listener and waits for in-flight handlers
            await runner.cleanup()
            if library.dirty:
                try:
                    library.save()
                except PersistenceError as e:
                    logger.error("Final save failed: %s", e)
            self._remove_portfile()
            logger.info("refman server stopped.")


# ── Detached launch ──────────────────────────────────────────


def server_command(config: RefmanConfig, port: int | None = None, config_path: Path | None = None) -> list[str]:
    cmd = [sys.executable, "-m", "refman", "--library", str(config.library)]
    if config_path is not None:
        cmd += ["--config", str(config_path)]
    cmd += ["server", "start", "--foreground"]
    if port:
        cmd += ["--port", str(port)]
    return cmd


def spawn_detached(
    config: RefmanConfig, port: int | None = None, config_path: Path | None = None
) -> subprocess.Popen:
    """Start a server process that outlives this one; its output goes to server.log."""
    portfile = Path(config.server.portfile)
    portfile.parent.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, "REFMAN_PORTFILE": str(portfile)}

    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    with open(portfile.parent / LOG_FILENAME, "ab") as log:
        proc = subprocess.Popen(
            server_command(config, port, config_path),
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            env=env,
            **kwargs,
        )
    logger.info("Spawned background server (pid=%d)", proc.pid)
    return proc


async def wait_for_portfile(
    portfiles: PortfileStore,
    proc: subprocess.Popen,
    timeout: float = 5.0,
    interval: float = 0.05,
) -> Portfile:
    """Wait until the portfile names ``proc``; fail if it exits or time runs out."""
    deadline = time.monotonic() + timeout
    while True:
        record = portfiles.read()
        if record is not None and record.pid == proc.pid:
            return record
        code = proc.poll()
        if code is not None:
            raise ServerStartError(
                f"Server process exited with code {code}; see {portfiles.path.parent / LOG_FILENAME}"
            )
        if time.monotonic() >= deadline:
            raise ServerStartError(f"Server did not become ready within {timeout:.0f}s")
        await asyncio.sleep(interval)
