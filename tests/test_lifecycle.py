"""Tests for server start/stop/status and the daemon run loop."""

import asyncio
import json
import os
import signal
import subprocess
import sys
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch

import aiohttp

from refman.client import ServerClient
from refman.config import RefmanConfig, ServerConfig
from refman.core.interface import SearchOptions
from refman.errors import ServerAlreadyRunningError, ServerNotRunningError, ServerStartError
from refman.server.daemon import ServerDaemon, server_command, spawn_detached, wait_for_portfile
from refman.server.detection import normalize_library_path
from refman.server.lifecycle import server_start, server_status, server_stop
from refman.server.liveness import PosixProber
from refman.server.portfile import Portfile, PortfileStore

from conftest import make_item

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class PopenProber(PosixProber):
    """Reaps our own child so an exited process does not linger as a zombie."""

    def __init__(self, proc: subprocess.Popen):
        self.proc = proc

    def is_alive(self, pid: int) -> bool:
        if pid == self.proc.pid:
            return self.proc.poll() is None
        return super().is_alive(pid)


@pytest.fixture
def config(tmp_path: Path, library_path: Path) -> RefmanConfig:
    return RefmanConfig(
        library=library_path,
        server=ServerConfig(portfile=tmp_path / "run" / "server.port"),
    )


@pytest.fixture
def portfiles(config: RefmanConfig) -> PortfileStore:
    return PortfileStore(config.server.portfile)


async def _wait_for_record(portfiles: PortfileStore, timeout: float = 5.0) -> Portfile:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        record = portfiles.read()
        if record is not None:
            return record
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("portfile never appeared")
        await asyncio.sleep(0.02)


class TestStatus:
    def test_not_running_without_portfile(self, config: RefmanConfig):
        assert server_status(config).running is False
        assert server_status(config).to_dict() == {"running": False}

    def test_dead_pid_reports_not_running_and_keeps_file(self, config, portfiles):
        portfiles.write(Portfile(port=1, pid=999999, library="/x"))
        assert server_status(config).running is False
        assert portfiles.exists()

    def test_running(self, config, portfiles):
        portfiles.write(Portfile(port=4000, pid=os.getpid(), library="/x", started_at="2024-01-01T00:00:00.000Z"))
        status = server_status(config)
        assert status.running
        assert (status.port, status.pid, status.library) == (4000, os.getpid(), "/x")
        assert status.started_at == "2024-01-01T00:00:00.000Z"


class TestStart:
    @pytest.mark.asyncio
    async def test_refuses_when_live_server_recorded(self, config, portfiles):
        portfiles.write(Portfile(port=4000, pid=os.getpid(), library="/some/other.json"))
        with pytest.raises(ServerAlreadyRunningError) as exc:
            await server_start(config)
        assert exc.value.pid == os.getpid()

    @pytest.mark.asyncio
    async def test_daemon_mode_waits_for_child(self, config, portfiles):
        proc = MagicMock(pid=4242)
        with patch("refman.server.lifecycle.spawn_detached", return_value=proc) as spawn, patch(
            "refman.server.lifecycle.wait_for_portfile",
            return_value=Portfile(port=1, pid=4242, library="/x"),
        ) as wait:
            record = await server_start(config, daemon=True, port=9000)
        assert record.pid == 4242
        spawn.assert_called_once()
        assert spawn.call_args.kwargs["port"] == 9000
        wait.assert_awaited_once()


class TestStop:
    @pytest.mark.asyncio
    async def test_not_running(self, config):
        with pytest.raises(ServerNotRunningError):
            await server_stop(config)

    @pytest.mark.asyncio
    async def test_dead_pid_removes_portfile(self, config, portfiles):
        portfiles.write(Portfile(port=1, pid=999999, library="/x"))
        with pytest.raises(ServerNotRunningError):
            await server_stop(config)
        assert not portfiles.exists()

    @posix_only
    @pytest.mark.asyncio
    async def test_terminates_process(self, config, portfiles):
        proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
        try:
            portfiles.write(Portfile(port=1, pid=proc.pid, library="/x"))
            record = await server_stop(config, prober=PopenProber(proc))
            assert record.pid == proc.pid
            assert proc.poll() == -signal.SIGTERM
            assert not portfiles.exists()
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

    @posix_only
    @pytest.mark.asyncio
    async def test_escalates_to_sigkill(self, config, portfiles):
        script = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        proc = subprocess.Popen([sys.executable, "-c", script], stdout=subprocess.PIPE, text=True)
        try:
            assert proc.stdout.readline().strip() == "ready"
            portfiles.write(Portfile(port=1, pid=proc.pid, library="/x"))
            await server_stop(config, prober=PopenProber(proc), timeout=0.5)
            assert proc.poll() == -signal.SIGKILL
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            proc.stdout.close()


class TestServerDaemon:
    @pytest.mark.asyncio
    async def test_serves_until_shutdown(self, config, portfiles, library_path: Path):
        daemon = ServerDaemon(config, port=0)
        task = asyncio.create_task(daemon.run())
        try:
            record = await _wait_for_record(portfiles)
            assert record.pid == os.getpid()
            assert record.library == normalize_library_path(library_path)
            assert record.started_at

            async with aiohttp.ClientSession() as session:
                async with session.get(f"http://127.0.0.1:{record.port}/health") as resp:
                    assert (await resp.json())["status"] == "ok"

            client = ServerClient(f"http://127.0.0.1:{record.port}")
            try:
                await client.add(make_item("d-1", "D", 2001, "Via daemon"))
            finally:
                await client.aclose()
        finally:
            daemon.shutdown()
            await asyncio.wait_for(task, timeout=10)

        assert not portfiles.exists()
        assert "d-1" in [i["id"] for i in json.loads(library_path.read_text())]

    @pytest.mark.asyncio
    async def test_idle_shutdown(self, config, portfiles):
        daemon = ServerDaemon(config, port=0, idle_timeout=0.2)
        await asyncio.wait_for(daemon.run(), timeout=10)
        assert not portfiles.exists()

    def test_idle_timeout_from_config(self, config):
        config.server.auto_stop_minutes = 2
        assert ServerDaemon(config).idle_timeout == 120.0
        config.server.auto_stop_minutes = 0
        assert ServerDaemon(config).idle_timeout is None

    @pytest.mark.asyncio
    async def test_refuses_second_instance(self, config, portfiles):
        portfiles.write(Portfile(port=1, pid=os.getpid(), library="/x"))
        with pytest.raises(ServerAlreadyRunningError):
            await ServerDaemon(config).run()

    @pytest.mark.asyncio
    async def test_keeps_portfile_of_newer_server(self, config, portfiles):
        daemon = ServerDaemon(config, port=0)
        task = asyncio.create_task(daemon.run())
        try:
            await _wait_for_record(portfiles)
            portfiles.write(Portfile(port=2, pid=os.getpid() + 1, library="/x"))
        finally:
            daemon.shutdown()
            await asyncio.wait_for(task, timeout=10)
        assert portfiles.read().pid == os.getpid() + 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_leave_one_server(self, config, portfiles, monkeypatch):
        # Skip the early check so every instance races for the portfile
        monkeypatch.setattr("refman.server.daemon.ensure_not_running", lambda portfiles, prober: None)
        daemons = [ServerDaemon(config, port=0) for _ in range(3)]
        tasks = [asyncio.create_task(d.run()) for d in daemons]
        try:
            record = await _wait_for_record(portfiles)
            for _ in range(250):
                if sum(t.done() for t in tasks) >= 2:
                    break
                await asyncio.sleep(0.02)

            running = [d for d, t in zip(daemons, tasks) if not t.done()]
            losers = [t for t in tasks if t.done()]
            assert len(running) == 1
            assert running[0].record == record
            assert all(isinstance(t.exception(), ServerAlreadyRunningError) for t in losers)
            assert portfiles.read() == record
        finally:
            for d in daemons:
                d.shutdown()
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=10)
        assert not portfiles.exists()

    @pytest.mark.asyncio
    async def test_replaces_stale_portfile(self, config, portfiles):
        portfiles.write(Portfile(port=1, pid=999999, library="/x"))
        daemon = ServerDaemon(config, port=0)
        task = asyncio.create_task(daemon.run())
        try:
            for _ in range(250):
                if daemon.record is not None:
                    break
                await asyncio.sleep(0.02)
            assert portfiles.read() == daemon.record
            assert daemon.record.pid == os.getpid()
        finally:
            daemon.shutdown()
            await asyncio.wait_for(task, timeout=10)
        assert not portfiles.exists()

    @pytest.mark.asyncio
    async def test_idle_timer_waits_for_slow_request(self, config, portfiles, monkeypatch):
        daemon = ServerDaemon(config, port=0, idle_timeout=0.3)
        task = asyncio.create_task(daemon.run())
        try:
            record = await _wait_for_record(portfiles)
            library = daemon.server.library
            search = library.search

            async def slow_search(options):
                await asyncio.sleep(1.0)
                return await search(options)

            monkeypatch.setattr(library, "search", slow_search)
            client = ServerClient(f"http://127.0.0.1:{record.port}", timeout=5.0)
            try:
                page = await client.search(SearchOptions(query="deep"))
            finally:
                await client.aclose()

            assert [i["id"] for i in page.items] == ["smith-2020"]
            assert not task.done()
            assert portfiles.read() == record

            # Idle again once the request is answered
            await asyncio.wait_for(asyncio.shield(task), timeout=10)
        finally:
            daemon.shutdown()
            await asyncio.wait_for(task, timeout=10)
        assert not portfiles.exists()

    @pytest.mark.asyncio
    async def test_requests_reset_idle_timer(self, config, portfiles):
        daemon = ServerDaemon(config, port=0, idle_timeout=0.5)
        task = asyncio.create_task(daemon.run())
        try:
            record = await _wait_for_record(portfiles)
            client = ServerClient(f"http://127.0.0.1:{record.port}", timeout=5.0)
            try:
                for _ in range(5):
                    await asyncio.sleep(0.2)
                    assert not task.done()
                    await client.get_all()
            finally:
                await client.aclose()
            assert portfiles.read() == record
        finally:
            daemon.shutdown()
            await asyncio.wait_for(task, timeout=10)


class TestDetachedLaunch:
    def test_server_command(self, config):
        cmd = server_command(config, port=9000, config_path=Path("/etc/refman.toml"))
        assert cmd[:3] == [sys.executable, "-m", "refman"]
        assert cmd[cmd.index("--library") + 1] == str(config.library)
        assert cmd[cmd.index("--config") + 1] == "/etc/refman.toml"
        assert cmd[-5:] == ["server", "start", "--foreground", "--port", "9000"]

    def test_spawn_detached(self, config):
        with patch("refman.server.daemon.subprocess.Popen") as popen:
            popen.return_value = MagicMock(pid=77)
            proc = spawn_detached(config)
        assert proc.pid == 77
        kwargs = popen.call_args.kwargs
        assert kwargs["env"]["REFMAN_PORTFILE"] == str(config.server.portfile)
        assert kwargs["stdin"] == subprocess.DEVNULL
        if sys.platform == "win32":
            assert kwargs["creationflags"]
        else:
            assert kwargs["start_new_session"] is True
        assert (config.server.portfile.parent / "server.log").exists()

    @pytest.mark.asyncio
    async def test_wait_for_portfile_success(self, portfiles):
        proc = MagicMock(pid=55)
        proc.poll.return_value = None
        portfiles.write(Portfile(port=3, pid=55, library="/x"))
        record = await wait_for_portfile(portfiles, proc, timeout=1)
        assert record.port == 3

    @pytest.mark.asyncio
    async def test_wait_for_portfile_child_exit(self, portfiles):
        proc = MagicMock(pid=55)
        proc.poll.return_value = 1
        with pytest.raises(ServerStartError):
            await wait_for_portfile(portfiles, proc, timeout=1)

    @pytest.mark.asyncio
    async def test_wait_for_portfile_ignores_other_pid(self, portfiles):
        proc = MagicMock(pid=55)
        proc.poll.return_value = None
        portfiles.write(Portfile(port=3, pid=56, library="/x"))
        with pytest.raises(ServerStartError):
            await wait_for_portfile(portfiles, proc, timeout=0.1, interval=0.02)
