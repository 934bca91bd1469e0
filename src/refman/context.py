"""Per-command choice between a running server and direct file access."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Union

from refman.client import ServerClient
from refman.config import RefmanConfig
from refman.core.interface import LibraryOperations
from refman.errors import RefmanError
from refman.server.daemon import ensure_not_running, spawn_detached, wait_for_portfile
from refman.server.detection import ServerDetector
from refman.server.liveness import LivenessProber, default_prober
from refman.server.portfile import PortfileStore

logger = logging.getLogger(__name__)

LoadLibrary = Callable[[Path], LibraryOperations]


@dataclass(frozen=True)
class LocalContext:
    library: LibraryOperations
    mode: Literal["local"] = field(default="local", init=False)


@dataclass(frozen=True)
class ServerContext:
    library: LibraryOperations
    mode: Literal["server"] = field(default="server", init=False)


ExecutionContext = Union[LocalContext, ServerContext]


def describe(context: ExecutionContext) -> str:
    match context:
        case ServerContext(library=ServerClient() as client):
            return f"server at {client.base_url}"
        case ServerContext():
            return "server"
        case LocalContext():
            return "local"
        case _:
            raise TypeError(f"Unknown execution context: {context!r}")


def get_library(context: ExecutionContext) -> LibraryOperations:
    match context:
        case LocalContext(library=library) | ServerContext(library=library):
            return library
        case _:
            raise TypeError(f"Unknown execution context: {context!r}")


async def _auto_start(
    config: RefmanConfig,
    portfiles: PortfileStore,
    prober: LivenessProber,
    config_path: Path | None = None,
) -> None:
    logger.info("No server for %s, starting one", config.library)
    try:
        ensure_not_running(portfiles, prober)
        proc = spawn_detached(config, config_path=config_path)
        await wait_for_portfile(portfiles, proc)
    except (OSError, RefmanError) as e:
        # Another invocation may have won the race; detection decides below
        logger.warning("Auto-start failed: %s", e)


async def create_execution_context(
    config: RefmanConfig,
    load_library: LoadLibrary,
    *,
    detector: ServerDetector | None = None,
    config_path: Path | None = None,
) -> ExecutionContext:
    """Return a server-backed context if a live server owns ``config.library``.

    ``load_library`` is only called when no server is used. ``config_path``
    is handed to an auto-started server so it loads the same settings.
    """
    portfiles = PortfileStore(config.server.portfile)
    detector = detector or ServerDetector(portfiles, default_prober())

    connection = detector.detect(config.library)
    if connection is None and config.server.auto_start:
        await _auto_start(config, detector.portfiles, detector.prober, config_path)
        connection = detector.detect(config.library)

    if connection is not None:
        logger.debug("Using server pid=%d at %s", connection.pid, connection.base_url)
        client = ServerClient(connection.base_url, timeout=config.server.request_timeout)
        return ServerContext(client)

    return LocalContext(load_library(config.library))
