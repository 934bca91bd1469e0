"""Configuration loading from environment variables and refman TOML files."""

from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".refman"
_DEFAULT_LIBRARY = _DEFAULT_HOME / "library.json"
_CONFIG_FILENAME = ".refman.toml"
_USER_CONFIG = _DEFAULT_HOME / "config.toml"


def default_portfile_path() -> Path:
    """Fixed portfile location shared by every library (one server per user)."""
    return Path(tempfile.gettempdir()) / "refman" / "server.port"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    """Background server configuration."""

    auto_start: bool = False
    auto_stop_minutes: int = 0
    port: int = 0
    portfile: Path = field(default_factory=default_portfile_path)
    request_timeout: float = 10.0


@dataclass
class CitationConfig:
    """Citation defaults."""

    default_style: str = "apa"
    default_locale: str = "en-US"
    default_format: str = "text"


@dataclass
class RefmanConfig:
    """Top-level refman configuration."""

    library: Path = _DEFAULT_LIBRARY
    log_level: str = "INFO"
    server: ServerConfig = field(default_factory=ServerConfig)
    citation: CitationConfig = field(default_factory=CitationConfig)


def load_config(config_path: Path | None = None) -> RefmanConfig:
    """Load configuration from environment variables and an optional TOML file.

    Priority: environment variables > TOML file > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.refman/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _USER_CONFIG]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    server_data = file_data.get("server", {})
    citation_data = file_data.get("citation", {})

    portfile = os.getenv("REFMAN_PORTFILE", server_data.get("portfile"))

    config = RefmanConfig(
        library=Path(
            os.getenv("REFMAN_LIBRARY", file_data.get("library", str(_DEFAULT_LIBRARY)))
        ).expanduser(),
        log_level=os.getenv("REFMAN_LOG_LEVEL", file_data.get("log_level", "INFO")),
        server=ServerConfig(
            auto_start=_env_bool(
                "REFMAN_SERVER_AUTO_START", bool(server_data.get("auto_start", False))
            ),
            auto_stop_minutes=int(
                os.getenv(
                    "REFMAN_SERVER_AUTO_STOP_MINUTES", server_data.get("auto_stop_minutes", 0)
                )
            ),
            port=int(os.getenv("REFMAN_SERVER_PORT", server_data.get("port", 0))),
            portfile=Path(portfile).expanduser() if portfile else default_portfile_path(),
            request_timeout=float(server_data.get("request_timeout", 10.0)),
        ),
        citation=CitationConfig(
            default_style=citation_data.get("default_style", "apa"),
            default_locale=citation_data.get("default_locale", "en-US"),
            default_format=citation_data.get("default_format", "text"),
        ),
    )
    return config
