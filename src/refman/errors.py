"""Exception hierarchy shared by the command layer, the server and the client.

User-input conflicts and internal failures are kept apart so the CLI can map
them to different exit codes.
"""

from __future__ import annotations


class RefmanError(Exception):
    """Base class for all refman errors."""


# ── User-input conflicts ─────────────────────────────────────


class UserInputError(RefmanError):
    """The request conflicts with the current state or is malformed."""


class ServerAlreadyRunningError(UserInputError):
    def __init__(self, pid: int, library: str) -> None:
        super().__init__(f"Server is already running (pid={pid}, library={library})")
        self.pid = pid
        self.library = library


class ServerNotRunningError(UserInputError):
    def __init__(self) -> None:
        super().__init__("Server is not running")


class ReferenceNotFoundError(UserInputError):
    def __init__(self, identifier: str, by_uuid: bool = False) -> None:
        kind = "UUID" if by_uuid else "ID"
        super().__init__(f"Reference with {kind} '{identifier}' not found")
        self.identifier = identifier


class InvalidInputError(UserInputError):
    """Input could not be parsed or validated."""


# ── Internal failures ────────────────────────────────────────


class InternalError(RefmanError):
    """Something outside the user's control went wrong."""


class TransportError(InternalError):
    """The server could not be reached or did not answer in time."""


class ServerError(InternalError):
    """The server answered with a failure it could not classify."""

    def __init__(self, message: str, status: int | None = None, kind: str = "internal") -> None:
        super().__init__(message)
        self.status = status
        self.kind = kind


class PersistenceError(InternalError):
    """The library file could not be written."""


class ServerStartError(InternalError):
    """A background server did not come up."""
