"""Best-effort "is this pid alive?" checks, one prober per platform."""

from __future__ import annotations

import os
import sys
from typing import Protocol


class LivenessProber(Protocol):
    def is_alive(self, pid: int) -> bool: ...


class PosixProber:
    """Signal 0 probe. A pid we may not signal still exists."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except OSError:
            # EPERM and friends: the process is there, just not ours
            return True
        return True


class WindowsProber:
    """OpenProcess + GetExitCodeProcess via ctypes."""

    _PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    _STILL_ACTIVE = 259
    _ERROR_ACCESS_DENIED = 5

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        import ctypes
        from ctypes import wintypes

        kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
        handle = kernel32.OpenProcess(self._PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not handle:
            return ctypes.get_last_error() == self._ERROR_ACCESS_DENIED
        try:
            code = wintypes.DWORD()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(code)):
                return True
            return code.value == self._STILL_ACTIVE
        finally:
            kernel32.CloseHandle(handle)


def default_prober() -> LivenessProber:
    if sys.platform == "win32":
        return WindowsProber()
    return PosixProber()
