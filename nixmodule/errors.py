"""errors.py.

Exception hierarchy and process exit codes for nixmodule.
"""

from __future__ import annotations

from enum import IntEnum


class ExitStatus(IntEnum):
    """Process exit codes.

    The first six members are ordered by pipeline progress so that the
    most advanced failure of a run compares greatest. The remaining codes
    are only ever returned when a run is aborted.
    """

    SUCCESS = 0
    QEMU_ERROR = 1
    TIMEOUT_ERROR = 2
    BUILD_ERROR = 3
    INSMOD_ERROR = 4
    TEST_ERROR = 5
    CACHE_ERROR = 6
    CONFIG_ERROR = 7
    SSH_ERROR = 8
    BAD_FILE_PATH = 9


def worst_status(current: ExitStatus, observed: ExitStatus) -> ExitStatus:
    """Return the more severe of two per-kernel exit statuses."""
    return max(current, observed)


class NixModuleError(Exception):
    """Base class for all nixmodule errors."""

    exit_status = ExitStatus.CONFIG_ERROR


class ConfigError(NixModuleError):
    """Raised for unreadable or invalid configuration."""

    exit_status = ExitStatus.CONFIG_ERROR


class BadFilePathError(NixModuleError):
    """Raised when a configured path has no usable file name."""

    exit_status = ExitStatus.BAD_FILE_PATH


class CacheError(NixModuleError):
    """Raised when an artifact cannot be downloaded or resolved."""

    exit_status = ExitStatus.CACHE_ERROR


class UnsupportedArchiveError(CacheError):
    """Raised for archive formats that are recognized but not unpacked."""


class BootTimeoutError(NixModuleError):
    """Raised when the guest SSH service is not ready before the deadline."""

    exit_status = ExitStatus.TIMEOUT_ERROR


class CommandError(NixModuleError):
    """A failed external command, with its captured output."""

    def __init__(self, message: str, stdout: str = "", stderr: str = ""):
        """Initialize with a message and the command's output streams."""
        super().__init__(message)
        self.stdout = stdout or ""
        self.stderr = stderr or ""


class QemuError(CommandError):
    """Raised when the virtualization process cannot be spawned or stopped."""

    exit_status = ExitStatus.QEMU_ERROR


class SshError(CommandError):
    """Raised for failed remote commands, transfers and sessions."""

    exit_status = ExitStatus.SSH_ERROR


class BuildError(CommandError):
    """Raised when the module build tool fails."""

    exit_status = ExitStatus.BUILD_ERROR
