"""ssh.py.

Detects the host OpenSSH client version.

OpenSSH 9.0 switched scp from the legacy scp/rcp protocol to SFTP. The
guests we boot may run older servers, so newer clients have to be told to
use the legacy protocol with ``-O``, and older clients reject that flag.
"""

from __future__ import annotations

import re
import subprocess
from typing import List, Tuple

from nixmodule.errors import SshError

VERSION_PATTERN = re.compile(r"OpenSSH_(\d+)\.(\d+)")

# Last client release that still speaks the legacy scp protocol by default
LAST_LEGACY_VERSION = (8, 9)


class SshVersion:
    """Host ssh client version."""

    def __init__(self, major: int, minor: int):
        """Initialize from a parsed version number."""
        self.major = major
        self.minor = minor

    @property
    def version(self) -> Tuple[int, int]:
        """Version as a comparable tuple."""
        return (self.major, self.minor)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"

    @classmethod
    def parse(cls, output: str) -> "SshVersion":
        """Parse ``ssh -V`` output.

        Raises:
            SshError: If no OpenSSH version is present.

        """
        match = VERSION_PATTERN.search(output)
        if not match:
            raise SshError(f"Unable to parse ssh version from {output.strip()!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    @classmethod
    def query(cls) -> "SshVersion":
        """Query the local ssh client.

        Raises:
            SshError: If ssh cannot be run or its version cannot be parsed.

        """
        try:
            result = subprocess.run(
                ["ssh", "-V"],
                capture_output=True,
                text=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SshError(f"Failed to query ssh version: {e}") from e

        # ssh prints its version on stderr
        return cls.parse(result.stderr + result.stdout)

    def is_legacy(self) -> bool:
        """True for clients at or below OpenSSH 8.9."""
        return self.version <= LAST_LEGACY_VERSION

    def scp_protocol_args(self) -> List[str]:
        """Extra scp arguments needed to talk to older guest servers."""
        return [] if self.is_legacy() else ["-O"]
