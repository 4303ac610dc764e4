"""archive.py.

Unpacks downloaded artifacts that arrive as compressed tarballs.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
from enum import Enum
from pathlib import Path
from typing import Optional

from nixmodule.errors import CacheError, UnsupportedArchiveError

logger = logging.getLogger(__name__)


class ArchiveType(Enum):
    """Archive formats recognized by extension."""

    TAR_GZ = "gz"
    TAR_XZ = "xz"
    TAR_BZ2 = "bz2"


class ArchiveUnpacker:
    """Detect and extract archive artifacts."""

    @staticmethod
    def archive_type(path: Path) -> Optional[ArchiveType]:
        """Return the archive type implied by the file extension, if any."""
        suffix = Path(path).suffix.lstrip(".")
        for archive_type in ArchiveType:
            if archive_type.value == suffix:
                return archive_type
        return None

    @classmethod
    def unpack(cls, archive: Path, outdir: Path) -> None:
        """Extract an archive into a new directory.

        Args:
            archive: Downloaded archive file.
            outdir: Directory to create and extract into.

        Raises:
            UnsupportedArchiveError: If the format is recognized but not
                supported. Nothing is created in that case.
            CacheError: If extraction fails. The partial directory is removed.

        """
        archive_type = cls.archive_type(archive)
        if archive_type is None:
            raise CacheError(f"{archive} is not a recognized archive")
        if archive_type is not ArchiveType.TAR_GZ:
            raise UnsupportedArchiveError(
                f"Cannot unpack {archive}: .{archive_type.value} archives are not supported"
            )

        logger.info("Unpacking %s", archive)
        outdir = Path(outdir)
        try:
            with tarfile.open(archive, "r:gz") as tar:
                outdir.mkdir(parents=True, exist_ok=True)
                tar.extractall(outdir, filter="data")
        except (OSError, tarfile.TarError) as e:
            shutil.rmtree(outdir, ignore_errors=True)
            raise CacheError(f"Failed to unpack {archive}: {e}") from e
