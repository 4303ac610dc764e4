"""cache.py.

Local cache of kernel boot artifacts.

Layout under the cache root::

    downloads/<file>             raw downloads
    cache/<version>/headers      unpacked kernel headers
    cache/<version>/<kernel>     kernel image
    cache/images/<file>          disk images, initrds and SSH keys
"""

from __future__ import annotations

import http.client
import logging
import os
import shutil
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path

from nixmodule.archive import ArchiveUnpacker
from nixmodule.config import KernelConfig
from nixmodule.errors import BadFilePathError, CacheError

logger = logging.getLogger(__name__)

# Download name used when a URL has no final path segment
PLACEHOLDER_NAME = "tmp.bin"


def download_name(url: str) -> str:
    """Derive a local file name from the last path segment of a URL.

    Raises:
        CacheError: If the URL is malformed.

    """
    parts = urllib.parse.urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise CacheError(f"Malformed URL: {url}")
    name = parts.path.rsplit("/", 1)[-1]
    return name or PLACEHOLDER_NAME


def _join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _file_name(path: str) -> str:
    name = path.rsplit("/", 1)[-1]
    if name in ("", ".", ".."):
        raise BadFilePathError(f"No file name in {path!r}")
    return name


class ArtifactCache:
    """Download-on-miss cache of kernel, header, disk and key artifacts."""

    def __init__(self, root: Path):
        """Initialize the cache, creating its directories.

        Args:
            root: Cache root directory.

        """
        self.root = Path(root)
        self.downloads_dir = self.root / "downloads"
        self.images_dir = self.root / "cache" / "images"
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        self.images_dir.mkdir(parents=True, exist_ok=True)

    def version_dir(self, version: str) -> Path:
        """Directory holding artifacts specific to one kernel version."""
        return self.root / "cache" / version

    def resolve(self, kernel: KernelConfig) -> None:
        """Make every artifact of a kernel available locally.

        Rewrites ``kernel`` in place so that its header, kernel, disk,
        initrd and key paths point into the cache. Calling this again on
        the rewritten record is a no-op.

        Raises:
            CacheError: On download, unpack or filesystem errors.
            BadFilePathError: If an artifact path has no file name.

        """
        logger.info("Checking artifacts for Linux kernel %s", kernel.version)
        version_dir = self.version_dir(kernel.version)
        disk = kernel.disk

        headers = self.fetch(_join_url(kernel.url_base, kernel.headers), version_dir / "headers")
        image = self.fetch(
            _join_url(kernel.url_base, kernel.kernel),
            version_dir / _file_name(kernel.kernel),
        )
        disk_path = self.fetch(
            _join_url(disk.url_base, disk.path),
            self.images_dir / _file_name(disk.path),
        )
        initrd = None
        if disk.initrd:
            initrd = self.fetch(
                _join_url(disk.url_base, disk.initrd),
                self.images_dir / _file_name(disk.initrd),
            )
        sshkey = self.fetch(
            _join_url(disk.url_base, disk.sshkey),
            self.images_dir / _file_name(disk.sshkey),
        )

        kernel.headers = str(headers)
        kernel.kernel = str(image)
        disk.path = str(disk_path)
        if initrd is not None:
            disk.initrd = str(initrd)
        disk.sshkey = str(sshkey)

    def fetch(self, url: str, resolved: Path) -> Path:
        """Download ``url`` if needed and resolve it to ``resolved``."""
        downloaded = self.download(url, resolved)
        self.check_local(downloaded, resolved)
        return resolved

    def download(self, url: str, resolved: Path) -> Path:
        """Download a URL into ``downloads/`` unless already present.

        The network is skipped when either the download or the resolved
        artifact already exists.

        Returns:
            Path of the (possibly pre-existing) download.

        Raises:
            CacheError: If the URL is malformed or the request fails.

        """
        target = self.downloads_dir / download_name(url)
        if resolved.exists() or target.exists():
            return target

        logger.info("Downloading %s", url)
        partial = target.with_name(target.name + ".part")
        try:
            with urllib.request.urlopen(url) as response:  # noqa: S310
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise CacheError(f"{url} not found (HTTP {status})")
                with open(partial, "wb") as out_file:
                    shutil.copyfileobj(response, out_file)
            os.replace(partial, target)
        except urllib.error.HTTPError as e:
            raise CacheError(f"{url} not found (HTTP {e.code})") from e
        except urllib.error.URLError as e:
            raise CacheError(f"Failed to download {url}: {e.reason}") from e
        except (OSError, ValueError, http.client.HTTPException) as e:
            raise CacheError(f"Failed to download {url}: {e}") from e
        finally:
            partial.unlink(missing_ok=True)

        return target

    def check_local(self, downloaded: Path, resolved: Path) -> None:
        """Move or unpack a download into its resolved location.

        Archives are unpacked into ``resolved``. Anything else is renamed
        into place and made readable by the owner only, since keys travel
        through this path too.
        """
        if resolved.exists():
            return

        if ArchiveUnpacker.archive_type(downloaded) is not None:
            ArchiveUnpacker.unpack(downloaded, resolved)
            return

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            os.replace(downloaded, resolved)
            os.chmod(resolved, 0o600)
        except OSError as e:
            raise CacheError(f"Failed to move {downloaded} to {resolved}: {e}") from e
