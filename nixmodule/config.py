"""config.py.

Typed configuration records and the loader that builds them from a YAML
(or TOML) document.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from nixmodule.errors import ConfigError

# Seconds to wait for the guest SSH service when a kernel sets no timeout
DEFAULT_BOOT_TIMEOUT = 60


@dataclass(frozen=True)
class UploadFile:
    """A local file and where it goes inside the guest."""

    local: str
    remote: str


@dataclass
class DiskImage:
    """Root filesystem image and the credentials used to reach it."""

    url_base: str
    path: str
    sshkey: str
    boot: str
    initrd: Optional[str] = None


@dataclass
class KernelConfig:
    """One kernel to build against and boot.

    ``headers``, ``kernel`` and the ``disk`` paths start out relative to
    their URL base and are rewritten to local paths by the artifact cache.
    """

    version: str
    url_base: str
    headers: str
    kernel: str
    disk: DiskImage
    runner: str
    runner_extra_args: List[str] = field(default_factory=list)
    kvm: bool = True
    timeout: Optional[int] = None

    @property
    def boot_timeout(self) -> int:
        """Seconds to wait for the guest to become reachable."""
        return self.timeout if self.timeout is not None else DEFAULT_BOOT_TIMEOUT


@dataclass(frozen=True)
class ModuleSpec:
    """The module under test and the files its test needs."""

    name: str
    test_script: UploadFile
    insmod_args: str = ""
    build_defines: List[str] = field(default_factory=list)
    test_files: List[UploadFile] = field(default_factory=list)


@dataclass
class Config:
    """Complete run configuration."""

    cache: str
    module: ModuleSpec
    kernels: List[KernelConfig]
    results_dir: Optional[str] = None


def _require(section: Dict[str, Any], key: str, where: str) -> Any:
    if not isinstance(section, dict):
        raise ConfigError(f"{where} must be a table")
    if key not in section:
        raise ConfigError(f"Missing '{key}' in {where}")
    return section[key]


def _string_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where} must be a list of strings")
    return list(value)


def _upload_file(data: Dict[str, Any], where: str) -> UploadFile:
    return UploadFile(
        local=str(_require(data, "local", where)),
        remote=str(_require(data, "remote", where)),
    )


def parse_module(data: Dict[str, Any]) -> ModuleSpec:
    """Build a ModuleSpec from the ``module`` table."""
    name = str(_require(data, "name", "module"))
    test_files = data.get("test_files") or []
    if not isinstance(test_files, list):
        raise ConfigError("module.test_files must be a list")

    return ModuleSpec(
        name=name,
        test_script=_upload_file(_require(data, "test_script", "module"), "module.test_script"),
        insmod_args=str(data.get("insmod_args") or ""),
        build_defines=_string_list(data.get("build_defines"), "module.build_defines"),
        test_files=[
            _upload_file(entry, f"module.test_files[{i}]")
            for i, entry in enumerate(test_files)
        ],
    )


def parse_kernel(data: Dict[str, Any], index: int = 0) -> KernelConfig:
    """Build a KernelConfig from one entry of the ``kernels`` list."""
    where = f"kernels[{index}]"
    disk = _require(data, "disk", where)
    disk_where = f"{where}.disk"
    _require(disk, "path", disk_where)

    kvm = data.get("kvm", True)
    if not isinstance(kvm, bool):
        raise ConfigError(f"{where}.kvm must be a boolean")

    timeout = data.get("timeout")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, int)):
        raise ConfigError(f"{where}.timeout must be an integer")

    initrd = disk.get("initrd") if isinstance(disk, dict) else None

    return KernelConfig(
        version=str(_require(data, "version", where)),
        url_base=str(_require(data, "url_base", where)),
        headers=str(_require(data, "headers", where)),
        kernel=str(_require(data, "kernel", where)),
        disk=DiskImage(
            url_base=str(_require(disk, "url_base", disk_where)),
            path=str(_require(disk, "path", disk_where)),
            sshkey=str(_require(disk, "sshkey", disk_where)),
            boot=str(_require(disk, "boot", disk_where)),
            initrd=str(initrd) if initrd is not None else None,
        ),
        runner=str(_require(data, "runner", where)),
        runner_extra_args=_string_list(
            data.get("runner_extra_args"), f"{where}.runner_extra_args"
        ),
        kvm=kvm,
        timeout=timeout,
    )


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a Config from an already-decoded document."""
    kernels = _require(data, "kernels", "config")
    if not isinstance(kernels, list):
        raise ConfigError("kernels must be a list")

    results_dir = data.get("results_dir")
    return Config(
        cache=os.path.expanduser(str(_require(data, "cache", "config"))),
        module=parse_module(_require(data, "module", "config")),
        kernels=[parse_kernel(entry, i) for i, entry in enumerate(kernels)],
        results_dir=os.path.expanduser(str(results_dir)) if results_dir else None,
    )


def load_config(path: Path) -> Config:
    """Load and validate a configuration file.

    Args:
        path: YAML file, or TOML file if the suffix is ``.toml``.

    Returns:
        Parsed Config.

    Raises:
        ConfigError: If the file is missing, unparsable or incomplete.

    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config path {path} does not exist")

    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                data = tomllib.load(f)
        else:
            with open(path) as f:
                data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to read {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} does not contain a configuration table")

    return parse_config(data)
