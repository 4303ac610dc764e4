"""Pytest configuration and fixtures for nixmodule tests."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

import pytest

from nixmodule.config import DiskImage, KernelConfig, ModuleSpec, UploadFile
from nixmodule.errors import SshError


class FakeProcess:
    """Stand-in for the QEMU subprocess.Popen."""

    pid = 4242

    def __init__(self) -> None:
        self.returncode: Optional[int] = None
        self.terminate_calls = 0
        self.kill_calls = 0

    def poll(self) -> Optional[int]:
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        self.returncode = -15

    def kill(self) -> None:
        self.kill_calls += 1
        self.returncode = -9

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self.returncode


class FakeVM:
    """Records transfers and commands; fails any that mention ``fail_on``."""

    def __init__(self, fail_on: Optional[str] = None) -> None:
        self.fail_on = fail_on
        self.transfers: List[tuple] = []
        self.commands: List[str] = []
        self.stop_calls = 0
        self.interact_calls = 0

    def __enter__(self) -> "FakeVM":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _check(self, *parts: str) -> None:
        if self.fail_on and any(self.fail_on in part for part in parts):
            raise SshError(f"failed: {' '.join(parts)}", stderr="remote error")

    def transfer(self, local: str, remote: str) -> None:
        self.transfers.append((local, remote))
        self._check(local, remote)

    def runcmd(self, command: str) -> str:
        self.commands.append(command)
        self._check(command)
        return ""

    def interact(self) -> None:
        self.interact_calls += 1

    def stop(self) -> None:
        self.stop_calls += 1


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent.parent


@pytest.fixture
def package_dir(project_root: Path) -> Path:
    """Return the nixmodule package directory."""
    return project_root / "nixmodule"


@pytest.fixture
def make_kernel() -> Callable[..., KernelConfig]:
    """Factory for kernel configurations with remote artifact paths."""

    def _make(version: str = "5.10.1", **overrides) -> KernelConfig:
        disk = DiskImage(
            url_base="https://images.example.org/disks",
            path="bullseye.img",
            sshkey="bullseye.id_rsa",
            boot="/dev/sda",
        )
        values = dict(
            version=version,
            url_base=f"https://kernels.example.org/{version}",
            headers="linux-headers.tar.gz",
            kernel="bzImage",
            disk=disk,
            runner="qemu-system-x86_64",
        )
        values.update(overrides)
        return KernelConfig(**values)

    return _make


@pytest.fixture
def module_spec() -> ModuleSpec:
    """Module with a test script and one extra test file."""
    return ModuleSpec(
        name="example",
        test_script=UploadFile(local="tests/run.sh", remote="/root/run.sh"),
        insmod_args="debug=1",
        build_defines=["EXTRA=1"],
        test_files=[UploadFile(local="tests/data.bin", remote="/root/data.bin")],
    )


@pytest.fixture
def fake_process() -> FakeProcess:
    """A QEMU process that is still running."""
    return FakeProcess()


@pytest.fixture
def make_vm() -> Callable[..., FakeVM]:
    """Factory for fake running guests."""
    return FakeVM
