"""builder.py.

Builds the module under test against cached kernel headers with make.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, Iterable, Optional

from nixmodule.config import KernelConfig
from nixmodule.errors import BuildError, ConfigError

logger = logging.getLogger(__name__)


def parse_build_defines(defines: Optional[Iterable[str]]) -> Dict[str, str]:
    """Parse ``NAME=VALUE`` strings into environment overrides.

    Raises:
        ConfigError: If an entry does not contain exactly one ``=`` or has
            an empty name.

    """
    overrides = {}
    for define in defines or []:
        if define.count("=") != 1:
            raise ConfigError(f"Build define {define!r} must have the form NAME=VALUE")
        name, value = define.split("=", 1)
        if not name:
            raise ConfigError(f"Build define {define!r} has an empty name")
        overrides[name] = value
    return overrides


class ModuleBuilder:
    """Runs the module's Makefile for one kernel."""

    def __init__(self, build_dir: Optional[Path] = None, make: str = "make"):
        """Initialize the builder.

        Args:
            build_dir: Module source tree. Defaults to the current directory.
            make: Build tool executable.

        """
        self.build_dir = Path(build_dir) if build_dir is not None else Path.cwd()
        self.make = make

    def target_name(self, name: str, kernel: KernelConfig) -> str:
        """Make target for a module built against a given kernel."""
        return f"{name}-{kernel.version}"

    def build(
        self,
        name: str,
        build_defines: Optional[Iterable[str]],
        kernel: KernelConfig,
    ) -> Path:
        """Compile the module against the kernel's headers.

        Args:
            name: Module name.
            build_defines: ``NAME=VALUE`` overrides exported to make.
            kernel: Kernel whose headers were resolved by the cache.

        Returns:
            Expected path of the built ``.ko``. Its existence is not checked.

        Raises:
            ConfigError: If a build define is malformed.
            BuildError: If make cannot be run or exits non-zero.

        """
        env = os.environ.copy()
        env.update(parse_build_defines(build_defines))
        target = self.target_name(name, kernel)

        cmd = [self.make, f"KERNEL={kernel.headers}", f"TARGET={target}"]
        logger.debug("Running %s in %s", " ".join(cmd), self.build_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.build_dir,
                env=env,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise BuildError(f"Failed to run {self.make}: {e}") from e

        if result.returncode != 0:
            if result.stdout:
                logger.info("Build output:\n%s", result.stdout)
            if result.stderr:
                logger.error("Build errors:\n%s", result.stderr)
            raise BuildError(
                f"Build of {target} failed with exit code {result.returncode}",
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return self.build_dir / f"{target}.ko"
