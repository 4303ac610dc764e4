#!/usr/bin/env python3
"""runner.py.

Main orchestrator: for every selected kernel, resolve its artifacts, boot
it, build, upload, load and test the module, then tear the guest down and
report.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Callable, List, NoReturn, Optional, Tuple

from nixmodule.builder import ModuleBuilder
from nixmodule.cache import ArtifactCache
from nixmodule.config import Config, KernelConfig, ModuleSpec, load_config
from nixmodule.errors import (
    BootTimeoutError,
    BuildError,
    ExitStatus,
    NixModuleError,
    QemuError,
    SshError,
    worst_status,
)
from nixmodule.qemu import QemuRunner
from nixmodule.results_formatter import KernelResult, ResultsFormatter
from nixmodule.ssh import SshVersion
from nixmodule.stages import (
    BuildFailure,
    DeployFailure,
    LoadFailure,
    Stage,
    StageOutcome,
    TestFailure,
)

logger = logging.getLogger(__name__)

# Where the built module is uploaded inside the guest
REMOTE_MODULE_DIR = "/tmp"

DEFAULT_CONFIG = "nixmodule-config.yaml"


def filter_kernels(kernels: List[KernelConfig], prefix: Optional[str]) -> List[KernelConfig]:
    """Select kernels whose version starts with ``prefix``.

    ``5`` selects every 5.x.y kernel while ``5.1`` selects only 5.1*.
    """
    if not prefix:
        return list(kernels)
    return [k for k in kernels if k.version.startswith(prefix)]


def run_stages(
    module: ModuleSpec,
    kernel: KernelConfig,
    vm: QemuRunner,
    builder: ModuleBuilder,
    debug: bool = False,
) -> StageOutcome:
    """Build, deploy, load and test the module in a running guest.

    Stops at the first failure. In debug mode the module and test files
    are uploaded but neither insmod nor the test script is run.

    Returns:
        How far the pipeline got, and the failure that stopped it.

    """
    outcome = StageOutcome()

    logger.info("Building module for %s", kernel.version)
    try:
        module_path = builder.build(module.name, module.build_defines, kernel)
    except BuildError as e:
        outcome.failure = BuildFailure(e)
        return outcome
    outcome.reached = Stage.BUILT
    logger.info("Build success for kernel %s", kernel.version)

    uploaded = f"{REMOTE_MODULE_DIR}/{module_path.name}"
    try:
        vm.transfer(str(module_path), uploaded)
    except SshError as e:
        outcome.failure = DeployFailure(e)
        return outcome
    outcome.reached = Stage.DEPLOYED

    if not debug:
        try:
            vm.runcmd(f"insmod {uploaded} {module.insmod_args}".rstrip())
        except SshError as e:
            outcome.failure = LoadFailure(e)
            return outcome
        logger.info("Insmod successful for %s", kernel.version)
    outcome.reached = Stage.LOADED

    try:
        vm.transfer(module.test_script.local, module.test_script.remote)
        for upload in module.test_files:
            vm.transfer(upload.local, upload.remote)
        if not debug:
            vm.runcmd(module.test_script.remote)
            logger.info("Test successful for %s", kernel.version)
    except SshError as e:
        outcome.failure = TestFailure(e)
        return outcome
    outcome.reached = Stage.TESTED

    return outcome


class PipelineRunner:
    """Runs the pipeline over a list of kernels."""

    def __init__(
        self,
        config: Config,
        ssh_version: SshVersion,
        debug: bool = False,
        cache: Optional[ArtifactCache] = None,
        builder: Optional[ModuleBuilder] = None,
        vm_factory: Optional[Callable[..., QemuRunner]] = None,
    ):
        """Initialize the runner.

        Args:
            config: Loaded configuration.
            ssh_version: Host ssh client version, selects scp flags.
            debug: Skip insmod and tests and open a shell in each guest.
            cache: Artifact cache. Defaults to one rooted at ``config.cache``.
            builder: Module builder. Defaults to building in the cwd.
            vm_factory: Callable booting a guest. Defaults to ``QemuRunner.start``.

        """
        self.config = config
        self.ssh_version = ssh_version
        self.debug = debug
        self.cache = cache or ArtifactCache(Path(config.cache))
        self.builder = builder or ModuleBuilder()
        self.vm_factory = vm_factory or QemuRunner.start
        self.results_formatter = ResultsFormatter(config.results_dir or "results")

    def run_kernel(self, kernel: KernelConfig) -> KernelResult:
        """Run the whole pipeline for one kernel.

        Raises:
            CacheError: If artifacts cannot be resolved.
            QemuError: If the guest cannot be stopped.

        """
        start_time = time.time()
        self.cache.resolve(kernel)

        try:
            vm = self.vm_factory(
                kernel,
                debug=self.debug,
                scp_args=self.ssh_version.scp_protocol_args(),
            )
        except (QemuError, BootTimeoutError) as e:
            logger.error("Kernel %s did not boot: %s", kernel.version, e)
            return KernelResult.from_boot_error(
                kernel.version, e, e.exit_status, time.time() - start_time
            )

        with vm:
            outcome = run_stages(self.config.module, kernel, vm, self.builder, self.debug)
            if outcome.failure:
                logger.error("Kernel %s: %s", kernel.version, outcome.failure)
            elif self.debug:
                try:
                    vm.interact()
                except SshError as e:
                    logger.error("Interactive session failed: %s", e)

        return KernelResult.from_outcome(kernel.version, outcome, time.time() - start_time)

    def run(self, kernels: List[KernelConfig]) -> Tuple[List[KernelResult], ExitStatus]:
        """Run every kernel in turn.

        Returns:
            The result rows and the most severe exit status among them.

        """
        status = ExitStatus.SUCCESS
        results = []
        for kernel in kernels:
            result = self.run_kernel(kernel)
            results.append(result)
            self.results_formatter.add_result(result)
            status = worst_status(status, result.exit_status)
        return results, status

    def save_results(self):
        """Write summary, JSON and failure logs to the results directory."""
        paths = self.results_formatter.save_all()
        logger.info("Results saved to %s", paths["summary"].parent)
        return paths

    def print_summary(self) -> None:
        """Print summary to stdout."""
        print(self.results_formatter.generate_summary_markdown())


def report(runner: PipelineRunner, debug: bool) -> None:
    """Print and save whatever results a run produced."""
    if not runner.results_formatter.results:
        return
    if not debug:
        runner.print_summary()
    if runner.config.results_dir:
        runner.save_results()


def main(argv: Optional[List[str]] = None) -> NoReturn:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="nixmodule",
        description="Build, load and test an out-of-tree kernel module against many kernels",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to the configuration file. Default: {DEFAULT_CONFIG}",
    )
    parser.add_argument(
        "-k",
        "--kernel",
        help="Only run kernels whose version starts with this value (5 runs every 5.x.y)",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Build and upload, then open a shell in the guest (QEMU gdb stub enabled)",
    )
    parser.add_argument(
        "-o",
        "--output",
        help="Directory for the markdown/JSON report and failure logs",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    runner = None
    try:
        config = load_config(Path(args.config))
        if args.output:
            config.results_dir = os.path.expanduser(args.output)

        kernels = filter_kernels(config.kernels, args.kernel)
        if not kernels:
            logger.error("No configured kernel matches %r", args.kernel)
            sys.exit(int(ExitStatus.CONFIG_ERROR))

        ssh_version = SshVersion.query()
        logger.info(
            "Host SSH client version: %s, legacy: %s", ssh_version, ssh_version.is_legacy()
        )

        runner = PipelineRunner(config, ssh_version, debug=args.debug)
        _results, status = runner.run(kernels)

    except NixModuleError as e:
        logger.error(str(e))
        if runner is not None:
            report(runner, args.debug)
        sys.exit(int(e.exit_status))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)

    report(runner, args.debug)
    sys.exit(int(status))


if __name__ == "__main__":
    main()
