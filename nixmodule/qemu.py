"""qemu.py.

Manages the QEMU guest a kernel is tested in: launch, readiness, remote
commands, file transfer and teardown.
"""

from __future__ import annotations

import logging
import random
import socket
import subprocess
import time
from typing import List, Optional, Sequence

from nixmodule.config import KernelConfig
from nixmodule.errors import BootTimeoutError, QemuError, SshError

logger = logging.getLogger(__name__)

# Seconds between readiness probes while the guest boots
BOOT_POLL_INTERVAL = 7

# Seconds to wait for QEMU to exit after SIGTERM before killing it
STOP_TIMEOUT = 30

# Range the forwarded SSH port is drawn from. A port that is already bound
# on the host is not detected; the guest will then fail to become ready.
SSH_PORT_RANGE = (1025, 65535)

SSH_USER_HOST = "root@localhost"

GUEST_MEMORY = "2G"
GUEST_CPUS = "2"


def kernel_cmdline(root_device: str) -> str:
    """Kernel command line for booting from the given root device."""
    return f"console=ttyS0 root={root_device} earlyprintk=serial net.ifnames=0 nokaslr"


def wait_for_boot(
    port: int,
    timeout: int,
    host: str = "127.0.0.1",
    process: Optional[subprocess.Popen] = None,
) -> None:
    """Block until the guest's SSH server is accepting sessions.

    The forwarded port is opened by QEMU's user network stack long before
    sshd runs inside the guest, so a connection alone is not enough. The
    server sends its banner as soon as it accepts, and a successful read of
    that banner is what counts as ready.

    Args:
        port: Host port forwarded to guest port 22.
        timeout: Seconds allowed overall, also used as the socket deadline
            of every attempt.
        host: Address the port is forwarded on.
        process: QEMU process. Polling stops early if it exits.

    Raises:
        BootTimeoutError: If the banner is not read within ``timeout``.
        QemuError: If ``process`` exits before the guest is ready.

    """
    start = time.monotonic()
    attempts = 0

    while True:
        attempts += 1
        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                banner = sock.recv(256)
                if banner:
                    logger.info(
                        "SSH ready on port %s after %d attempt(s): %s",
                        port,
                        attempts,
                        banner.decode(errors="replace").strip(),
                    )
                    return
                logger.debug("Port %s accepted but closed without a banner", port)
        except OSError as e:
            logger.debug("Port %s not ready: %s", port, e)

        if process is not None and process.poll() is not None:
            raise QemuError(
                f"QEMU exited with status {process.returncode} before SSH on port {port} was ready"
            )

        elapsed = time.monotonic() - start
        if elapsed > timeout:
            raise BootTimeoutError(
                f"Guest SSH on port {port} not ready after {elapsed:.0f}s "
                f"({attempts} attempts, timeout {timeout}s)"
            )
        time.sleep(BOOT_POLL_INTERVAL)


class QemuRunner:
    """A running QEMU guest reachable over SSH.

    Use as a context manager so the guest is stopped on every exit path::

        with QemuRunner.start(kernel) as vm:
            vm.runcmd("uname -r")
    """

    def __init__(
        self,
        process: subprocess.Popen,
        port: int,
        sshkey: str,
        scp_args: Sequence[str] = (),
    ):
        """Wrap an already spawned QEMU process.

        Args:
            process: The QEMU process.
            port: Host port forwarded to guest port 22.
            sshkey: Private key for root in the guest.
            scp_args: Extra scp arguments (see ``SshVersion.scp_protocol_args``).

        """
        self.process = process
        self.port = port
        self.sshkey = sshkey
        self.scp_args = list(scp_args)

    @staticmethod
    def qemu_command(kernel: KernelConfig, port: int, debug: bool = False) -> List[str]:
        """Build the QEMU command line for a resolved kernel."""
        cmd = [kernel.runner, *kernel.runner_extra_args]
        cmd += ["-m", GUEST_MEMORY, "-smp", GUEST_CPUS]
        cmd += ["-kernel", kernel.kernel]
        cmd += ["-append", kernel_cmdline(kernel.disk.boot)]
        cmd += ["-drive", f"file={kernel.disk.path},format=raw"]
        if kernel.disk.initrd:
            cmd += ["-initrd", kernel.disk.initrd]
        cmd += ["-net", f"user,host=10.0.2.10,hostfwd=tcp:127.0.0.1:{port}-:22"]
        cmd += ["-net", "nic,model=e1000"]
        if kernel.kvm:
            cmd.append("-enable-kvm")
        if debug:
            # gdb stub on tcp::1234
            cmd.append("-s")
        cmd.append("-nographic")
        return cmd

    @classmethod
    def start(
        cls,
        kernel: KernelConfig,
        debug: bool = False,
        scp_args: Sequence[str] = (),
        port: Optional[int] = None,
    ) -> "QemuRunner":
        """Boot a kernel and wait until its SSH service is ready.

        Args:
            kernel: Kernel whose artifacts were resolved by the cache.
            debug: Enable the gdb stub and keep QEMU's console output.
            scp_args: Extra scp arguments for transfers.
            port: Host SSH port. Random when not given.

        Returns:
            A ready QemuRunner.

        Raises:
            QemuError: If QEMU cannot be spawned or exits while booting.
            BootTimeoutError: If the guest is not ready within
                ``kernel.boot_timeout``.

        The guest is stopped before any error leaves this method.

        """
        if port is None:
            port = random.randint(*SSH_PORT_RANGE)

        cmd = cls.qemu_command(kernel, port, debug)
        output = None if debug else subprocess.DEVNULL

        logger.info("Booting kernel %s with SSH on port %s", kernel.version, port)
        logger.debug("QEMU command: %s", " ".join(cmd))
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=output,
            )
        except OSError as e:
            raise QemuError(f"Failed to start {kernel.runner}: {e}") from e

        vm = cls(process, port, kernel.disk.sshkey, scp_args)
        try:
            wait_for_boot(port, kernel.boot_timeout, process=process)
        except BaseException:
            vm.stop()
            raise
        return vm

    def __enter__(self) -> "QemuRunner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _ssh_options(self) -> List[str]:
        return [
            "-i",
            self.sshkey,
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]

    def ssh_command(self, command: Optional[str] = None) -> List[str]:
        """ssh invocation for the guest, optionally running a command."""
        cmd = ["ssh", *self._ssh_options(), "-p", str(self.port), SSH_USER_HOST]
        if command is not None:
            cmd.append(command)
        return cmd

    def scp_command(self, local: str, remote: str) -> List[str]:
        """scp invocation copying a local file into the guest."""
        return [
            "scp",
            *self.scp_args,
            *self._ssh_options(),
            "-P",
            str(self.port),
            local,
            f"{SSH_USER_HOST}:{remote}",
        ]

    def _run(self, cmd: List[str], what: str) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            raise SshError(f"Failed to run {cmd[0]} for {what}: {e}") from e

        if result.returncode != 0:
            if result.stdout:
                logger.info("Output of %s:\n%s", what, result.stdout)
            if result.stderr:
                logger.error("Errors from %s:\n%s", what, result.stderr)
            raise SshError(
                f"{what} failed with exit code {result.returncode}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def runcmd(self, command: str) -> str:
        """Run a command in the guest and return its stdout.

        Raises:
            SshError: If ssh fails or the command exits non-zero.

        """
        logger.info("Running %s", command)
        return self._run(self.ssh_command(command), f"'{command}'").stdout

    def transfer(self, local: str, remote: str) -> None:
        """Copy a local file into the guest.

        Raises:
            SshError: If scp fails.

        """
        logger.info("Uploading %s to %s", local, remote)
        self._run(self.scp_command(local, remote), f"upload of {local}")

    def interact(self) -> None:
        """Open an interactive root shell in the guest on this terminal.

        Raises:
            SshError: If ssh cannot be started or fails to connect.

        """
        logger.info("Opening shell in guest on port %s", self.port)
        try:
            result = subprocess.run(self.ssh_command(), check=False)
        except OSError as e:
            raise SshError(f"Failed to start interactive session: {e}") from e

        # 255 is ssh's own failure; anything else is the shell's exit status
        if result.returncode == 255:
            raise SshError("Interactive ssh session failed")

    def stop(self) -> None:
        """Terminate QEMU and wait for it. Safe to call more than once.

        Raises:
            QemuError: If the process cannot be signalled or reaped.

        """
        if self.process is None or self.process.poll() is not None:
            return

        logger.info("Stopping QEMU (pid %s)", self.process.pid)
        try:
            self.process.terminate()
            try:
                self.process.wait(timeout=STOP_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.warning("QEMU did not exit after %ss, killing it", STOP_TIMEOUT)
                self.process.kill()
                self.process.wait()
        except OSError as e:
            raise QemuError(f"Failed to stop QEMU: {e}") from e
