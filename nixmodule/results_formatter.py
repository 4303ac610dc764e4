"""results_formatter.py.

Formats per-kernel results into markdown summary tables, JSON and failure
logs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from nixmodule.errors import CommandError, ExitStatus
from nixmodule.stages import StageOutcome, StageStatus


@dataclass
class KernelResult:
    """Result row for one kernel."""

    version: str
    build: str
    insmod: str
    test: str
    duration_seconds: float
    exit_status: ExitStatus = ExitStatus.SUCCESS
    failure_reason: Optional[str] = None
    timestamp: Optional[str] = None
    logs: Optional[Dict[str, str]] = None  # stream name -> content

    @property
    def passed(self) -> bool:
        """True when nothing failed for this kernel."""
        return self.exit_status == ExitStatus.SUCCESS

    @classmethod
    def from_outcome(
        cls, version: str, outcome: StageOutcome, duration_seconds: float
    ) -> "KernelResult":
        """Build a row from a completed pipeline."""
        failure = outcome.failure
        return cls(
            version=version,
            duration_seconds=duration_seconds,
            exit_status=outcome.exit_status,
            failure_reason=str(failure) if failure else None,
            timestamp=datetime.now().isoformat(),
            logs=captured_logs(failure.cause) if failure else None,
            **outcome.columns(),
        )

    @classmethod
    def from_boot_error(
        cls, version: str, error: Exception, exit_status: ExitStatus, duration_seconds: float
    ) -> "KernelResult":
        """Build a row for a kernel whose guest never became ready."""
        return cls(
            version=version,
            build=StageStatus.NOT_ATTEMPTED,
            insmod=StageStatus.NOT_ATTEMPTED,
            test=StageStatus.NOT_ATTEMPTED,
            duration_seconds=duration_seconds,
            exit_status=exit_status,
            failure_reason=f"boot failed: {error}",
            timestamp=datetime.now().isoformat(),
            logs=captured_logs(error),
        )


def captured_logs(error: Exception) -> Optional[Dict[str, str]]:
    """Output streams captured by a failed command, if any."""
    if not isinstance(error, CommandError):
        return None
    logs = {}
    if error.stdout:
        logs["stdout"] = error.stdout
    if error.stderr:
        logs["stderr"] = error.stderr
    return logs or None


class ResultsFormatter:
    """Format and save kernel results."""

    def __init__(self, output_dir: str = "results"):
        """Initialize formatter with output directory."""
        self.output_dir = Path(output_dir)
        self.results: List[KernelResult] = []

    def add_result(self, result: KernelResult) -> None:
        """Add a kernel result."""
        self.results.append(result)

    def _escape_markdown(self, text: str) -> str:
        """Escape special markdown characters."""
        return text.replace("|", "\\|").replace("\n", " ")

    def generate_summary_markdown(self) -> str:
        """Generate markdown summary table."""
        if not self.results:
            return "# Kernel Module Test Results\n\nNo results to report.\n"

        lines = [
            "# Kernel Module Test Results\n",
            f"Generated: {datetime.now().isoformat()}\n",
            f"Total Kernels: {len(self.results)}\n",
            f"Passed: {sum(1 for r in self.results if r.passed)}\n",
            f"Failed: {sum(1 for r in self.results if not r.passed)}\n",
            "",
            "## Summary",
            "",
            "| Kernel | Build | Insmod | Test | Duration | Status |",
            "|--------|-------|--------|------|----------|--------|",
        ]

        # Rows stay in run order, which follows the configuration
        for result in self.results:
            if result.passed:
                status = "PASSED"
            else:
                status = f"FAILED: {self._escape_markdown(result.failure_reason or 'Unknown')}"

            lines.append(
                f"| {result.version} | {result.build} | {result.insmod} | "
                f"{result.test} | {result.duration_seconds:.1f}s | {status} |"
            )

        failures = [r for r in self.results if not r.passed]
        if failures:
            lines.extend([
                "",
                "## Failures",
                "",
            ])
            for result in failures:
                lines.append(f"### {result.version}")
                if result.failure_reason:
                    lines.append(f"\n**Reason:** {self._escape_markdown(result.failure_reason)}\n")
                lines.append(f"**Exit status:** {result.exit_status.name}\n")
                if result.timestamp:
                    lines.append(f"**Time:** {result.timestamp}\n")
                if result.logs:
                    lines.append("**Log Files:** See `failures/` directory\n")
                lines.append("")

        lines.append("\n")
        return "\n".join(lines)

    def save_summary(self, filename: str = "summary.md") -> Path:
        """Save markdown summary to file."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        summary_path = self.output_dir / filename
        summary_path.write_text(self.generate_summary_markdown())
        return summary_path

    def save_failure_logs(self, result: KernelResult) -> Optional[Path]:
        """Save the failure log of a kernel, if it failed."""
        if result.passed:
            return None

        failures_dir = self.output_dir / "failures"
        failures_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        safe_version = result.version.replace(".", "_").replace(" ", "_").replace("/", "_")
        log_path = failures_dir / f"{safe_version}-{timestamp}.log"

        log_lines = [
            "Kernel Test Failure Log",
            "=======================",
            "",
            f"Kernel: {result.version}",
            f"Build: {result.build}",
            f"Insmod: {result.insmod}",
            f"Test: {result.test}",
            f"Exit status: {result.exit_status.name}",
            f"Timestamp: {result.timestamp}",
            f"Duration: {result.duration_seconds:.1f}s",
            "",
            "Failure Reason:",
            "---------------",
            f"{result.failure_reason or 'Unknown'}",
            "",
        ]

        if result.logs:
            log_lines.extend([
                "Captured Output:",
                "================",
                "",
            ])
            for log_name, log_content in sorted(result.logs.items()):
                log_lines.extend([
                    f"### {log_name}",
                    "```",
                    log_content,
                    "```",
                    "",
                ])

        log_path.write_text("\n".join(log_lines))
        return log_path

    def save_json_results(self, filename: str = "results.json") -> Path:
        """Save detailed results as JSON."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        results_path = self.output_dir / filename

        results_data = {
            "generated": datetime.now().isoformat(),
            "summary": {
                "total": len(self.results),
                "passed": sum(1 for r in self.results if r.passed),
                "failed": sum(1 for r in self.results if not r.passed),
            },
            "results": [
                {
                    "version": r.version,
                    "build": r.build,
                    "insmod": r.insmod,
                    "test": r.test,
                    "exit_status": int(r.exit_status),
                    "duration_seconds": r.duration_seconds,
                    "failure_reason": r.failure_reason,
                    "timestamp": r.timestamp,
                    "has_logs": bool(r.logs),
                }
                for r in self.results
            ],
        }

        results_path.write_text(json.dumps(results_data, indent=2))
        return results_path

    def save_all(self, base_dir: Optional[str] = None) -> Dict[str, Path]:
        """Save all result formats."""
        if base_dir is not None:
            self.output_dir = Path(base_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        for result in self.results:
            self.save_failure_logs(result)

        return {
            "summary": self.save_summary(),
            "json": self.save_json_results(),
            "failures_dir": self.output_dir / "failures",
        }
