"""Code quality tests to prevent regressions.

These tests check for banned patterns across the entire codebase to ensure
code quality standards are maintained.
"""

from __future__ import annotations

import ast
import re
import subprocess
import sys
import tomllib
from pathlib import Path
from typing import Iterator

import nixmodule


def get_python_files(root: Path) -> Iterator[Path]:
    """Yield all Python files of the package and its tests, excluding __pycache__."""
    for top in ("nixmodule", "tests"):
        for py_file in (root / top).rglob("*.py"):
            if "__pycache__" not in str(py_file):
                yield py_file


class TestBannedPythonPatterns:
    """Test that banned Python patterns are not used anywhere."""

    def test_no_os_system_anywhere(self, project_root: Path) -> None:
        """Test that os.system() is not used in any Python file."""
        violations = []
        for py_file in get_python_files(project_root):
            for node in ast.walk(ast.parse(py_file.read_text())):
                if (
                    isinstance(node, ast.Call)
                    and isinstance(node.func, ast.Attribute)
                    and node.func.attr == "system"
                    and isinstance(node.func.value, ast.Name)
                    and node.func.value.id == "os"
                ):
                    violations.append(f"{py_file}:{node.lineno}")

        assert not violations, (
            "os.system() calls found. Use subprocess.run() instead:\n"
            + "\n".join(violations)
        )

    def test_no_bare_except_anywhere(self, project_root: Path) -> None:
        """Test that every exception handler names what it catches."""
        violations = []
        for py_file in get_python_files(project_root):
            for node in ast.walk(ast.parse(py_file.read_text())):
                if isinstance(node, ast.ExceptHandler) and node.type is None:
                    violations.append(f"{py_file}:{node.lineno}")

        assert not violations, (
            "Bare except clauses found. Use specific exceptions:\n"
            + "\n".join(violations)
        )

    def test_no_shell_true(self, project_root: Path) -> None:
        """Test that subprocesses are never started through a shell."""
        violations = []
        for py_file in (project_root / "nixmodule").rglob("*.py"):
            for node in ast.walk(ast.parse(py_file.read_text())):
                if isinstance(node, ast.keyword) and node.arg == "shell":
                    if isinstance(node.value, ast.Constant) and node.value.value is True:
                        violations.append(f"{py_file}:{node.value.lineno}")

        assert not violations, "shell=True found:\n" + "\n".join(violations)

    def test_all_python_files_compile(self, project_root: Path) -> None:
        """Test that all Python files have valid syntax."""
        failures = []
        for py_file in get_python_files(project_root):
            result = subprocess.run(
                [sys.executable, "-m", "py_compile", str(py_file)],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                failures.append(f"{py_file}: {result.stderr}")

        assert not failures, "Python syntax errors found:\n" + "\n".join(failures)

    def test_no_python2_only_imports(self, project_root: Path) -> None:
        """Test that Python 2-only imports are not used."""
        python2_modules = {"urllib2", "ConfigParser", "StringIO", "cPickle"}
        violations = []

        for py_file in get_python_files(project_root):
            for node in ast.walk(ast.parse(py_file.read_text())):
                if isinstance(node, ast.Import):
                    names = [alias.name for alias in node.names]
                elif isinstance(node, ast.ImportFrom):
                    names = [node.module or ""]
                else:
                    continue
                for name in names:
                    if name.split(".")[0] in python2_modules:
                        violations.append(f"{py_file}:{node.lineno}: {name}")

        assert not violations, (
            "Python 2-only imports found:\n" + "\n".join(violations)
        )


class TestPythonShebangStandards:
    """Test that Python scripts have proper shebangs."""

    def test_executable_scripts_have_python3_shebang(self, package_dir: Path) -> None:
        """Test that the runnable entry module uses python3 in its shebang."""
        with open(package_dir / "runner.py") as f:
            first_line = f.readline().strip()

        assert first_line.startswith("#!"), "runner.py: missing shebang"
        assert "python3" in first_line, f"runner.py: shebang '{first_line}' should use python3"


class TestVersionConsistency:
    """Test that version information is consistent across the project."""

    def test_version_format(self) -> None:
        """Test that the package version is a valid semver version."""
        semver_pattern = re.compile(r'^\d+\.\d+\.\d+(-[\w.]+)?(\+[\w.]+)?$')
        assert semver_pattern.match(nixmodule.__version__), (
            f"__version__ '{nixmodule.__version__}' does not match semver format"
        )

    def test_pyproject_matches_package(self, project_root: Path) -> None:
        """Test that pyproject.toml declares the package version."""
        with open(project_root / "pyproject.toml", "rb") as f:
            pyproject = tomllib.load(f)
        assert pyproject["project"]["version"] == nixmodule.__version__
