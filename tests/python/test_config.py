"""Tests for configuration loading."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from nixmodule.config import DEFAULT_BOOT_TIMEOUT, load_config, parse_config
from nixmodule.errors import ConfigError

YAML_CONFIG = """\
cache: ~/.cache/nixmodule
module:
  name: example
  insmod_args: debug=1
  build_defines: ["EXTRA=1"]
  test_script:
    local: tests/run.sh
    remote: /root/run.sh
  test_files:
    - local: tests/data.bin
      remote: /root/data.bin
kernels:
  - version: 5.10.1
    url_base: https://kernels.example.org/5.10.1
    headers: linux-headers.tar.gz
    kernel: bzImage
    runner: qemu-system-x86_64
    disk:
      url_base: https://images.example.org
      path: bullseye.img
      sshkey: bullseye.id_rsa
      boot: /dev/sda
  - version: 6.1.0
    url_base: https://kernels.example.org/6.1.0
    headers: linux-headers.tar.gz
    kernel: bzImage
    runner: qemu-system-x86_64
    runner_extra_args: ["-cpu", "host"]
    kvm: false
    timeout: 180
    disk:
      url_base: https://images.example.org
      path: bookworm.img
      initrd: initrd.img
      sshkey: bookworm.id_rsa
      boot: /dev/vda
"""

TOML_CONFIG = """\
cache = "/var/cache/nixmodule"

[module]
name = "example"
insmod_args = ""
test_files = []

[module.test_script]
local = "tests/run.sh"
remote = "/root/run.sh"

[[kernels]]
version = "5.4.0"
url_base = "https://kernels.example.org/5.4.0"
headers = "linux-headers.tar.gz"
kernel = "bzImage"
runner = "qemu-system-x86_64"

[kernels.disk]
url_base = "https://images.example.org"
path = "buster.img"
sshkey = "buster.id_rsa"
boot = "/dev/sda"
"""


class TestLoadConfig:
    """Test cases for load_config."""

    def test_loads_yaml(self, tmp_path: Path) -> None:
        """Test that a YAML config produces typed records."""
        path = tmp_path / "nixmodule-config.yaml"
        path.write_text(YAML_CONFIG)

        config = load_config(path)

        assert config.cache == os.path.expanduser("~/.cache/nixmodule")
        assert config.module.name == "example"
        assert config.module.build_defines == ["EXTRA=1"]
        assert config.module.test_script.remote == "/root/run.sh"
        assert [f.remote for f in config.module.test_files] == ["/root/data.bin"]
        assert [k.version for k in config.kernels] == ["5.10.1", "6.1.0"]

    def test_kernel_defaults(self, tmp_path: Path) -> None:
        """Test that kvm, timeout and extra args have defaults."""
        path = tmp_path / "config.yaml"
        path.write_text(YAML_CONFIG)

        first, second = load_config(path).kernels

        assert first.kvm is True
        assert first.timeout is None
        assert first.boot_timeout == DEFAULT_BOOT_TIMEOUT
        assert first.runner_extra_args == []
        assert first.disk.initrd is None

        assert second.kvm is False
        assert second.boot_timeout == 180
        assert second.runner_extra_args == ["-cpu", "host"]
        assert second.disk.initrd == "initrd.img"

    def test_loads_toml(self, tmp_path: Path) -> None:
        """Test that .toml files are read as TOML."""
        path = tmp_path / "nixmodule-config.toml"
        path.write_text(TOML_CONFIG)

        config = load_config(path)

        assert config.cache == "/var/cache/nixmodule"
        assert config.module.build_defines == []
        assert config.kernels[0].disk.boot == "/dev/sda"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing config file is a ConfigError."""
        with pytest.raises(ConfigError, match="does not exist"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that unparsable YAML is a ConfigError."""
        path = tmp_path / "config.yaml"
        path.write_text("cache: [unterminated\n")
        with pytest.raises(ConfigError):
            load_config(path)


class TestParseConfig:
    """Test cases for validation of decoded documents."""

    def _document(self) -> dict:
        import yaml

        return yaml.safe_load(YAML_CONFIG)

    def test_missing_kernel_key(self) -> None:
        """Test that a kernel without a runner is rejected."""
        data = self._document()
        del data["kernels"][0]["runner"]
        with pytest.raises(ConfigError, match="runner"):
            parse_config(data)

    def test_missing_disk_key(self) -> None:
        """Test that a disk without an SSH key is rejected."""
        data = self._document()
        del data["kernels"][1]["disk"]["sshkey"]
        with pytest.raises(ConfigError, match=r"kernels\[1\]\.disk"):
            parse_config(data)

    def test_kvm_must_be_boolean(self) -> None:
        """Test that kvm only accepts booleans."""
        data = self._document()
        data["kernels"][0]["kvm"] = "yes"
        with pytest.raises(ConfigError, match="kvm"):
            parse_config(data)

    def test_build_defines_must_be_strings(self) -> None:
        """Test that build_defines only accepts a list of strings."""
        data = self._document()
        data["module"]["build_defines"] = "EXTRA=1"
        with pytest.raises(ConfigError, match="build_defines"):
            parse_config(data)
