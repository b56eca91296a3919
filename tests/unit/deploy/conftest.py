"""Shared fixtures for deploy unit tests.

Provides FakeHost, a CommandRunner that simulates the target host's package
manager, toolchain installer, compiler, account database and systemd in
memory and on a temporary directory. Tests can drive full Build & Install
runs against it without root, network access or a real toolchain.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set
from unittest.mock import Mock, patch

import pytest

from service_deployer.deploy.runner import CommandResult, CommandRunner
from service_deployer.utils.config_manager import DeployConfig


@dataclass
class RecordedCall:
    args: List[str]
    cwd: Optional[Path] = None
    env: Optional[Dict[str, str]] = None


@dataclass
class SystemdState:
    enabled: Set[str] = field(default_factory=set)
    active: Set[str] = field(default_factory=set)
    reloads: int = 0
    restarts: int = 0


class FakeHost(CommandRunner):
    """In-memory stand-in for the target host's commands."""

    TOOLCHAIN_ENV = {"PATH": "/root/.cargo/bin:/usr/bin:/bin", "CARGO_HOME": "/root/.cargo"}

    def __init__(self, config: DeployConfig, hostname_file: Path):
        super().__init__()
        self.config = config
        self.hostname_file = hostname_file
        self.calls: List[RecordedCall] = []
        self.packages: Set[str] = set()
        self.accounts: Set[str] = set()
        self.systemd = SystemdState()
        self.build_output = b"\x7fELF release v1"
        self.build_fails = False
        self.restart_fails = False

    @property
    def commands(self) -> List[List[str]]:
        return [call.args for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(args[: len(prefix)] == list(prefix) for args in self.commands)

    def getpwnam(self, name: str):
        if name not in self.accounts:
            raise KeyError(f"getpwnam(): name not found: '{name}'")
        return Mock(pw_name=name)

    def run(self, args, cwd=None, env=None, input=None, check=True) -> CommandResult:
        args = [str(a) for a in args]
        self.calls.append(RecordedCall(args=args, cwd=cwd, env=env))

        result = self._dispatch(args) or CommandResult(args=args, returncode=0)
        if check and not result.ok:
            self._raise_for_result(result)
        return result

    def _dispatch(self, args: List[str]) -> Optional[CommandResult]:
        program = args[0]

        if program == "hostnamectl":
            self.hostname_file.write_text(args[-1] + "\n")

        elif program == "dpkg-query":
            if args[-1] in self.packages:
                return CommandResult(args, 0, stdout="install ok installed")
            return CommandResult(args, 1, stderr=f"no packages found matching {args[-1]}")

        elif program == "apt-get":
            self.packages.update(a for a in args[3:] if not a.startswith("-"))

        elif program == "sh" and args[1] == "-c":
            env = "".join(f"{k}={v}\0" for k, v in self.TOOLCHAIN_ENV.items())
            return CommandResult(args, 0, stdout=env)

        elif program == "sh":
            marker = self.config.toolchain_marker_path
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.write_text('export PATH="$HOME/.cargo/bin:$PATH"\n')

        elif args[: len(self.config.build_command)] == self.config.build_command:
            if self.build_fails:
                return CommandResult(args, 101, stderr="error[E0425]: cannot find value `x`")
            if self.build_output is None:
                return None
            artifact = self.config.artifact_file
            artifact.parent.mkdir(parents=True, exist_ok=True)
            artifact.write_bytes(self.build_output)
            artifact.chmod(0o755)

        elif program == "useradd":
            name = args[-1]
            if name in self.accounts:
                return CommandResult(args, 9, stderr=f"useradd: user '{name}' already exists")
            self.accounts.add(name)

        elif program == "systemctl":
            action = args[1]
            if action == "daemon-reload":
                self.systemd.reloads += 1
            elif action == "enable":
                self.systemd.enabled.add(args[2])
            elif action == "restart":
                if self.restart_fails:
                    return CommandResult(args, 1, stderr="Job for unit failed")
                self.systemd.active.add(args[2])
                self.systemd.restarts += 1

        return None


@pytest.fixture
def deploy_config(tmp_path) -> DeployConfig:
    """DeployConfig rooted entirely under tmp_path."""
    config = DeployConfig(
        service_name="cratebot",
        clone_dir=str(tmp_path / "srv" / "cratebot"),
        install_dir=str(tmp_path / "usr" / "local" / "bin"),
        unit_dir=str(tmp_path / "etc" / "systemd" / "system"),
        toolchain_marker=str(tmp_path / "home" / ".cargo" / "env"),
    )
    unit_source = config.unit_source_path
    unit_source.parent.mkdir(parents=True)
    unit_source.write_text(
        "[Unit]\nDescription=cratebot\n\n[Service]\nUser=cratebot\n"
        "ExecStart=/usr/local/bin/cratebot\nRestart=always\n\n"
        "[Install]\nWantedBy=multi-user.target\n"
    )
    (tmp_path / "home").mkdir(exist_ok=True)
    return config


@pytest.fixture
def fake_host(deploy_config, tmp_path) -> FakeHost:
    hostname_file = tmp_path / "etc" / "hostname"
    hostname_file.parent.mkdir(parents=True, exist_ok=True)
    hostname_file.write_text("localhost\n")
    host = FakeHost(deploy_config, hostname_file)

    with patch(
        "service_deployer.deploy.build_install_manager.pwd.getpwnam",
        side_effect=host.getpwnam,
    ):
        yield host


@pytest.fixture
def installer_download():
    """Stub the toolchain installer download."""
    response = Mock(text="#!/bin/sh\necho installing toolchain\n")
    response.raise_for_status = Mock()
    with patch(
        "service_deployer.utils.toolchain_installer.requests.get",
        return_value=response,
    ) as mock_get:
        yield mock_get
