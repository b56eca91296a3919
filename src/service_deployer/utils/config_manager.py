"""
Deploy Configuration Management for service-deployer.

Handles configuration creation, validation, environment variable overrides,
and forwarding of non-default settings to the target host.
"""

import json
import logging
import os
import re
import shlex
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Dict, List, Optional

ENV_PREFIX = "SERVICE_DEPLOY_"
CONFIG_DIR_ENV_VAR = "SERVICE_DEPLOY_CONFIG_DIR"

_SERVICE_NAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*$")
_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _default_packages() -> List[str]:
    # build toolchain, TLS headers, database client headers, editor
    return ["build-essential", "pkg-config", "libssl-dev", "libsqlite3-dev", "vim"]


def _default_baseline_packages() -> List[str]:
    return ["git", "rsync", "python3", "python3-click", "python3-rich", "python3-requests"]


@dataclass
class DeployConfig:
    """
    Settings for deploying one compiled service onto one host.

    Empty path and name fields are derived from service_name; read them
    through the properties below rather than directly.
    """

    service_name: str = "cratebot"
    repository_url: str = "https://github.com/casey/cratebot.git"

    # Target host layout
    clone_dir: str = ""  # default: /srv/<service_name>
    install_dir: str = "/usr/local/bin"
    backup_suffix: str = ".bak"
    unit_dir: str = "/etc/systemd/system"
    unit_source: str = ""  # relative to the clone, default: deploy/<service_name>.service
    service_user: str = ""  # default: service_name

    # Host provisioning
    packages: List[str] = field(default_factory=_default_packages)
    toolchain_marker: str = "~/.cargo/env"
    toolchain_installer_url: str = "https://sh.rustup.rs"
    toolchain_installer_args: List[str] = field(default_factory=lambda: ["-y"])

    # Build
    build_command: List[str] = field(
        default_factory=lambda: ["cargo", "build", "--release"]
    )
    artifact_path: str = ""  # relative to the clone, default: target/release/<service_name>

    # Operator side
    ssh_user: str = "root"
    ssh_options: List[str] = field(default_factory=lambda: ["-o", "BatchMode=yes"])
    staging_dir: str = "deploy"
    baseline_packages: List[str] = field(default_factory=_default_baseline_packages)

    command_timeout: Optional[int] = None
    log_level: str = "INFO"

    @property
    def clone_path(self) -> Path:
        return Path(self.clone_dir or f"/srv/{self.service_name}")

    @property
    def install_path(self) -> Path:
        return Path(self.install_dir) / self.service_name

    @property
    def backup_path(self) -> Path:
        return Path(f"{self.install_path}{self.backup_suffix}")

    @property
    def unit_path(self) -> Path:
        return Path(self.unit_dir) / f"{self.service_name}.service"

    @property
    def unit_source_path(self) -> Path:
        return self.clone_path / (self.unit_source or f"deploy/{self.service_name}.service")

    @property
    def artifact_file(self) -> Path:
        return self.clone_path / (self.artifact_path or f"target/release/{self.service_name}")

    @property
    def account_name(self) -> str:
        return self.service_user or self.service_name

    @property
    def toolchain_marker_path(self) -> Path:
        return Path(self.toolchain_marker).expanduser()

    def to_env(self) -> Dict[str, str]:
        """
        Render settings that differ from the defaults as environment variables.

        Used to forward the operator's configuration to the remote run, which
        otherwise only sees its own defaults.

        Returns:
            Mapping of SERVICE_DEPLOY_<FIELD> to string value
        """
        defaults = DeployConfig()
        env = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value == getattr(defaults, f.name) or value is None:
                continue
            if isinstance(value, list):
                env[ENV_PREFIX + f.name.upper()] = shlex.join(value)
            else:
                env[ENV_PREFIX + f.name.upper()] = str(value)
        return env


class ConfigManager:
    """
    Manages service-deployer configuration.

    Handles configuration creation, validation, file persistence, and
    environment variable overrides.
    """

    def __init__(self, config_dir_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_dir_path: Path to config directory (defaults to
                SERVICE_DEPLOY_CONFIG_DIR env var or ~/.service-deployer)
        """
        if config_dir_path:
            self.config_dir = Path(config_dir_path)
        else:
            default_dir = os.environ.get(
                CONFIG_DIR_ENV_VAR, str(Path.home() / ".service-deployer")
            )
            self.config_dir = Path(default_dir)

        self.config_file_path = self.config_dir / "config.json"

    def create_default_config(self) -> DeployConfig:
        return DeployConfig()

    def save_config(self, config: DeployConfig) -> None:
        """
        Save configuration to file.

        Args:
            config: DeployConfig object to save
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)

        with open(self.config_file_path, "w") as f:
            json.dump(asdict(config), f, indent=2)

    def load_config(self) -> Optional[DeployConfig]:
        """
        Load configuration from file.

        Returns:
            DeployConfig if file exists, None otherwise

        Raises:
            ValueError: If configuration file is malformed
        """
        if not self.config_file_path.exists():
            return None

        try:
            with open(self.config_file_path, "r") as f:
                config_dict = json.load(f)

            return DeployConfig(**config_dict)

        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse configuration file: {e}")
        except TypeError as e:
            raise ValueError(f"Invalid configuration format: {e}")

    def apply_env_overrides(self, config: DeployConfig) -> DeployConfig:
        """
        Apply environment variable overrides to configuration.

        Every field can be overridden with SERVICE_DEPLOY_<FIELD>, e.g.
        SERVICE_DEPLOY_SERVICE_NAME or SERVICE_DEPLOY_CLONE_DIR. List fields
        are parsed with shell quoting rules ("git rsync" -> ["git", "rsync"]).

        Args:
            config: Base configuration to apply overrides to

        Returns:
            Updated configuration with environment overrides
        """
        for f in fields(config):
            env_value = os.environ.get(ENV_PREFIX + f.name.upper())
            if env_value is None:
                continue

            current = getattr(config, f.name)
            if isinstance(current, list):
                setattr(config, f.name, shlex.split(env_value))
            elif f.name == "command_timeout":
                try:
                    config.command_timeout = int(env_value) if env_value else None
                except ValueError:
                    logging.warning(
                        f"Invalid {ENV_PREFIX}COMMAND_TIMEOUT environment variable value "
                        f"'{env_value}'. Using {config.command_timeout}"
                    )
            else:
                setattr(config, f.name, env_value)

        return config

    def validate_config(self, config: DeployConfig) -> None:
        """
        Validate configuration settings.

        Args:
            config: Configuration to validate

        Raises:
            ValueError: Listing every invalid setting
        """
        errors = []

        if not _SERVICE_NAME_PATTERN.match(config.service_name):
            errors.append(
                f"service_name must match {_SERVICE_NAME_PATTERN.pattern}, "
                f"got '{config.service_name}'"
            )

        if not config.repository_url:
            errors.append("repository_url is required")

        if config.service_user and not _SERVICE_NAME_PATTERN.match(config.service_user):
            errors.append(f"service_user is not a valid account name: '{config.service_user}'")

        if not config.build_command:
            errors.append("build_command must not be empty")

        if not config.backup_suffix:
            errors.append("backup_suffix must not be empty")

        if config.command_timeout is not None and config.command_timeout <= 0:
            errors.append(
                f"command_timeout must be greater than 0, got {config.command_timeout}"
            )

        if config.log_level.upper() not in _VALID_LOG_LEVELS:
            errors.append(
                f"log_level must be one of {sorted(_VALID_LOG_LEVELS)}, got {config.log_level}"
            )

        if errors:
            raise ValueError("; ".join(errors))

    def get_config(self) -> DeployConfig:
        """
        Load the effective configuration: file (or defaults), env overrides, validation.

        Raises:
            ValueError: If the file is malformed or a setting is invalid
        """
        config = self.load_config() or self.create_default_config()
        config = self.apply_env_overrides(config)
        self.validate_config(config)
        return config
