"""BuildInstallManager - provisions the host, builds the release and installs it.

Every step checks the host before acting, so re-running a deploy that already
succeeded (or resuming one that failed part-way) repeats no work beyond the
build, the binary swap and the service restart.
"""

import hashlib
import logging
import os
import pwd
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.errors import BuildError, InstallError, ProvisioningError
from service_deployer.deploy.pipeline import Pipeline, PipelineReport
from service_deployer.deploy.runner import CommandRunner
from service_deployer.logging_utils import format_error_log, get_log_extra
from service_deployer.utils.config_manager import DeployConfig
from service_deployer.utils.toolchain_installer import ToolchainInstaller

logger = logging.getLogger(__name__)

HOSTNAME_FILE = Path("/etc/hostname")
NOLOGIN_SHELL = "/usr/sbin/nologin"


def _file_digest(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


class BuildInstallManager:
    """Reconciles one host to run the freshly built service."""

    def __init__(
        self,
        config: DeployConfig,
        domain: str,
        runner: Optional[CommandRunner] = None,
        toolchain: Optional[ToolchainInstaller] = None,
        home_dir: Optional[Path] = None,
        hostname_file: Path = HOSTNAME_FILE,
    ):
        """
        Args:
            config: Deploy configuration
            domain: Host identity to set
            runner: Command runner (defaults to local execution)
            toolchain: Toolchain installer (built from config when omitted)
            home_dir: Home directory of the deploying user (defaults to Path.home())
            hostname_file: File holding the static hostname
        """
        self.config = config
        self.domain = domain
        self.runner = runner or CommandRunner(timeout=config.command_timeout)
        self.toolchain = toolchain or ToolchainInstaller(
            marker_path=config.toolchain_marker_path,
            installer_url=config.toolchain_installer_url,
            installer_args=config.toolchain_installer_args,
            runner=self.runner,
        )
        self.home_dir = home_dir if home_dir is not None else Path.home()
        self.hostname_file = hostname_file
        self.build_env: Optional[Dict[str, str]] = None

    def disable_login_banner(self) -> bool:
        """Silence login banners and messages of the day."""
        hushlogin = self.home_dir / ".hushlogin"
        if hushlogin.exists():
            return False
        hushlogin.touch()
        return True

    def set_hostname(self) -> bool:
        """Set the host identity to the deploy domain."""
        try:
            current = self.hostname_file.read_text().strip()
        except FileNotFoundError:
            current = ""

        if current == self.domain:
            return False

        self.runner.run(["hostnamectl", "set-hostname", self.domain])
        logger.info(
            f"Hostname changed from '{current}' to '{self.domain}'",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def _missing_packages(self) -> List[str]:
        missing = []
        for package in self.config.packages:
            result = self.runner.run(
                ["dpkg-query", "-W", "-f=${Status}", package], check=False
            )
            if not (result.ok and "install ok installed" in result.stdout):
                missing.append(package)
        return missing

    def install_packages(self) -> bool:
        """Install the OS packages the build needs, skipping those present."""
        missing = self._missing_packages()
        if not missing:
            return False

        logger.info(
            f"Installing packages: {' '.join(missing)}",
            extra={"correlation_id": get_correlation_id()},
        )
        self.runner.run(
            ["apt-get", "install", "--yes", *missing],
            env={**os.environ, "DEBIAN_FRONTEND": "noninteractive"},
        )
        return True

    def ensure_toolchain(self) -> bool:
        """Install the language toolchain only if its environment marker is absent."""
        return self.toolchain.install()

    def load_toolchain_env(self) -> bool:
        """Source the toolchain environment for the build."""
        self.build_env = self.toolchain.load_environment()
        return False

    def build_release(self) -> bool:
        """Compile the release artifact from the reset working tree.

        Raises:
            BuildError: The build command failed or produced no artifact
        """
        self.runner.run(
            self.config.build_command,
            cwd=self.config.clone_path,
            env=self.build_env,
        )

        artifact = self.config.artifact_file
        if not artifact.is_file():
            raise BuildError(f"Build succeeded but artifact {artifact} is missing")
        return True

    def install_binary(self) -> bool:
        """Swap in the new artifact, keeping the previous binary as the backup.

        The new binary is staged next to the install path first, so the
        current binary is only moved aside once a complete copy is in place.

        Returns:
            True if the installed binary's content changed
        """
        artifact = self.config.artifact_file
        install_path = self.config.install_path
        backup_path = self.config.backup_path
        staged_path = install_path.with_name(f".{install_path.name}.new")

        previous_digest = _file_digest(install_path)
        install_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(artifact, staged_path)

        if install_path.exists():
            os.replace(install_path, backup_path)
            logger.info(
                f"Backed up {install_path} to {backup_path}",
                extra={"correlation_id": get_correlation_id()},
            )

        os.replace(staged_path, install_path)
        new_digest = _file_digest(install_path)

        logger.info(
            f"Installed {install_path} (sha256 {new_digest[:12]})",
            extra={"correlation_id": get_correlation_id()},
        )
        return new_digest != previous_digest

    def ensure_service_account(self) -> bool:
        """Create the unprivileged service account unless it already exists."""
        name = self.config.account_name
        try:
            pwd.getpwnam(name)
            return False
        except KeyError:
            pass

        self.runner.run(
            ["useradd", "--system", "--no-create-home", "--shell", NOLOGIN_SHELL, name]
        )
        logger.info(
            f"Created service account {name}",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def install_service_unit(self) -> bool:
        """Install the unit file, reload systemd, enable and restart the service.

        Raises:
            InstallError: Unit file missing from the clone
        """
        source = self.config.unit_source_path
        target = self.config.unit_path
        service = self.config.service_name

        if not source.is_file():
            logger.error(
                format_error_log(
                    "DEPLOY-INSTALL-001", "Service unit not found in clone", path=source
                ),
                extra=get_log_extra("DEPLOY-INSTALL-001"),
            )
            raise InstallError(f"Service unit {source} not found")

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

        self.runner.run(["systemctl", "daemon-reload"])
        self.runner.run(["systemctl", "enable", service])
        self.runner.run(["systemctl", "restart", service])
        logger.info(
            f"Service {service} enabled and restarted",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def build_pipeline(self) -> Pipeline:
        return (
            Pipeline("install")
            .add("disable-login-banner", self.disable_login_banner, ProvisioningError)
            .add("set-hostname", self.set_hostname, ProvisioningError)
            .add("install-packages", self.install_packages, ProvisioningError)
            .add("ensure-toolchain", self.ensure_toolchain, ProvisioningError)
            .add("load-toolchain-env", self.load_toolchain_env, ProvisioningError)
            .add("build-release", self.build_release, BuildError)
            .add("install-binary", self.install_binary, InstallError)
            .add("ensure-service-account", self.ensure_service_account, InstallError)
            .add("install-service-unit", self.install_service_unit, InstallError)
        )

    def execute(self) -> PipelineReport:
        """Run every step in order, stopping at the first failure."""
        logger.info(
            f"Starting build and install for {self.domain}",
            extra={"correlation_id": get_correlation_id()},
        )
        return self.build_pipeline().run()
