"""
Language toolchain installation for the build host.

Installs the toolchain (rustup by default) only when its environment marker
file is missing, so re-running a deploy never reinitializes an existing
toolchain, and loads the marker into an environment mapping for later build
commands.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import requests

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.errors import ProvisioningError
from service_deployer.deploy.runner import CommandRunner
from service_deployer.logging_utils import format_error_log, get_log_extra

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60


class ToolchainInstaller:
    """Idempotent toolchain bootstrap guarded by an environment marker file."""

    def __init__(
        self,
        marker_path: Path,
        installer_url: str,
        installer_args: Optional[List[str]] = None,
        runner: Optional[CommandRunner] = None,
    ):
        """
        Args:
            marker_path: File the installer creates, e.g. ~/.cargo/env
            installer_url: URL of the bootstrap shell script
            installer_args: Arguments for the script (non-interactive flags)
            runner: Command runner (defaults to local execution)
        """
        self.marker_path = marker_path
        self.installer_url = installer_url
        self.installer_args = list(installer_args or [])
        self.runner = runner or CommandRunner()

    def is_installed(self) -> bool:
        return self.marker_path.exists()

    def _download_installer(self, dest_path: Path) -> None:
        """Download the bootstrap script.

        Raises:
            ProvisioningError: Download failed
        """
        try:
            response = requests.get(self.installer_url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise ProvisioningError(
                f"Could not download toolchain installer from {self.installer_url}: {e}"
            )

        dest_path.write_text(response.text)

    def install(self) -> bool:
        """Install the toolchain unless the marker file already exists.

        Returns:
            True if the toolchain was installed, False if already present

        Raises:
            ProvisioningError: Download or installer run failed, or the
                installer finished without creating the marker
        """
        if self.is_installed():
            logger.info(
                f"Toolchain already installed ({self.marker_path})",
                extra={"correlation_id": get_correlation_id()},
            )
            return False

        logger.info(
            f"Installing toolchain from {self.installer_url}",
            extra={"correlation_id": get_correlation_id()},
        )

        temp_dir = tempfile.mkdtemp()
        try:
            script_path = Path(temp_dir) / "toolchain-installer.sh"
            self._download_installer(script_path)
            self.runner.run(["sh", str(script_path), *self.installer_args])
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        if not self.is_installed():
            logger.error(
                format_error_log(
                    "DEPLOY-TOOLCHAIN-001",
                    "Toolchain installer finished but marker file is missing",
                    marker=self.marker_path,
                ),
                extra=get_log_extra("DEPLOY-TOOLCHAIN-001"),
            )
            raise ProvisioningError(
                f"Toolchain marker {self.marker_path} missing after installation"
            )

        return True

    def load_environment(self, base_env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Source the marker file in a shell and capture the resulting environment.

        Args:
            base_env: Environment to start from (defaults to os.environ)

        Returns:
            Environment mapping with the toolchain on PATH

        Raises:
            ProvisioningError: Marker is missing
            CommandError: Sourcing the marker failed
        """
        if not self.is_installed():
            raise ProvisioningError(f"Toolchain marker {self.marker_path} not found")

        env = dict(os.environ if base_env is None else base_env)
        result = self.runner.run(
            ["sh", "-c", '. "$0" && env -0', str(self.marker_path)],
            env=env,
        )

        loaded = {}
        for entry in result.stdout.split("\0"):
            name, sep, value = entry.partition("=")
            if sep and name:
                loaded[name] = value
        return loaded
