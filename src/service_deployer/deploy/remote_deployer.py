"""RemoteDeployer - the operator-side ``deploy BRANCH DOMAIN`` command.

Prepares the target host, ships this package to it and runs the checkout
there in a single blocking ssh round-trip.
"""

import logging
import shlex
from pathlib import Path
from typing import Callable, Dict, Optional

import service_deployer
from service_deployer.correlation import CORRELATION_ENV_VAR, get_correlation_id
from service_deployer.deploy.errors import ProvisioningError
from service_deployer.deploy.pipeline import Pipeline, PipelineReport
from service_deployer.deploy.runner import CommandResult, SSHRunner
from service_deployer.utils.config_manager import DeployConfig

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(service_deployer.__file__).resolve().parent
TRANSFER_EXCLUDES = ("__pycache__", "*.pyc")


def _with_env(env: Dict[str, str], command: str) -> str:
    if not env:
        return command
    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in sorted(env.items()))
    return f"{assignments} {command}"


class RemoteDeployer:
    """Drives one deploy of one branch to one host."""

    def __init__(
        self,
        config: DeployConfig,
        branch: str,
        domain: str,
        runner: Optional[SSHRunner] = None,
        package_dir: Path = PACKAGE_DIR,
        on_output: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            config: Deploy configuration
            branch: Remote branch to deploy
            domain: Target host
            runner: SSH runner (built from config when omitted)
            package_dir: Package directory copied to the host
            on_output: Receives the remote checkout's output line by line
        """
        self.config = config
        self.branch = branch
        self.domain = domain
        self.runner = runner or SSHRunner(
            domain,
            user=config.ssh_user,
            ssh_options=config.ssh_options,
            timeout=config.command_timeout,
        )
        self.package_dir = package_dir
        self.on_output = on_output
        self.remote_output: Optional[CommandResult] = None

    def prepare_host_command(self) -> str:
        staging = shlex.quote(self.config.staging_dir)
        packages = shlex.join(self.config.baseline_packages)
        apt = "DEBIAN_FRONTEND=noninteractive apt-get"
        return (
            f"mkdir -p {staging}"
            f" && {apt} update --yes"
            f" && {apt} upgrade --yes"
            f" && {apt} install --yes {packages}"
        )

    def checkout_command(self) -> str:
        env = self.config.to_env()
        correlation_id = get_correlation_id()
        if correlation_id:
            env[CORRELATION_ENV_VAR] = correlation_id

        checkout = _with_env(
            env,
            shlex.join(
                ["python3", "-u", "-m", "service_deployer", "checkout", self.branch, self.domain]
            ),
        )
        return f"cd {shlex.quote(self.config.staging_dir)} && {checkout}"

    def prepare_host(self) -> bool:
        """Create the staging directory and install baseline packages."""
        self.runner.run_remote(self.prepare_host_command())
        return True

    def transfer_deployer(self) -> bool:
        """Copy this package into the staging directory on the host."""
        self.runner.rsync(
            self.package_dir,
            f"{self.config.staging_dir}/",
            excludes=TRANSFER_EXCLUDES,
        )
        return True

    def run_checkout(self) -> bool:
        """Run the Checkout Manager on the host and wait for it to finish."""
        logger.info(
            f"Running remote checkout of {self.branch} on {self.domain}",
            extra={"correlation_id": get_correlation_id()},
        )
        self.remote_output = self.runner.run_remote(
            self.checkout_command(), on_output=self.on_output
        )
        return True

    def build_pipeline(self) -> Pipeline:
        return (
            Pipeline("deploy")
            .add("prepare-host", self.prepare_host, ProvisioningError)
            .add("transfer-deployer", self.transfer_deployer)
            .add("run-checkout", self.run_checkout)
        )

    def execute(self) -> PipelineReport:
        return self.build_pipeline().run()
