"""CheckoutManager - pins the host's clone to the tip of a remote branch."""

import logging
from typing import Optional

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.build_install_manager import BuildInstallManager
from service_deployer.deploy.errors import SourceControlError
from service_deployer.deploy.pipeline import Pipeline, PipelineReport
from service_deployer.deploy.runner import CommandRunner
from service_deployer.utils.config_manager import DeployConfig

logger = logging.getLogger(__name__)


class CheckoutManager:
    """Ensures a clone exists and is hard-reset to origin/<branch>.

    Local modifications and divergent commits are discarded unconditionally,
    so the working tree always matches the fetched branch tip and no merge can
    conflict. On success the Build & Install Manager runs for the domain.
    """

    def __init__(
        self,
        config: DeployConfig,
        branch: str,
        domain: str,
        runner: Optional[CommandRunner] = None,
        installer: Optional[BuildInstallManager] = None,
    ):
        """
        Args:
            config: Deploy configuration
            branch: Remote branch to deploy
            domain: Target domain, handed to the Build & Install Manager
            runner: Command runner (defaults to local execution)
            installer: Build & Install Manager (built from config when omitted)
        """
        self.config = config
        self.branch = branch
        self.domain = domain
        self.runner = runner or CommandRunner(timeout=config.command_timeout)
        self.installer = installer or BuildInstallManager(
            config, domain, runner=self.runner
        )
        self.repo_path = config.clone_path
        self._head_before: Optional[str] = None

    @property
    def remote_ref(self) -> str:
        return f"origin/{self.branch}"

    def _git(self, *args: str, check: bool = True):
        return self.runner.run(["git", *args], cwd=self.repo_path, check=check)

    def _rev_parse(self, ref: str) -> str:
        return self._git("rev-parse", "--verify", f"{ref}^{{commit}}").stdout.strip()

    def ensure_clone(self) -> bool:
        """Clone the repository if no clone exists yet."""
        if (self.repo_path / ".git").exists():
            self._head_before = self._git("rev-parse", "HEAD", check=False).stdout.strip() or None
            return False

        self.repo_path.parent.mkdir(parents=True, exist_ok=True)
        self.runner.run(
            ["git", "clone", self.config.repository_url, str(self.repo_path)]
        )
        logger.info(
            f"Cloned repository into {self.repo_path}",
            extra={"correlation_id": get_correlation_id()},
        )
        return True

    def fetch(self) -> bool:
        """Fetch all refs from origin.

        Returns:
            True if the fetch updated any ref
        """
        result = self._git("fetch", "--prune", "origin")
        # git fetch reports ref updates on stderr and stays silent when current
        return bool(result.stderr.strip())

    def checkout_branch(self) -> bool:
        """Create or reset the local branch named after the input branch onto origin's copy."""
        current = self._git("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        self._git("checkout", "--force", "-B", self.branch, self.remote_ref)
        return current.stdout.strip() != self.branch

    def reset_to_remote(self) -> bool:
        """Hard-reset the working tree to the remote tip and verify HEAD.

        Untracked files and directories are removed as well. Ignored paths
        such as the build cache are kept.

        Raises:
            SourceControlError: HEAD does not equal the remote tip afterwards
        """
        self._git("reset", "--hard", self.remote_ref)
        cleaned = self._git("clean", "-fd").stdout.strip()

        head = self._rev_parse("HEAD")
        tip = self._rev_parse(self.remote_ref)
        if head != tip:
            raise SourceControlError(
                f"HEAD {head[:12]} does not match {self.remote_ref} {tip[:12]} after reset"
            )

        logger.info(
            f"Checked out {self.branch} at {head[:12]}",
            extra={"correlation_id": get_correlation_id()},
        )
        return head != self._head_before or bool(cleaned)

    def build_pipeline(self) -> Pipeline:
        return (
            Pipeline("checkout")
            .add("clone-repository", self.ensure_clone, SourceControlError)
            .add("fetch-origin", self.fetch, SourceControlError)
            .add("checkout-branch", self.checkout_branch, SourceControlError)
            .add("reset-to-remote", self.reset_to_remote, SourceControlError)
        )

    def execute(self) -> PipelineReport:
        """Pin the clone to the branch tip, then build and install.

        Returns:
            Report covering checkout steps and, when checkout succeeded, the
            Build & Install Manager's steps
        """
        logger.info(
            f"Starting checkout of {self.branch} for {self.domain}",
            extra={"correlation_id": get_correlation_id()},
        )
        report = self.build_pipeline().run()

        if not report.success:
            return report

        install_report = self.installer.execute()
        report.extend(install_report)
        report.finished_at = install_report.finished_at
        return report

