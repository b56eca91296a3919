"""Deploy error taxonomy, grouped by where a failure originates."""

from typing import Optional, Sequence


class DeployError(Exception):
    """Base class for deploy failures.

    Carries the failing command and its raw status and output, which are the
    only diagnostics surfaced to the operator.
    """

    category = "deploy"

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        exit_code: int = 1,
        output: str = "",
    ):
        super().__init__(message)
        self.message = message
        self.command = list(command) if command else None
        self.exit_code = exit_code or 1
        self.output = output

    @classmethod
    def from_error(cls, error: "DeployError", message: Optional[str] = None):
        """Re-raise an error under this category, keeping command, code and output."""
        return cls(
            message or error.message,
            command=error.command,
            exit_code=error.exit_code,
            output=error.output,
        )


class CommandError(DeployError):
    """A command exited non-zero or could not be started."""

    category = "command"


class TransportError(DeployError):
    """The target host could not be reached or authenticated with."""

    category = "transport"


class SourceControlError(DeployError):
    """Clone, fetch, checkout or reset failed."""

    category = "source-control"


class ProvisioningError(DeployError):
    """Host identity, package or toolchain setup failed."""

    category = "provisioning"


class BuildError(DeployError):
    """Compiling the release artifact failed."""

    category = "build"


class InstallError(DeployError):
    """Binary swap, service account or service unit reconciliation failed."""

    category = "install"
