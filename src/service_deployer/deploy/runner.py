"""Command runners: local subprocess execution and SSH/rsync to a target host."""

import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, Union

from service_deployer.correlation import get_correlation_id
from service_deployer.deploy.errors import CommandError, TransportError
from service_deployer.logging_utils import format_error_log, get_log_extra, sanitize_command

logger = logging.getLogger(__name__)

# ssh reserves 255 for its own failures (unreachable host, auth refused)
SSH_TRANSPORT_EXIT_CODE = 255
# rsync codes for connection and protocol level failures
RSYNC_TRANSPORT_EXIT_CODES = {5, 10, 12, 30, 35, 255}


@dataclass
class CommandResult:
    """Outcome of one command."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


class CommandRunner:
    """Runs commands on the local machine via subprocess.run."""

    def __init__(self, timeout: Optional[int] = None):
        """
        Args:
            timeout: Per-command timeout in seconds (None waits indefinitely)
        """
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            args: Command and arguments
            cwd: Working directory
            env: Full environment for the child (None inherits ours)
            input: Text fed to stdin
            check: Raise CommandError on non-zero exit

        Returns:
            CommandResult with captured stdout/stderr

        Raises:
            CommandError: Command failed (check=True), was not found, or timed out
        """
        args = [str(a) for a in args]
        logger.debug(
            f"Running: {shlex.join(sanitize_command(args))}",
            extra={"correlation_id": get_correlation_id()},
        )

        try:
            completed = subprocess.run(
                args,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                input=input,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except FileNotFoundError:
            raise CommandError(
                f"Command not found: {args[0]}", command=args, exit_code=127
            )
        except subprocess.TimeoutExpired:
            raise CommandError(
                f"Command timed out after {self.timeout}s: {args[0]}",
                command=args,
                exit_code=124,
            )

        result = CommandResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

        if check and not result.ok:
            self._raise_for_result(result)

        return result

    def stream(
        self,
        args: Sequence[str],
        on_line: Callable[[str], None],
        cwd: Optional[Union[str, Path]] = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command, handing each output line to on_line as it arrives.

        stderr is merged into stdout so lines keep their order. The timeout
        applies to the whole run and is only checked once output ends.

        Raises:
            CommandError: Command failed (check=True), was not found, or timed out
        """
        args = [str(a) for a in args]
        logger.debug(
            f"Streaming: {shlex.join(sanitize_command(args))}",
            extra={"correlation_id": get_correlation_id()},
        )

        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            raise CommandError(
                f"Command not found: {args[0]}", command=args, exit_code=127
            )

        lines = []
        with proc:
            for line in proc.stdout:
                lines.append(line)
                on_line(line.rstrip("\n"))
            try:
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                raise CommandError(
                    f"Command timed out after {self.timeout}s: {args[0]}",
                    command=args,
                    exit_code=124,
                )

        result = CommandResult(args=args, returncode=returncode, stdout="".join(lines))

        if check and not result.ok:
            self._raise_for_result(result)

        return result

        return result

    def _raise_for_result(self, result: CommandResult) -> None:
        raise CommandError(
            f"Command failed with exit code {result.returncode}: "
            f"{shlex.join(sanitize_command(result.args))}",
            command=result.args,
            exit_code=result.returncode,
            output=result.output,
        )


class SSHRunner(CommandRunner):
    """Runs commands on a target host over ssh and copies files with rsync."""

    def __init__(
        self,
        domain: str,
        user: str = "root",
        ssh_options: Optional[Sequence[str]] = None,
        timeout: Optional[int] = None,
    ):
        """
        Args:
            domain: Target host name
            user: Remote login user
            ssh_options: Extra ssh arguments, e.g. ["-o", "BatchMode=yes"]
            timeout: Per-command timeout in seconds
        """
        super().__init__(timeout=timeout)
        self.domain = domain
        self.user = user
        self.ssh_options = list(ssh_options or [])

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.domain}"

    def ssh_command(self, remote_command: str) -> List[str]:
        return ["ssh", *self.ssh_options, self.destination, remote_command]

    def run_remote(
        self,
        remote_command: Union[str, Sequence[str]],
        check: bool = True,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> CommandResult:
        """Run a shell command on the target host.

        Args:
            remote_command: Shell string, or an argument list that is quoted
            check: Raise on non-zero exit
            on_output: Called with each output line while the command runs;
                output is captured at the end when omitted

        Raises:
            TransportError: ssh itself failed (exit 255)
            CommandError: The remote command failed
        """
        if not isinstance(remote_command, str):
            remote_command = shlex.join(remote_command)

        ssh_args = self.ssh_command(remote_command)
        if on_output is None:
            result = self.run(ssh_args, check=False)
        else:
            result = self.stream(ssh_args, on_output, check=False)

        if result.returncode == SSH_TRANSPORT_EXIT_CODE:
            logger.error(
                format_error_log(
                    "DEPLOY-TRANSPORT-001",
                    f"Could not reach {self.destination}",
                    output=result.output,
                ),
                extra=get_log_extra("DEPLOY-TRANSPORT-001"),
            )
            raise TransportError(
                f"ssh to {self.destination} failed",
                command=result.args,
                exit_code=result.returncode,
                output=result.output,
            )

        if check and not result.ok:
            self._raise_for_result(result)

        return result

    def rsync(
        self,
        source: Union[str, Path],
        remote_path: str,
        delete: bool = True,
        excludes: Sequence[str] = (),
    ) -> CommandResult:
        """Copy a local file or directory to the target host.

        Raises:
            TransportError: Connection-level rsync failure
            CommandError: Any other rsync failure
        """
        ssh_shell = shlex.join(["ssh", *self.ssh_options])
        args = ["rsync", "-az", "-e", ssh_shell]
        if delete:
            args.append("--delete")
        for pattern in excludes:
            args += ["--exclude", pattern]
        args += [str(source), f"{self.destination}:{remote_path}"]

        result = self.run(args, check=False)

        if result.returncode in RSYNC_TRANSPORT_EXIT_CODES:
            raise TransportError(
                f"rsync to {self.destination} failed",
                command=result.args,
                exit_code=result.returncode,
                output=result.output,
            )

        if not result.ok:
            self._raise_for_result(result)

        return result
