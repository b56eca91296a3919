"""service-deploy command line.

Commands:
    init                    write a default config file to edit
    deploy BRANCH DOMAIN    operator side: prepare host, ship deployer, run checkout
    checkout BRANCH DOMAIN  on the host: pin the clone to the branch tip, then install
    install DOMAIN          on the host: provision, build, swap binary, reconcile service
    status                  on the host: show the last recorded run
"""

import sys

import click
from rich.console import Console
from rich.markup import escape

from service_deployer import __version__
from service_deployer.cli_utils import build_step_table, format_json_error, format_json_success
from service_deployer.correlation import set_correlation_id
from service_deployer.deploy.build_install_manager import BuildInstallManager
from service_deployer.deploy.checkout_manager import CheckoutManager
from service_deployer.deploy.pipeline import PipelineReport
from service_deployer.deploy.remote_deployer import RemoteDeployer
from service_deployer.deploy.status import DeploymentStatus
from service_deployer.logging_utils import configure_logging, sanitize_command
from service_deployer.utils.config_manager import ConfigManager, DeployConfig

console = Console()


def _load_config(config_manager: ConfigManager) -> DeployConfig:
    """Load the effective configuration and set up logging for this run.

    Raises:
        click.ClickException: If the config file or a setting is invalid
    """
    try:
        config = config_manager.get_config()
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")

    configure_logging(config.log_level)
    set_correlation_id()
    return config


def _print_report(report: PipelineReport) -> None:
    """Print the step table and, on failure, the failing command and its output."""
    console.print(build_step_table([step.to_dict() for step in report.steps], title=report.name))

    failed = report.failed_step
    if failed is None:
        console.print(f"[green]{report.name} completed[/green]")
        return

    error = failed.error
    console.print(f"[red]Error: {escape(error.message if error else failed.name)}[/red]")
    if error is not None and error.command:
        console.print(f"[dim]Command:[/dim] {escape(' '.join(sanitize_command(error.command)))}")
    if error is not None and error.output:
        console.print(escape(error.output))
    if report.pending_steps:
        console.print(
            f"[yellow]Re-run to resume from:[/yellow] {', '.join(report.pending_steps)}"
        )


@click.group()
@click.version_option(__version__, prog_name="service-deploy")
@click.pass_context
def cli(ctx):
    """Provision and redeploy a compiled service onto a remote host."""
    ctx.obj = ConfigManager()


@cli.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
@click.pass_obj
def init_command(config_manager: ConfigManager, force: bool):
    """Write the default configuration to the config directory."""
    path = config_manager.config_file_path
    if path.exists() and not force:
        console.print(f"[red]Error: config file already exists (use --force): {path}[/red]")
        sys.exit(1)

    config_manager.save_config(config_manager.create_default_config())
    console.print(f"[green]Wrote default configuration to {path}[/green]")


@cli.command("deploy")
@click.argument("branch")
@click.argument("domain")
@click.pass_obj
def deploy_command(config_manager: ConfigManager, branch: str, domain: str):
    """Deploy BRANCH to the host at DOMAIN over ssh."""
    config = _load_config(config_manager)

    deployer = RemoteDeployer(
        config,
        branch,
        domain,
        on_output=lambda line: console.print(line, markup=False, highlight=False),
    )
    report = deployer.execute()

    _print_report(report)
    sys.exit(report.exit_code)


@cli.command("checkout")
@click.argument("branch")
@click.argument("domain")
@click.pass_obj
def checkout_command(config_manager: ConfigManager, branch: str, domain: str):
    """Pin the clone to origin/BRANCH, then build and install for DOMAIN."""
    config = _load_config(config_manager)

    report = CheckoutManager(config, branch, domain).execute()
    DeploymentStatus(config_manager.config_dir).write(report, branch=branch, domain=domain)

    _print_report(report)
    sys.exit(report.exit_code)


@cli.command("install")
@click.argument("domain")
@click.pass_obj
def install_command(config_manager: ConfigManager, domain: str):
    """Provision the host, build the release and install it for DOMAIN."""
    config = _load_config(config_manager)

    report = BuildInstallManager(config, domain).execute()
    DeploymentStatus(config_manager.config_dir).write(report, domain=domain)

    _print_report(report)
    sys.exit(report.exit_code)


@cli.command("status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status_command(config_manager: ConfigManager, json_output: bool):
    """Show the outcome of the last checkout or install run on this host."""
    status_data = DeploymentStatus(config_manager.config_dir).read()

    if status_data is None:
        msg = "No deployment recorded on this host"
        if json_output:
            click.echo(format_json_error(msg, "NotFound"))
        else:
            console.print(f"[yellow]{msg}[/yellow]")
        sys.exit(1)

    if json_output:
        click.echo(format_json_success(status_data))
        return

    status = status_data.get("status", "unknown")
    color = "green" if status == "success" else "red"
    console.print(f"[bold]Status:[/bold] [{color}]{status}[/{color}]")
    for key in ("branch", "domain", "timestamp", "version", "correlation_id"):
        if status_data.get(key):
            console.print(f"[dim]{key}:[/dim] {status_data[key]}")
    console.print(f"[dim]details:[/dim] {escape(status_data.get('details', ''))}")
    console.print(build_step_table(status_data.get("steps", [])))


def main():
    cli()


if __name__ == "__main__":
    main()
