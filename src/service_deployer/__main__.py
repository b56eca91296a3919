"""Entry point for ``python -m service_deployer``."""

from service_deployer.cli import cli

if __name__ == "__main__":
    cli()
