import asyncio
import logging

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from .core import build_container_handle
from .errors import EphemeralDbError
from .models import Settings, parse_bool
from .services.config_loader import ConfigLoader
from .services.database import DatabaseProvisioner

console = Console()


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _build_services(settings):
    logger = logging.getLogger("ephemeraldb")
    provisioner = DatabaseProvisioner.from_settings(settings, logger)
    container = build_container_handle(settings, provisioner)
    return provisioner, container


@click.group()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .ephemeraldb.yml if present.",
)
@click.option("--container-name", required=False, help="Name of the shared SQL Server container.")
@click.option("--host-port", required=False, type=int, help="Host port mapped to SQL Server.")
@click.option("--startup-timeout", required=False, type=float, help="Seconds to wait for readiness.")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, config, container_name, host_port, startup_timeout, verbose, log_file):
    """Manage the shared SQL Server container and its test databases."""
    logger = logging.getLogger("ephemeraldb")
    config_loader = ConfigLoader()

    try:
        config_values = config_loader.load(config_loader.resolve_path(config))
        settings = Settings.from_mapping(
            {
                **config_values,
                "container_name": _resolve_option(container_name, config_values, "container_name"),
                "host_port": _resolve_option(host_port, config_values, "host_port"),
                "startup_timeout": _resolve_option(startup_timeout, config_values, "startup_timeout"),
            }
        )
        verbose = parse_bool(_resolve_option(verbose, config_values, "verbose", default=False))
    except EphemeralDbError as exc:
        raise click.ClickException(str(exc)) from exc
    log_file = _resolve_option(log_file, config_values, "log_file")

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    ctx.obj = {"settings": settings}


@main.command()
@click.pass_obj
def up(obj):
    """Start the shared container (or reuse it) and wait until it is ready."""
    settings = obj["settings"]
    _, container = _build_services(settings)

    try:
        asyncio.run(
            container.ensure_started(
                timeout=settings.startup_timeout,
                poll_interval=settings.poll_interval,
            )
        )
    except EphemeralDbError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(
        f"[green]{settings.container_name} is ready on {settings.host}:{settings.host_port}.[/green]"
    )


@main.command()
@click.pass_obj
def status(obj):
    """Show the derived state of the shared container."""
    settings = obj["settings"]
    _, container = _build_services(settings)

    try:
        state = asyncio.run(container.inspect_state())
    except EphemeralDbError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"{settings.container_name}: [bold]{state.value}[/bold]")


@main.command(name="list")
@click.pass_obj
def list_databases(obj):
    """List test databases created with the configured prefix."""
    settings = obj["settings"]
    provisioner, _ = _build_services(settings)

    try:
        names = provisioner.list_databases(settings.database_prefix)
    except SQLAlchemyError as exc:
        raise click.ClickException(f"Could not list databases: {exc}") from exc
    finally:
        provisioner.close()

    if not names:
        console.print("[dim]No test databases found.[/dim]")
        return

    table = Table(title=f"Databases in {settings.container_name}")
    table.add_column("Name")
    for name in names:
        table.add_row(name)
    console.print(table)


@main.command()
@click.option("--yes", is_flag=True, help="Drop without asking for confirmation.")
@click.pass_obj
def prune(obj, yes):
    """Drop every test database left behind, e.g. retained ones."""
    settings = obj["settings"]
    provisioner, _ = _build_services(settings)

    try:
        names = provisioner.list_databases(settings.database_prefix)
        if not names:
            console.print("[dim]Nothing to prune.[/dim]")
            return

        if not yes:
            click.confirm(f"Drop {len(names)} database(s)?", abort=True)

        failures = []
        for name in names:
            try:
                provisioner.drop(name)
                console.print(f"[green]Dropped {name}[/green]")
            except EphemeralDbError as exc:
                failures.append(name)
                console.print(f"[red]{exc}[/red]")
    except SQLAlchemyError as exc:
        raise click.ClickException(f"Could not list databases: {exc}") from exc
    finally:
        provisioner.close()

    if failures:
        raise click.ClickException(f"{len(failures)} database(s) could not be dropped.")


@main.command()
@click.option("--yes", is_flag=True, help="Remove without asking for confirmation.")
@click.pass_obj
def down(obj, yes):
    """Stop and remove the shared container and every database in it."""
    settings = obj["settings"]
    _, container = _build_services(settings)

    if not yes:
        click.confirm(f"Remove container {settings.container_name}?", abort=True)

    try:
        asyncio.run(container.remove())
    except EphemeralDbError as exc:
        raise click.ClickException(str(exc)) from exc

    console.print(f"[green]Removed {settings.container_name}.[/green]")


if __name__ == "__main__":
    main()
