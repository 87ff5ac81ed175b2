"""Typer-based CLI wiring."""
from __future__ import annotations

import asyncio
import importlib
from pathlib import Path
from typing import Any, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from lumen.core.config import ConfigManager, RuntimeSettings
from lumen.core.plugin import discover_plugins
from lumen.runtime.actor import is_normal_exit
from lumen.runtime.lifecycle import run_application
from lumen.terminal.backends import backend as selected_backend
from lumen.utils.errors import LumenError
from lumen.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

app = typer.Typer(help="Lumen terminal application runtime")
console = Console(stderr=True)


def load_app(target: str) -> Any:
    """Import ``module:attr`` and return the application object.

    Classes are instantiated; modules may be given without an attribute.
    """

    module_name, _, attr = target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"cannot import {module_name}: {exc}") from exc
    obj: Any = module
    for part in filter(None, attr.split(".")):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise typer.BadParameter(f"{module_name} has no attribute {attr}") from exc
    return obj() if isinstance(obj, type) else obj


def _load_settings(config: Optional[Path], log_level: Optional[str], debug: bool) -> RuntimeSettings:
    try:
        settings = asyncio.run(ConfigManager(config).load())
    except LumenError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=2) from exc
    level = log_level or ("DEBUG" if debug else settings.logging.level)
    configure_logging(level=level, log_dir=settings.logging.log_dir, console=settings.logging.console)
    return settings


def _run(application: Any, settings: RuntimeSettings, **options: Any) -> None:
    try:
        reason = asyncio.run(run_application(application, settings=settings, **options))
    except LumenError as exc:
        logger.error("application failed to start: %s", exc)
        console.print(f"[red]Startup failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:
        raise typer.Exit(code=130)
    if not is_normal_exit(reason):
        console.print(f"[red]Application terminated:[/red] {reason}")
        raise typer.Exit(code=1)


@app.command()
def run(
    target: str = typer.Argument(..., help="Application as module:attribute"),
    width: Optional[int] = typer.Option(None, "--width", help="Initial width"),
    height: Optional[int] = typer.Option(None, "--height", help="Initial height"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug mode"),
    no_driver: bool = typer.Option(False, "--no-driver", help="Run without the terminal driver"),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML or TOML configuration file"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the log level"),
) -> None:
    """Run an application until it shuts down."""

    settings = _load_settings(config, log_level, debug)
    application = load_app(target)
    _run(
        application,
        settings,
        width=width,
        height=height,
        debug=debug or None,
        terminal_driver=False if no_driver else None,
    )


@app.command()
def demo(
    start: int = typer.Option(0, "--start", help="Initial counter value"),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML or TOML configuration file"),
) -> None:
    """Run the bundled counter application."""

    from lumen.demo import CounterApp

    settings = _load_settings(config, None, False)
    _run(CounterApp(), settings, start=start)


@app.command()
def backend() -> None:
    """Print the terminal backend selected for this platform."""

    typer.echo(selected_backend())


@app.command()
def plugins(
    path: List[Path] = typer.Option([], "--path", help="Plugin directory (repeatable)"),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML or TOML configuration file"),
) -> None:
    """List plugins discoverable in the configured directories."""

    paths = list(path)
    if not paths:
        try:
            paths = list(asyncio.run(ConfigManager(config).load()).plugins.paths)
        except LumenError as exc:
            console.print(f"[red]Configuration error:[/red] {exc}")
            raise typer.Exit(code=2) from exc
    found = discover_plugins(paths)
    if not found:
        typer.echo("No plugins found")
        return
    table = Table(title="Plugins")
    table.add_column("Name")
    table.add_column("Path")
    for name, location in sorted(found.items()):
        table.add_row(name, str(location))
    Console().print(table)


__all__ = ["app", "load_app"]
