"""Command-line interface."""

from lumen.cli.app import app

__all__ = ["app"]
