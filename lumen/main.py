"""Console-script entry point."""
from __future__ import annotations

from lumen.cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main()
