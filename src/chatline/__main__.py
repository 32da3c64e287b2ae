"""CLI entrypoint for chatline."""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path

from .config import ensure_config_dir, load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatline",
        description="chatline - terminal client for a hosted AI chat backend",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to an alternative config.toml",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """Ensure configuration exists, handle CLI flags, and run the TUI."""
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("chatline")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"chatline {version}")
        return

    ensure_config_dir()
    from .app import ChatlineApp

    app = ChatlineApp(config=load_config(args.config))
    app.run()


if __name__ == "__main__":
    main()
