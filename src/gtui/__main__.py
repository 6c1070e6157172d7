"""CLI entry point for gtui."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from . import __version__
from .config import AppConfig, load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gtui", description="gtui - a terminal chat UI for gro")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-m", "--model", dest="model", default=None, help="Model passed to gro")
    parser.add_argument("-P", "--provider", dest="provider", default=None, help="Provider passed to gro")
    parser.add_argument(
        "--thinking",
        "--show-thinking",
        dest="show_thinking",
        action="store_true",
        default=None,
        help="Show reasoning blocks from the start",
    )
    parser.add_argument("--gro-bin", dest="gro_bin", default=None, help="Path to the gro executable")
    parser.add_argument("--config", dest="config_path", type=Path, default=None, help="Config file to load")
    parser.add_argument("--log-file", dest="log_file", type=Path, default=None, help="Write debug logs to this file")
    return parser


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    if args.model:
        config.gro.model = args.model
    if args.provider:
        config.gro.provider = args.provider
    if args.gro_bin:
        config.gro.executable = args.gro_bin
    if args.show_thinking:
        config.ui.show_thinking = True
    if args.log_file:
        config.ui.log_file = args.log_file
    return config


def _configure_logging(log_file: Path | None) -> None:
    # The terminal belongs to the UI; without a log file nothing is emitted.
    if log_file is None:
        logging.getLogger().addHandler(logging.NullHandler())
        return
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_file),
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        config = load_config(args.config_path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    config = _apply_overrides(config, args)
    _configure_logging(config.ui.log_file)

    from .cli.app import ChatApp

    try:
        asyncio.run(ChatApp(config).run_async())
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass


if __name__ == "__main__":
    main()
