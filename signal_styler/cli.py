"""Command line entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Iterable

from . import __version__
from .config import load_settings
from .errors import PathInvalid, PermissionDenied, PipelineError, StylerError
from .integrity import select_strategy
from .locate import ensure_permitted, find_installed_archive, validate_archive_path
from .pipeline import RunContext, run_patch

logger = logging.getLogger("signal_styler")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure default logging if no handlers are present."""

    root = logging.getLogger()
    if root.handlers:
        return
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler()],
    )


def build_cli() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="signal-styler", description="Add custom CSS to Signal Desktop"
    )
    parser.add_argument("-v", "--version", action="version", version=__version__)
    parser.add_argument("-a", "--asar", type=Path, help="path to Signal Desktop asar to patch")
    parser.add_argument("-t", "--tray-icons", type=Path, help="path to custom tray icons folder")
    parser.add_argument("--verbose", action="store_true", help="show debug output")
    parser.add_argument("custom_css", type=Path, metavar="custom.css", help="path to custom stylesheet")
    return parser


def _location_hint(custom_path: bool) -> str:
    if custom_path:
        return "Is the path you specified correct?"
    if sys.platform in ("win32", "darwin"):
        return "Is Signal installed in the default location? You can specify a custom asar path with the -a flag."
    return "Is Signal installed via Flatpak? You can specify a custom asar path with the -a flag."


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_cli()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger.info("signal-styler v%s", __version__)

    archive = args.asar if args.asar is not None else find_installed_archive()
    try:
        validate_archive_path(archive)
    except PathInvalid:
        logger.error("Signal Desktop asar not found%s.", "" if args.asar else " automatically")
        logger.info(_location_hint(args.asar is not None))
        return 1

    try:
        ensure_permitted(archive)
    except PermissionDenied as exc:
        logger.error("%s", exc)
        return 1

    context = RunContext.create(
        archive,
        args.custom_css,
        load_settings(),
        tray_icons=args.tray_icons,
        auto_detected=args.asar is None,
    )

    try:
        run_patch(context)
    except PipelineError as exc:
        logger.error("%s", exc)
        if exc.backup_path is not None and not exc.restored:
            logger.error("Restore %s from %s to undo the partial patch.", context.archive_path, exc.backup_path)
        return 1

    strategy = select_strategy()
    try:
        manual = strategy.correct(context)
    except StylerError as exc:
        logger.error("Fixing the integrity check failed: %s", exc)
        logger.error("Signal may refuse to start; restore %s from %s to undo.", context.archive_path, context.backup_path)
        return 1
    if manual is not None:
        logger.warning("A custom asar path was used, fix the integrity check manually:")
        logger.warning("%s", manual.instructions)

    logger.info("Done! Restart Signal to see your beautiful new styles.")
    return 0
