"""Build the overlay that is copied on top of the extracted archive."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import List

from PIL import Image, UnidentifiedImageError

from .errors import IOFailure, SourceNotFound

logger = logging.getLogger(__name__)

MANIFEST_ENTRY = "stylesheets/manifest.css"
STYLESHEET_ENTRY = "stylesheets/custom.css"
TRAY_ICONS_ENTRY = "images/tray-icons/base"

MANIFEST_HEADER = b'/* SIGNAL-STYLER */ @import "custom.css"; /* SIGNAL-STYLER */'


def _overlay_path(patch_dir: Path, entry: str) -> Path:
    return patch_dir.joinpath(*entry.split("/"))


def is_already_patched(manifest: bytes) -> bool:
    """Return True if ``manifest`` starts with the signal-styler header line."""

    return manifest.startswith(MANIFEST_HEADER)


def compose_manifest(original: bytes) -> bytes:
    """Prepend the header line importing ``custom.css`` to ``original``."""

    if is_already_patched(original):
        raise ValueError("manifest already imports the custom stylesheet")
    return MANIFEST_HEADER + b"\n" + original


def write_manifest(manifest: bytes, patch_dir: Path) -> Path:
    target = _overlay_path(patch_dir, MANIFEST_ENTRY)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(manifest)
    except OSError as exc:
        raise IOFailure(f"unable to write {target}: {exc}") from exc
    return target


def stage_stylesheet(css_path: Path, patch_dir: Path) -> Path:
    """Copy the user's stylesheet into the overlay as ``custom.css``."""

    if not css_path.is_file():
        raise SourceNotFound(f"custom stylesheet {css_path} does not exist")

    target = _overlay_path(patch_dir, STYLESHEET_ENTRY)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(css_path, target)
    except OSError as exc:
        raise IOFailure(f"unable to stage {css_path}: {exc}") from exc
    return target


def is_image_file(path: Path) -> bool:
    """Return True if Pillow recognises ``path`` as an intact image."""

    try:
        with Image.open(path) as image:
            image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return False
    return True


def stage_tray_icons(icons_dir: Path, patch_dir: Path) -> List[Path]:
    """Replace the staged tray icon directory with the images in ``icons_dir``.

    Any previously staged icons are removed first.  Files that are not
    readable images are skipped with a warning.  Returns the staged paths.
    """

    if not icons_dir.is_dir():
        raise SourceNotFound(f"tray icon directory {icons_dir} does not exist")

    candidates = sorted(path for path in icons_dir.iterdir() if path.is_file())
    icons = []
    for path in candidates:
        if is_image_file(path):
            icons.append(path)
        else:
            logger.warning("Skipping %s: not a readable image", path)
    if not icons:
        raise SourceNotFound(f"no tray icon images found in {icons_dir}")

    target_dir = _overlay_path(patch_dir, TRAY_ICONS_ENTRY)
    staged: List[Path] = []
    try:
        if target_dir.exists():
            shutil.rmtree(target_dir)
        target_dir.mkdir(parents=True)
        for icon in icons:
            target = target_dir / icon.name
            shutil.copyfile(icon, target)
            staged.append(target)
    except OSError as exc:
        raise IOFailure(f"unable to stage tray icons: {exc}") from exc

    logger.debug("Staged %d tray icon(s) from %s", len(staged), icons_dir)
    return staged
