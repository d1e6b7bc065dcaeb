"""Find and validate the Signal Desktop archive."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import List, Mapping

from .errors import PathInvalid, PermissionDenied

ARCHIVE_SUFFIX = ".asar"
FLATPAK_APP = Path("app", "org.signal.Signal", "current", "active", "files", "Signal", "resources", "app.asar")
SYSTEM_FLATPAK_ROOT = Path("/var/lib/flatpak")
MACOS_ARCHIVE = Path("/Applications/Signal.app/Contents/Resources/app.asar")


def candidate_archive_paths(
    platform: str | None = None,
    environ: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> List[Path]:
    """Return the default install locations checked, in order of preference."""

    platform = sys.platform if platform is None else platform
    env = os.environ if environ is None else environ
    home = Path.home() if home is None else home

    candidates = [SYSTEM_FLATPAK_ROOT / FLATPAK_APP, home / ".var" / FLATPAK_APP]
    if platform == "win32" and env.get("LOCALAPPDATA"):
        candidates.append(Path(env["LOCALAPPDATA"], "Programs", "Signal", "resources", "app.asar"))
    elif platform == "darwin":
        candidates.append(MACOS_ARCHIVE)
    return candidates


def find_installed_archive(**kwargs) -> Path | None:
    for candidate in candidate_archive_paths(**kwargs):
        if candidate.exists():
            return candidate
    return None


def validate_archive_path(path: Path | None) -> Path:
    if path is None:
        raise PathInvalid("no Signal Desktop asar was found")
    if path.suffix != ARCHIVE_SUFFIX or not path.is_file():
        raise PathInvalid(f"{path} is not an asar archive")
    return path


def needs_privileges(path: Path) -> bool:
    """Return True if ``path`` is owned by root."""

    try:
        return path.stat().st_uid == 0
    except OSError:
        return True


def ensure_permitted(path: Path) -> None:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is None or geteuid() == 0:
        return
    if needs_privileges(path):
        raise PermissionDenied(
            f"{path} is installed to a protected directory; run signal-styler as root"
        )
