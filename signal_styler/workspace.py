"""Scratch directories used while rebuilding an archive."""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List

from .errors import IOFailure

logger = logging.getLogger(__name__)

PATCH_PREFIX = "signal-styler-patch-"
BUILD_PREFIX = "signal-styler-build-"
STYLESHEET_DIR = "stylesheets"


@dataclass(frozen=True)
class Workspace:
    """``patch_dir`` holds only the overlay, ``build_dir`` the full extracted tree."""

    patch_dir: Path
    build_dir: Path


def create_workspace(temp_root: Path | None = None) -> Workspace:
    """Create a fresh pair of temporary directories for one run."""

    root = str(temp_root) if temp_root is not None else None
    created: List[Path] = []
    try:
        patch_dir = Path(tempfile.mkdtemp(prefix=PATCH_PREFIX, dir=root))
        created.append(patch_dir)
        build_dir = Path(tempfile.mkdtemp(prefix=BUILD_PREFIX, dir=root))
        created.append(build_dir)
        (patch_dir / STYLESHEET_DIR).mkdir()
    except OSError as exc:
        for directory in created:
            shutil.rmtree(directory, ignore_errors=True)
        raise IOFailure(f"unable to create workspace: {exc}") from exc

    logger.debug("Workspace ready: patch=%s build=%s", patch_dir, build_dir)
    return Workspace(patch_dir=patch_dir, build_dir=build_dir)


def destroy_workspace(workspace: Workspace) -> None:
    """Remove both workspace directories.

    Directories that are already gone are ignored.  Other failures are
    collected and raised together once both removals were attempted.
    """

    failures: List[str] = []
    for directory in (workspace.patch_dir, workspace.build_dir):
        try:
            shutil.rmtree(directory)
        except FileNotFoundError:
            continue
        except OSError as exc:
            failures.append(f"{directory}: {exc}")

    if failures:
        raise IOFailure("unable to remove workspace: " + "; ".join(failures))
