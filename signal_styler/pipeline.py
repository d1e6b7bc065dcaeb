"""Extract, overlay, back up, repack and install a patched archive."""

from __future__ import annotations

import enum
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from . import asar, overlay
from .config import Settings
from .errors import IOFailure, PipelineError, StylerError
from .locate import validate_archive_path
from .workspace import Workspace, create_workspace, destroy_workspace

logger = logging.getLogger(__name__)


class Stage(enum.IntEnum):
    IDLE = 0
    WORKSPACE_READY = 1
    MANIFEST_CHECKED = 2
    OVERLAY_STAGED = 3
    EXTRACTED = 4
    BACKED_UP = 5
    PACKED = 6
    INSTALLED = 7
    CLEANED_UP = 8


@dataclass(frozen=True)
class RunContext:
    """Everything a run needs to know, passed explicitly to each step."""

    archive_path: Path
    stylesheet: Path
    backup_path: Path
    staging_path: Path
    tray_icons: Path | None = None
    auto_detected: bool = False
    hash_timeout: float = 30.0
    temp_root: Path | None = None

    @classmethod
    def create(
        cls,
        archive_path: Path,
        stylesheet: Path,
        settings: Settings,
        *,
        tray_icons: Path | None = None,
        auto_detected: bool = False,
    ) -> "RunContext":
        return cls(
            archive_path=Path(archive_path).absolute(),
            stylesheet=Path(stylesheet),
            backup_path=settings.backup_path,
            staging_path=settings.staging_path,
            tray_icons=Path(tray_icons) if tray_icons is not None else None,
            auto_detected=auto_detected,
            hash_timeout=settings.hash_timeout,
        )


@dataclass
class PatchResult:
    stage: Stage
    already_patched: bool
    backup_path: Path
    tray_icons: List[Path] = field(default_factory=list)


def _backup(context: RunContext) -> None:
    try:
        context.backup_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(context.archive_path, context.backup_path)
    except OSError as exc:
        raise IOFailure(f"unable to back up {context.archive_path}: {exc}") from exc


def _build(context: RunContext, workspace: Workspace) -> None:
    unpacked = asar.unpacked_entries(context.archive_path)
    try:
        shutil.copytree(workspace.patch_dir, workspace.build_dir, dirs_exist_ok=True)
    except (OSError, shutil.Error) as exc:
        raise IOFailure(f"unable to overlay {workspace.patch_dir}: {exc}") from exc
    asar.pack(workspace.build_dir, context.staging_path, unpacked=unpacked)


def _install(context: RunContext) -> None:
    try:
        shutil.copyfile(context.staging_path, context.archive_path)
    except OSError as exc:
        raise IOFailure(f"unable to install {context.staging_path}: {exc}") from exc


def _restore(context: RunContext) -> bool:
    try:
        shutil.copyfile(context.backup_path, context.archive_path)
    except OSError as exc:
        logger.error("Restoring %s from %s failed: %s", context.archive_path, context.backup_path, exc)
        return False
    logger.warning("Restored %s from %s", context.archive_path, context.backup_path)
    return True


def _cleanup(context: RunContext, workspace: Workspace | None) -> bool:
    """Remove the workspace and staged archive, logging instead of raising."""

    clean = True
    if workspace is not None:
        try:
            destroy_workspace(workspace)
        except IOFailure as exc:
            logger.warning("%s", exc)
            clean = False
    try:
        context.staging_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Unable to remove %s: %s", context.staging_path, exc)
        clean = False
    return clean


def run_patch(context: RunContext) -> PatchResult:
    """Patch ``context.archive_path`` in place.

    A failure before the backup leaves the archive untouched.  A failure while
    installing restores it from the backup, which is always kept.  The
    workspace and staged archive are removed whatever the failure was.
    """

    validate_archive_path(context.archive_path)

    stage = Stage.IDLE
    step = "create workspace"
    workspace: Workspace | None = None
    result = PatchResult(stage=stage, already_patched=False, backup_path=context.backup_path)

    try:
        workspace = create_workspace(context.temp_root)
        stage = Stage.WORKSPACE_READY

        step = "check manifest"
        logger.info("Checking Signal Desktop asar ...")
        manifest = asar.extract_entry(context.archive_path, overlay.MANIFEST_ENTRY)
        result.already_patched = overlay.is_already_patched(manifest)
        if result.already_patched:
            logger.info("Signal-Styler already enabled, continuing ...")
        else:
            logger.info("Enabling Signal-Styler ...")
            manifest = overlay.compose_manifest(manifest)
        stage = Stage.MANIFEST_CHECKED

        step = "stage overlay"
        logger.info("Installing custom CSS%s ...", " and tray icons" if context.tray_icons else "")
        overlay.write_manifest(manifest, workspace.patch_dir)
        overlay.stage_stylesheet(context.stylesheet, workspace.patch_dir)
        if context.tray_icons is not None:
            result.tray_icons = overlay.stage_tray_icons(context.tray_icons, workspace.patch_dir)
        stage = Stage.OVERLAY_STAGED

        step = "extract archive"
        logger.info("Building Signal Desktop asar ...")
        asar.extract_all(context.archive_path, workspace.build_dir)
        stage = Stage.EXTRACTED

        step = "back up archive"
        _backup(context)
        stage = Stage.BACKED_UP

        step = "pack archive"
        _build(context, workspace)
        stage = Stage.PACKED

        step = "install archive"
        _install(context)
        stage = Stage.INSTALLED
    except BaseException as exc:
        restored = stage == Stage.PACKED and _restore(context)
        _cleanup(context, workspace)
        if not isinstance(exc, StylerError):
            raise
        raise PipelineError(
            step,
            stage,
            exc,
            backup_path=context.backup_path if stage >= Stage.BACKED_UP else None,
            restored=restored,
        ) from exc

    logger.info("Cleaning up ...")
    if _cleanup(context, workspace):
        stage = Stage.CLEANED_UP
    result.stage = stage
    return result
