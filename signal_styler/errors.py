"""Exception types raised while patching and repairing a Signal Desktop install."""

from __future__ import annotations

from pathlib import Path


class StylerError(RuntimeError):
    """Base class for every failure reported by signal-styler."""


class PathInvalid(StylerError):
    """Raised when the archive path is missing, not a file or not an ``.asar``."""


class PermissionDenied(StylerError):
    """Raised when the archive belongs to a privileged account."""


class ArchiveCorrupt(StylerError):
    """Raised when the archive layout does not match expectations."""


class ArchiveEntryNotFound(StylerError):
    """Raised when a requested entry is not stored in the archive."""


class SourceNotFound(StylerError):
    """Raised when a user supplied asset is missing."""


class IOFailure(StylerError):
    """Raised when a filesystem operation fails."""


class HashNotFound(StylerError):
    """Raised when the host executable did not report an integrity mismatch."""


class SigningFailed(StylerError):
    """Raised when ad-hoc re-signing of the application bundle fails."""


class ResourceEditFailed(StylerError):
    """Raised when the executable's resource section cannot be rewritten."""


class PipelineError(StylerError):
    """Raised when a rebuild step fails.

    ``step`` names the step that failed and ``stage`` the last stage that
    completed.  ``backup_path`` is set once the original archive has been
    copied aside, ``restored`` tells whether the archive was rolled back from
    that copy.
    """

    def __init__(
        self,
        step: str,
        stage: object,
        cause: BaseException,
        *,
        backup_path: Path | None = None,
        restored: bool = False,
    ) -> None:
        self.step = step
        self.stage = stage
        self.cause = cause
        self.backup_path = backup_path
        self.restored = restored

        message = f"{step} failed: {cause}"
        if backup_path is not None:
            if restored:
                message += f" (archive restored from {backup_path})"
            else:
                message += f" (the original archive is backed up at {backup_path})"
        super().__init__(message)
