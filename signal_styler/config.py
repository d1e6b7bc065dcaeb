"""Runtime settings read from the environment."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

CACHE_DIR_ENV = "SIGNAL_STYLER_CACHE_DIR"
HASH_TIMEOUT_ENV = "SIGNAL_STYLER_HASH_TIMEOUT"

DEFAULT_HASH_TIMEOUT = 30.0
BACKUP_ARCHIVE_NAME = "signal-original.asar"
STAGING_ARCHIVE_NAME = "signal-styled.asar"


@dataclass(frozen=True)
class Settings:
    cache_dir: Path
    hash_timeout: float = DEFAULT_HASH_TIMEOUT

    @property
    def backup_path(self) -> Path:
        return self.cache_dir / BACKUP_ARCHIVE_NAME

    @property
    def staging_path(self) -> Path:
        return self.cache_dir / STAGING_ARCHIVE_NAME


def _parse_timeout(raw: str | None) -> float:
    if not raw:
        return DEFAULT_HASH_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        value = 0.0
    if not math.isfinite(value) or value <= 0:
        logger.warning(
            "Ignoring %s=%r, using %ss", HASH_TIMEOUT_ENV, raw, DEFAULT_HASH_TIMEOUT
        )
        return DEFAULT_HASH_TIMEOUT
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Return the settings for this run, honouring environment overrides."""

    env = os.environ if environ is None else environ
    cache_dir = env.get(CACHE_DIR_ENV)
    return Settings(
        cache_dir=Path(cache_dir).expanduser() if cache_dir else Path.home() / ".cache",
        hash_timeout=_parse_timeout(env.get(HASH_TIMEOUT_ENV)),
    )
