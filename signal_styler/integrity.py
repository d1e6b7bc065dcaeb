"""Repair the asar integrity record the host application checks at startup.

Electron stores the expected hash of ``app.asar`` next to the archive:
macOS keeps it in the bundle's ``Info.plist`` and Windows in a resource of the
executable.  The new hash is obtained by launching the application once and
reading the mismatch it reports.  Linux builds do not check it.
"""

from __future__ import annotations

import logging
import plistlib
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath
from typing import Dict

import psutil

from .errors import HashNotFound, IOFailure, ResourceEditFailed, SigningFailed
from .pe_resources import rewrite_integrity_resource
from .pipeline import RunContext

logger = logging.getLogger(__name__)

INTEGRITY_DIAGNOSTIC = re.compile(
    r"Integrity check failed[^(\n]*\(([0-9A-Fa-f]+) vs ([0-9A-Fa-f]+)\)"
)
PLIST_INTEGRITY_KEY = "ElectronAsarIntegrity"
PLIST_ALGORITHM = "SHA256"
DEFAULT_MACOS_EXECUTABLE = "Signal"
WINDOWS_EXECUTABLE = "Signal.exe"
TERMINATE_TIMEOUT = 5.0


@dataclass(frozen=True)
class ManualActionRequired:
    """Returned when the integrity record has to be fixed by hand."""

    platform: str
    instructions: str


def parse_integrity_diagnostic(text: str) -> str:
    """Return the hash the host computed for the modified archive."""

    match = INTEGRITY_DIAGNOSTIC.search(text)
    if match is None:
        raise HashNotFound("the application did not report an integrity mismatch")
    return match.group(2)


def extract_expected_hash(executable: Path, timeout: float = 30.0) -> str:
    """Launch ``executable`` and read the archive hash from its diagnostic output.

    The process runs from its own directory with stdout and stderr merged.  If
    it does not exit within ``timeout`` seconds it is killed and the output
    gathered so far is used.
    """

    try:
        completed = subprocess.run(
            [str(executable)],
            cwd=str(executable.parent),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
        output = completed.stdout or b""
    except subprocess.TimeoutExpired as exc:
        logger.debug("%s did not exit within %ss", executable, timeout)
        output = exc.output or b""
    except OSError as exc:
        raise IOFailure(f"unable to launch {executable}: {exc}") from exc

    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return parse_integrity_diagnostic(output)


class IntegrityStrategy:
    """Platform specific way of storing the archive hash."""

    platform = "generic"

    def correct(self, context: RunContext) -> ManualActionRequired | None:
        if not context.auto_detected:
            return self.manual_action(context)
        self.apply(context)
        return None

    def manual_action(self, context: RunContext) -> ManualActionRequired | None:
        return None

    def apply(self, context: RunContext) -> None:
        raise NotImplementedError


class NoIntegrityCheck(IntegrityStrategy):
    """Linux builds do not validate the archive."""

    platform = "linux"

    def apply(self, context: RunContext) -> None:
        return None


def find_app_bundle(archive_path: Path) -> Path:
    for parent in archive_path.parents:
        if parent.suffix == ".app":
            return parent
    raise IOFailure(f"{archive_path} is not inside an application bundle")


def update_info_plist(plist_path: Path, archive_key: str, value: str) -> None:
    """Set the ``ElectronAsarIntegrity`` hash of ``archive_key`` to ``value``.

    The file is written back in the format it was read in (XML or binary).
    """

    try:
        raw = plist_path.read_bytes()
        info = plistlib.loads(raw)
    except (OSError, plistlib.InvalidFileException, ValueError) as exc:
        raise IOFailure(f"unable to read {plist_path}: {exc}") from exc

    integrity = info.setdefault(PLIST_INTEGRITY_KEY, {})
    record: Dict[str, str] = integrity.setdefault(archive_key, {"algorithm": PLIST_ALGORITHM})
    record["hash"] = value

    fmt = plistlib.FMT_BINARY if raw.startswith(b"bplist00") else plistlib.FMT_XML
    try:
        plist_path.write_bytes(plistlib.dumps(info, fmt=fmt))
    except OSError as exc:
        raise IOFailure(f"unable to write {plist_path}: {exc}") from exc


def codesign_bundle(bundle: Path) -> None:
    """Re-sign ``bundle`` with an ad-hoc signature."""

    try:
        result = subprocess.run(
            ["codesign", "--force", "--deep", "--sign", "-", str(bundle)],
            capture_output=True,
            text=True,
        )
    except OSError as exc:
        raise SigningFailed(f"unable to run codesign: {exc}") from exc
    if result.returncode != 0:
        raise SigningFailed(
            f"codesign exited with {result.returncode}: {result.stderr.strip()}"
        )


class InfoPlistStrategy(IntegrityStrategy):
    platform = "darwin"

    def manual_action(self, context: RunContext) -> ManualActionRequired:
        return ManualActionRequired(
            self.platform,
            "Run the application once from a terminal and copy the second hash of the "
            "'Integrity check failed' message into ElectronAsarIntegrity of the bundle's "
            "Contents/Info.plist, then re-sign it with: codesign --force --deep --sign - <Signal.app>",
        )

    def apply(self, context: RunContext) -> None:
        bundle = find_app_bundle(context.archive_path)
        contents = bundle / "Contents"
        plist_path = contents / "Info.plist"
        try:
            with plist_path.open("rb") as handle:
                executable_name = plistlib.load(handle).get("CFBundleExecutable", DEFAULT_MACOS_EXECUTABLE)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            raise IOFailure(f"unable to read {plist_path}: {exc}") from exc

        value = extract_expected_hash(contents / "MacOS" / executable_name, context.hash_timeout)
        archive_key = context.archive_path.relative_to(contents).as_posix()
        logger.info("Updating %s for %s", plist_path, archive_key)
        update_info_plist(plist_path, archive_key, value)
        logger.info("Re-signing %s ...", bundle)
        codesign_bundle(bundle)


def terminate_processes(name: str) -> int:
    """Kill running processes called ``name``; failures are ignored."""

    victims = []
    for process in psutil.process_iter(["name"]):
        try:
            if (process.info.get("name") or "").lower() != name.lower():
                continue
            process.kill()
            victims.append(process)
        except psutil.Error as exc:
            logger.debug("Unable to terminate %s: %s", process, exc)
    if victims:
        psutil.wait_procs(victims, timeout=TERMINATE_TIMEOUT)
    return len(victims)


class ResourceTableStrategy(IntegrityStrategy):
    platform = "win32"

    def manual_action(self, context: RunContext) -> ManualActionRequired:
        return ManualActionRequired(
            self.platform,
            "Run Signal.exe once from a terminal and store the second hash of the "
            "'Integrity check failed' message in the INTEGRITY/ELECTRONASAR resource of "
            "Signal.exe with a resource editor.",
        )

    def apply(self, context: RunContext) -> None:
        executable = context.archive_path.parent.parent / WINDOWS_EXECUTABLE
        value = extract_expected_hash(executable, context.hash_timeout)
        relative = str(PureWindowsPath(*context.archive_path.relative_to(executable.parent).parts))

        try:
            image = executable.read_bytes()
        except OSError as exc:
            raise ResourceEditFailed(f"unable to read {executable}: {exc}") from exc
        patched = rewrite_integrity_resource(image, relative, value)

        killed = terminate_processes(executable.name)
        if killed:
            logger.debug("Terminated %d running %s process(es)", killed, executable.name)
        try:
            executable.write_bytes(patched)
        except OSError as exc:
            raise IOFailure(f"unable to write {executable}: {exc}") from exc


def select_strategy(platform: str | None = None) -> IntegrityStrategy:
    platform = sys.platform if platform is None else platform
    if platform == "darwin":
        return InfoPlistStrategy()
    if platform == "win32":
        return ResourceTableStrategy()
    return NoIntegrityCheck()
