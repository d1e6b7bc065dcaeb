"""Reading and writing Electron ASAR archives.

An ASAR archive starts with two Chromium pickles followed by the file bodies:

```
uint32 4 | uint32 header_size                          size pickle
uint32 payload | int32 length | JSON header | padding  header pickle
file bodies                                            offsets relative to 8 + header_size
```

The JSON header describes a directory tree.  Files carry their ``size`` and
an ``offset`` (stored as a decimal string) into the body section, links store
a path relative to the archive root and files flagged ``unpacked`` live in a
``<archive>.unpacked`` directory next to the archive instead of the body
section.

Only the operations needed to patch an installed application are provided:
reading a single entry, unpacking everything and packing a directory back in
a layout the Electron runtime accepts.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import stat
import struct
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, Set, Tuple

from .errors import ArchiveCorrupt, ArchiveEntryNotFound, IOFailure

logger = logging.getLogger(__name__)

SIZE_PICKLE = struct.Struct("<II")  # payload size (always 4), header pickle size
HEADER_PICKLE = struct.Struct("<Ii")  # payload size, string length
INTEGRITY_ALGORITHM = "SHA256"
INTEGRITY_BLOCK_SIZE = 4 * 1024 * 1024
COPY_CHUNK_SIZE = 1024 * 1024
MAX_LINK_HOPS = 32

Header = Dict[str, object]


def _align4(value: int) -> int:
    return (value + 3) & ~3


def _split_entry_name(name: str) -> List[str]:
    """Return the components of an archive path, rejecting traversal."""

    parts = [part for part in name.replace("\\", "/").split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise ArchiveCorrupt(f"entry {name!r} escapes the archive root")
    return parts


def _unpacked_dir(archive_path: Path) -> Path:
    return archive_path.with_name(archive_path.name + ".unpacked")


def read_header(archive_path: Path) -> Tuple[Header, int]:
    """Return the decoded JSON header and the offset of the body section."""

    try:
        with archive_path.open("rb") as handle:
            size_pickle = handle.read(SIZE_PICKLE.size)
            if len(size_pickle) != SIZE_PICKLE.size:
                raise ArchiveCorrupt("truncated size pickle")
            _payload, header_size = SIZE_PICKLE.unpack(size_pickle)
            header_pickle = handle.read(header_size)
    except OSError as exc:
        raise IOFailure(f"unable to read {archive_path}: {exc}") from exc

    if len(header_pickle) != header_size or header_size < HEADER_PICKLE.size:
        raise ArchiveCorrupt("truncated header pickle")

    _payload, length = HEADER_PICKLE.unpack_from(header_pickle)
    if length < 0 or HEADER_PICKLE.size + length > header_size:
        raise ArchiveCorrupt("header string length exceeds the header pickle")

    raw = header_pickle[HEADER_PICKLE.size : HEADER_PICKLE.size + length]
    try:
        header = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ArchiveCorrupt(f"header is not valid JSON: {exc}") from exc

    if not isinstance(header, dict) or not isinstance(header.get("files"), dict):
        raise ArchiveCorrupt("header does not describe a directory tree")

    return header, SIZE_PICKLE.size + header_size


def _walk(node: Header, prefix: str = "") -> Iterator[Tuple[str, Header]]:
    """Yield ``(relative_path, node)`` for every entry below ``node``."""

    for name, child in node["files"].items():  # type: ignore[union-attr]
        if name in ("", ".", "..") or "/" in name or "\\" in name:
            raise ArchiveCorrupt(f"invalid entry name {prefix + name!r}")
        if not isinstance(child, dict):
            raise ArchiveCorrupt(f"malformed header node for {prefix + name!r}")
        relative = f"{prefix}{name}"
        if "files" in child and not isinstance(child["files"], dict):
            raise ArchiveCorrupt(f"malformed directory node for {relative!r}")
        yield relative, child
        if "files" in child:
            yield from _walk(child, relative + "/")


def _lookup(header: Header, entry_name: str, *, hops: int = 0) -> Tuple[str, Header]:
    if hops > MAX_LINK_HOPS:
        raise ArchiveCorrupt(f"too many links while resolving {entry_name!r}")

    node: Header = header
    resolved: List[str] = []
    parts = _split_entry_name(entry_name)
    for index, part in enumerate(parts):
        children = node.get("files")
        if children is not None and not isinstance(children, dict):
            raise ArchiveCorrupt(f"malformed directory node while resolving {entry_name!r}")
        if children is None or part not in children:
            raise ArchiveEntryNotFound(f"{entry_name!r} is not stored in the archive")
        node = children[part]
        if not isinstance(node, dict):
            raise ArchiveCorrupt(f"malformed header node for {entry_name!r}")
        resolved.append(part)
        if "link" in node:
            target = "/".join(_split_entry_name(str(node["link"])) + parts[index + 1 :])
            return _lookup(header, target, hops=hops + 1)
    return "/".join(resolved), node


def _copy_range(source: BinaryIO, target: BinaryIO, offset: int, size: int) -> None:
    source.seek(offset)
    remaining = size
    while remaining:
        chunk = source.read(min(COPY_CHUNK_SIZE, remaining))
        if not chunk:
            raise ArchiveCorrupt("entry points outside of archive bounds")
        target.write(chunk)
        remaining -= len(chunk)


def _body_range(node: Header, data_offset: int, archive_size: int, name: str) -> Tuple[int, int]:
    try:
        relative_offset = int(node["offset"])  # type: ignore[arg-type]
        size = int(node["size"])  # type: ignore[arg-type]
    except (KeyError, TypeError, ValueError) as exc:
        raise ArchiveCorrupt(f"entry {name!r} has no usable offset/size") from exc
    offset = data_offset + relative_offset
    if relative_offset < 0 or size < 0 or offset + size > archive_size:
        raise ArchiveCorrupt(f"entry {name!r} points outside of archive bounds")
    return offset, size


def extract_entry(archive_path: Path, entry_name: str) -> bytes:
    """Return the content of a single file stored in the archive."""

    header, data_offset = read_header(archive_path)
    resolved, node = _lookup(header, entry_name)
    if "files" in node:
        raise ArchiveEntryNotFound(f"{entry_name!r} is a directory")

    if node.get("unpacked"):
        unpacked_path = _unpacked_dir(archive_path).joinpath(*resolved.split("/"))
        try:
            return unpacked_path.read_bytes()
        except FileNotFoundError as exc:
            raise ArchiveCorrupt(f"unpacked entry {resolved!r} is missing") from exc
        except OSError as exc:
            raise IOFailure(f"unable to read {unpacked_path}: {exc}") from exc

    try:
        archive_size = archive_path.stat().st_size
        offset, size = _body_range(node, data_offset, archive_size, resolved)
        with archive_path.open("rb") as handle:
            handle.seek(offset)
            return handle.read(size)
    except OSError as exc:
        raise IOFailure(f"unable to read {archive_path}: {exc}") from exc


def unpacked_entries(archive_path: Path) -> frozenset:
    """Return the relative paths the archive keeps in its ``.unpacked`` directory."""

    header, _ = read_header(archive_path)
    return frozenset(
        name for name, node in _walk(header) if "files" not in node and node.get("unpacked")
    )


def _create_link(target_path: Path, link_value: str, dest_root: Path) -> None:
    link_target = dest_root.joinpath(*_split_entry_name(link_value))
    relative = os.path.relpath(link_target, target_path.parent)
    os.symlink(relative, target_path)


def extract_all(archive_path: Path, dest_dir: Path) -> None:
    """Unpack every entry of ``archive_path`` into the empty ``dest_dir``."""

    if not dest_dir.is_dir():
        raise IOFailure(f"{dest_dir} is not a directory")
    if any(dest_dir.iterdir()):
        raise IOFailure(f"{dest_dir} is not empty")

    header, data_offset = read_header(archive_path)
    unpacked_root = _unpacked_dir(archive_path)

    try:
        archive_size = archive_path.stat().st_size
        with archive_path.open("rb") as handle:
            for name, node in _walk(header):
                target = dest_dir.joinpath(*name.split("/"))
                if "files" in node:
                    target.mkdir(parents=True, exist_ok=True)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                if "link" in node:
                    _create_link(target, str(node["link"]), dest_dir)
                    continue

                if node.get("unpacked"):
                    source = unpacked_root.joinpath(*name.split("/"))
                    if not source.is_file():
                        raise ArchiveCorrupt(f"unpacked entry {name!r} is missing")
                    shutil.copyfile(source, target)
                else:
                    offset, size = _body_range(node, data_offset, archive_size, name)
                    with target.open("wb") as output:
                        _copy_range(handle, output, offset, size)

                if node.get("executable"):
                    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    except OSError as exc:
        raise IOFailure(f"unable to extract {archive_path}: {exc}") from exc

    logger.debug("Extracted %s to %s", archive_path, dest_dir)


def file_integrity(path: Path) -> Dict[str, object]:
    """Return the per-file integrity record Electron validates block by block."""

    whole = hashlib.sha256()
    blocks: List[str] = []
    with path.open("rb") as handle:
        while True:
            block = handle.read(INTEGRITY_BLOCK_SIZE)
            if not block:
                break
            whole.update(block)
            blocks.append(hashlib.sha256(block).hexdigest())
    if not blocks:
        blocks.append(hashlib.sha256(b"").hexdigest())
    return {
        "algorithm": INTEGRITY_ALGORITHM,
        "hash": whole.hexdigest(),
        "blockSize": INTEGRITY_BLOCK_SIZE,
        "blocks": blocks,
    }


def _build_tree(
    source_root: Path,
    directory: Path,
    prefix: str,
    unpacked: Set[str],
    bodies: List[Path],
    offset: int,
) -> Tuple[Header, int]:
    """Describe ``directory`` as a header node, collecting file bodies in order."""

    files: Dict[str, object] = {}
    with os.scandir(directory) as iterator:
        entries = sorted(iterator, key=lambda entry: entry.name)

    for entry in entries:
        relative = f"{prefix}{entry.name}"
        path = Path(entry.path)

        if entry.is_symlink():
            real_target = Path(os.path.realpath(path))
            real_root = Path(os.path.realpath(source_root))
            try:
                link = real_target.relative_to(real_root)
            except ValueError:
                raise IOFailure(f"{relative!r} links out of the package") from None
            files[entry.name] = {"link": link.as_posix()}
            continue

        if entry.is_dir():
            node, offset = _build_tree(source_root, path, relative + "/", unpacked, bodies, offset)
            files[entry.name] = node
            continue

        size = entry.stat().st_size
        executable = os.name != "nt" and bool(entry.stat().st_mode & stat.S_IXUSR)
        if relative in unpacked:
            node = {"size": size, "unpacked": True, "integrity": file_integrity(path)}
        else:
            node = {"size": size, "offset": str(offset), "integrity": file_integrity(path)}
            bodies.append(path)
            offset += size
        if executable:
            node["executable"] = True
        files[entry.name] = node

    return {"files": files}, offset


def encode_header(header: Header) -> bytes:
    """Serialise ``header`` into the two leading pickles of an archive."""

    raw = json.dumps(header, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    padding = _align4(len(raw)) - len(raw)
    header_pickle = HEADER_PICKLE.pack(4 + len(raw) + padding, len(raw)) + raw + b"\x00" * padding
    return SIZE_PICKLE.pack(4, len(header_pickle)) + header_pickle


def pack(source_dir: Path, dest_archive: Path, unpacked: Iterable[str] = ()) -> None:
    """Pack ``source_dir`` into ``dest_archive``.

    Entries are ordered by name so packing the same tree twice yields the same
    bytes.  Paths listed in ``unpacked`` are recorded as unpacked and their
    content is left out of the archive body.
    """

    bodies: List[Path] = []
    try:
        header, _ = _build_tree(source_dir, source_dir, "", set(unpacked), bodies, 0)
    except OSError as exc:
        raise IOFailure(f"unable to read {source_dir}: {exc}") from exc

    try:
        dest_archive.parent.mkdir(parents=True, exist_ok=True)
        with dest_archive.open("wb") as output:
            output.write(encode_header(header))
            for body in bodies:
                with body.open("rb") as source:
                    shutil.copyfileobj(source, output, COPY_CHUNK_SIZE)
    except OSError as exc:
        raise IOFailure(f"unable to write {dest_archive}: {exc}") from exc

    logger.debug("Packed %s into %s (%d bodies)", source_dir, dest_archive, len(bodies))
