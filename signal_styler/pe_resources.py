"""Rewrite the resource section of a Windows PE image.

Electron on Windows compares the hash of ``resources\\app.asar`` against a
JSON record stored as the ``INTEGRITY``/``ELECTRONASAR`` resource of the
executable.  The helpers below read the resource tree with pefile, swap that
record and serialise a new ``IMAGE_RESOURCE_DIRECTORY`` tree.  Everything here
works on bytes so it can be exercised without touching the filesystem.

The new tree is written where it fits:

* in place when the current resource section has enough room;
* by growing the section when it is the last one in the image;
* otherwise into an extra ``.rsrc2`` section appended after the others.

The certificate table is dropped since the signature no longer matches the
modified image, and the optional header checksum is recomputed.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Dict, List, Tuple, Union

import pefile

from .errors import ResourceEditFailed

RESOURCE_DIRECTORY = struct.Struct("<IIHHHH")
RESOURCE_DIRECTORY_ENTRY = struct.Struct("<II")
RESOURCE_DATA_ENTRY = struct.Struct("<IIII")
SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")
HIGH_BIT = 0x80000000
DATA_ALIGNMENT = 8

RESOURCE_DIRECTORY_INDEX = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_RESOURCE"]
SECURITY_DIRECTORY_INDEX = pefile.DIRECTORY_ENTRY["IMAGE_DIRECTORY_ENTRY_SECURITY"]
APPENDED_SECTION_NAME = b".rsrc2"
# IMAGE_SCN_CNT_INITIALIZED_DATA | IMAGE_SCN_MEM_READ
APPENDED_SECTION_CHARACTERISTICS = 0x40000040

INTEGRITY_RESOURCE_TYPE = "INTEGRITY"
INTEGRITY_RESOURCE_NAME = "ELECTRONASAR"
INTEGRITY_LANGUAGE = 1033
INTEGRITY_ALGORITHM = "SHA256"

ResourceKey = Union[int, str]
ResourceTree = Dict[ResourceKey, object]


@dataclass(frozen=True)
class ResourceLeaf:
    data: bytes
    codepage: int = 0


def _align(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


def _load(image: bytes) -> pefile.PE:
    try:
        pe = pefile.PE(data=image, fast_load=True)
        pe.parse_data_directories(directories=[RESOURCE_DIRECTORY_INDEX])
    except pefile.PEFormatError as exc:
        raise ResourceEditFailed(f"unable to parse executable: {exc}") from exc
    return pe


def _read_directory(pe: pefile.PE, directory: object) -> ResourceTree:
    tree: ResourceTree = {}
    for entry in directory.entries:  # type: ignore[attr-defined]
        key: ResourceKey = str(entry.name) if entry.name is not None else entry.id
        if hasattr(entry, "directory"):
            tree[key] = _read_directory(pe, entry.directory)
        elif hasattr(entry, "data"):
            info = entry.data.struct
            tree[key] = ResourceLeaf(pe.get_data(info.OffsetToData, info.Size), info.CodePage)
    return tree


def _resource_tree(pe: pefile.PE) -> ResourceTree:
    root = getattr(pe, "DIRECTORY_ENTRY_RESOURCE", None)
    if root is None:
        return {}
    try:
        return _read_directory(pe, root)
    except pefile.PEFormatError as exc:
        raise ResourceEditFailed(f"unable to read resources: {exc}") from exc


def read_resource_tree(image: bytes) -> ResourceTree:
    """Return the resource tree as nested ``{type: {name: {language: leaf}}}``."""

    pe = _load(image)
    try:
        return _resource_tree(pe)
    finally:
        pe.close()


def _sorted_entries(node: ResourceTree) -> List[Tuple[ResourceKey, object]]:
    """Named entries first, then numeric ids, each in ascending order."""

    named = sorted(((k, v) for k, v in node.items() if isinstance(k, str)), key=lambda item: item[0])
    numbered = sorted(((k, v) for k, v in node.items() if isinstance(k, int)), key=lambda item: item[0])
    if len(named) + len(numbered) != len(node):
        raise ResourceEditFailed("resource keys must be names or integer ids")
    return named + numbered


def build_resource_section(tree: ResourceTree, base_rva: int) -> bytes:
    """Serialise ``tree`` into a resource section starting at ``base_rva``.

    Directory tables come first (breadth first), followed by the data entry
    descriptors, the length prefixed UTF-16 names and finally the payloads.
    """

    directories: List[ResourceTree] = []
    queue: List[ResourceTree] = [tree]
    while queue:
        node = queue.pop(0)
        directories.append(node)
        queue.extend(value for _, value in _sorted_entries(node) if isinstance(value, dict))

    cursor = 0
    directory_offsets: Dict[int, int] = {}
    for node in directories:
        directory_offsets[id(node)] = cursor
        cursor += RESOURCE_DIRECTORY.size + RESOURCE_DIRECTORY_ENTRY.size * len(node)

    leaves: List[Tuple[int, ResourceKey, ResourceLeaf]] = []
    for node in directories:
        for key, value in _sorted_entries(node):
            if isinstance(value, dict):
                continue
            if not isinstance(value, ResourceLeaf):
                raise ResourceEditFailed(f"unsupported resource node for {key!r}")
            leaves.append((id(node), key, value))

    leaf_offsets: Dict[Tuple[int, ResourceKey], int] = {}
    for parent, key, _leaf in leaves:
        leaf_offsets[(parent, key)] = cursor
        cursor += RESOURCE_DATA_ENTRY.size

    name_offsets: Dict[str, int] = {}
    for node in directories:
        for key in node:
            if isinstance(key, str) and key not in name_offsets:
                name_offsets[key] = cursor
                cursor += 2 + len(key.encode("utf-16-le"))

    payload_offsets: List[int] = []
    cursor = _align(cursor, DATA_ALIGNMENT)
    for _parent, _key, leaf in leaves:
        payload_offsets.append(cursor)
        cursor = _align(cursor + len(leaf.data), DATA_ALIGNMENT)

    section = bytearray(cursor)
    for node in directories:
        entries = _sorted_entries(node)
        named_count = sum(1 for key, _ in entries if isinstance(key, str))
        offset = directory_offsets[id(node)]
        RESOURCE_DIRECTORY.pack_into(section, offset, 0, 0, 0, 0, named_count, len(entries) - named_count)
        offset += RESOURCE_DIRECTORY.size
        for key, value in entries:
            if isinstance(key, str):
                name_field = HIGH_BIT | name_offsets[key]
            elif 0 <= key < HIGH_BIT:
                name_field = key
            else:
                raise ResourceEditFailed(f"resource id {key} out of range")
            if isinstance(value, dict):
                target = HIGH_BIT | directory_offsets[id(value)]
            else:
                target = leaf_offsets[(id(node), key)]
            RESOURCE_DIRECTORY_ENTRY.pack_into(section, offset, name_field, target)
            offset += RESOURCE_DIRECTORY_ENTRY.size

    for (parent, key, leaf), payload_offset in zip(leaves, payload_offsets):
        RESOURCE_DATA_ENTRY.pack_into(
            section,
            leaf_offsets[(parent, key)],
            base_rva + payload_offset,
            len(leaf.data),
            leaf.codepage,
            0,
        )
        section[payload_offset : payload_offset + len(leaf.data)] = leaf.data

    for name, offset in name_offsets.items():
        encoded = name.encode("utf-16-le")
        struct.pack_into("<H", section, offset, len(encoded) // 2)
        section[offset + 2 : offset + 2 + len(encoded)] = encoded

    return bytes(section)


def _strip_certificate(pe: pefile.PE, overlay: bytes, overlay_start: int | None) -> bytes:
    security = pe.OPTIONAL_HEADER.DATA_DIRECTORY[SECURITY_DIRECTORY_INDEX]
    if not (security.VirtualAddress and security.Size):
        return overlay
    # The certificate directory holds a file offset, not an RVA.
    if overlay_start is not None and security.VirtualAddress >= overlay_start:
        start = security.VirtualAddress - overlay_start
        overlay = overlay[:start] + overlay[start + security.Size :]
    security.VirtualAddress = 0
    security.Size = 0
    return overlay


def _with_checksum(image: bytes) -> bytes:
    pe = pefile.PE(data=image, fast_load=True)
    try:
        pe.OPTIONAL_HEADER.CheckSum = pe.generate_checksum()
        return bytes(pe.write())
    finally:
        pe.close()


def _rebuild(pe: pefile.PE, tree: ResourceTree) -> bytes:
    optional = pe.OPTIONAL_HEADER
    file_alignment = optional.FileAlignment or 0x200
    section_alignment = optional.SectionAlignment or 0x1000
    sections = list(pe.sections)
    if not sections:
        raise ResourceEditFailed("executable has no sections")

    raw_end = max(s.PointerToRawData + s.SizeOfRawData for s in sections)
    overlay_start = raw_end if len(pe.__data__) > raw_end else None
    overlay = bytes(pe.__data__[raw_end:])
    overlay = _strip_certificate(pe, overlay, overlay_start)

    directory = optional.DATA_DIRECTORY[RESOURCE_DIRECTORY_INDEX]
    size = len(build_resource_section(tree, 0))
    section = pe.get_section_by_rva(directory.VirtualAddress) if directory.VirtualAddress else None

    if section is not None:
        start = directory.VirtualAddress - section.VirtualAddress
        raw_capacity = section.SizeOfRawData - start
        following = [s.VirtualAddress for s in sections if s.VirtualAddress > section.VirtualAddress]
        fits_virtually = not following or directory.VirtualAddress + size <= min(following)

        if size <= raw_capacity and fits_virtually:
            payload = build_resource_section(tree, directory.VirtualAddress)
            section.Misc_VirtualSize = max(section.Misc_VirtualSize, start + size)
            directory.Size = size
            optional.SizeOfImage = max(
                optional.SizeOfImage,
                _align(section.VirtualAddress + section.Misc_VirtualSize, section_alignment),
            )
            data = bytearray(pe.write())
            offset = section.PointerToRawData + start
            data[offset : offset + raw_capacity] = payload.ljust(raw_capacity, b"\x00")
            return _with_checksum(bytes(data[: max(raw_end, offset + raw_capacity)]) + overlay)

        is_last = not following and section.PointerToRawData + section.SizeOfRawData == raw_end
        if is_last:
            payload = build_resource_section(tree, directory.VirtualAddress)
            raw_size = _align(start + size, file_alignment)
            optional.SizeOfInitializedData += max(0, raw_size - section.SizeOfRawData)
            section.SizeOfRawData = raw_size
            section.Misc_VirtualSize = start + size
            directory.Size = size
            optional.SizeOfImage = _align(section.VirtualAddress + start + size, section_alignment)
            data = bytearray(pe.write())
            head = bytes(data[: section.PointerToRawData + start]).ljust(section.PointerToRawData + start, b"\x00")
            body = head + payload.ljust(raw_size - start, b"\x00")
            return _with_checksum(body + overlay)

    header_offset = (
        pe.DOS_HEADER.e_lfanew
        + 4
        + pe.FILE_HEADER.sizeof()
        + pe.FILE_HEADER.SizeOfOptionalHeader
        + SECTION_HEADER.size * len(sections)
    )
    first_raw = min((s.PointerToRawData for s in sections if s.SizeOfRawData), default=optional.SizeOfHeaders)
    if header_offset + SECTION_HEADER.size > min(optional.SizeOfHeaders, first_raw) or any(
        pe.__data__[header_offset : header_offset + SECTION_HEADER.size]
    ):
        raise ResourceEditFailed("no room for an additional section header")

    virtual_address = _align(
        max(s.VirtualAddress + max(s.Misc_VirtualSize, s.SizeOfRawData) for s in sections),
        section_alignment,
    )
    raw_pointer = _align(raw_end, file_alignment)
    raw_size = _align(size, file_alignment)
    payload = build_resource_section(tree, virtual_address)

    pe.FILE_HEADER.NumberOfSections += 1
    optional.SizeOfInitializedData += raw_size
    optional.SizeOfImage = _align(virtual_address + size, section_alignment)
    directory.VirtualAddress = virtual_address
    directory.Size = size

    data = bytearray(pe.write())
    SECTION_HEADER.pack_into(
        data,
        header_offset,
        APPENDED_SECTION_NAME,
        size,
        virtual_address,
        raw_size,
        raw_pointer,
        0,
        0,
        0,
        0,
        APPENDED_SECTION_CHARACTERISTICS,
    )
    body = bytes(data[:raw_end]).ljust(raw_pointer, b"\x00") + payload.ljust(raw_size, b"\x00")
    return _with_checksum(body + overlay)


def replace_resource_section(image: bytes, tree: ResourceTree) -> bytes:
    """Return ``image`` with its resources replaced by ``tree``."""

    pe = _load(image)
    try:
        return _rebuild(pe, tree)
    except (pefile.PEFormatError, struct.error) as exc:
        raise ResourceEditFailed(f"unable to rebuild executable: {exc}") from exc
    finally:
        pe.close()


def integrity_payload(file: str, value: str) -> bytes:
    record = [{"file": file, "alg": INTEGRITY_ALGORITHM, "value": value}]
    return json.dumps(record, separators=(",", ":")).encode("utf-8")


def with_integrity_record(tree: ResourceTree, payload: bytes) -> ResourceTree:
    """Return a copy of ``tree`` whose integrity resource holds ``payload`` only."""

    updated = dict(tree)
    existing = updated.get(INTEGRITY_RESOURCE_TYPE)
    names = dict(existing) if isinstance(existing, dict) else {}
    for name in list(names):
        if isinstance(name, str) and name.upper() == INTEGRITY_RESOURCE_NAME:
            del names[name]
    names[INTEGRITY_RESOURCE_NAME] = {INTEGRITY_LANGUAGE: ResourceLeaf(payload)}
    updated[INTEGRITY_RESOURCE_TYPE] = names
    return updated


def rewrite_integrity_resource(image: bytes, file: str, value: str) -> bytes:
    """Return ``image`` with the asar integrity record set to ``value``.

    ``file`` is the archive path relative to the executable, e.g.
    ``resources\\app.asar``.
    """

    tree = with_integrity_record(read_resource_tree(image), integrity_payload(file, value))
    return replace_resource_section(image, tree)
