import hashlib
import json
import os
import stat
import struct
import tempfile
import unittest
from pathlib import Path

from builders import build_raw_asar, read_tree, write_tree
from signal_styler import asar
from signal_styler.errors import ArchiveCorrupt, ArchiveEntryNotFound, IOFailure

SAMPLE_TREE = {
    "package.json": b'{"name": "signal-desktop"}',
    "stylesheets/manifest.css": b"@import 'base.css';\n",
    "stylesheets/base.css": b"body { color: black; }\n",
    "images/tray-icons/base/signal-tray-icon-16x16-base.png": b"\x89PNG fake",
    "empty.txt": b"",
}


class HandBuiltArchiveTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.archive = self.root / "app.asar"
        header = {
            "files": {
                "a.txt": {"size": 5, "offset": "0"},
                "dir": {"files": {"b.txt": {"size": 3, "offset": "5"}}},
                "alias": {"link": "dir"},
            }
        }
        build_raw_asar(self.archive, header, b"hellobye")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_extract_entry_reads_bodies(self) -> None:
        self.assertEqual(asar.extract_entry(self.archive, "a.txt"), b"hello")
        self.assertEqual(asar.extract_entry(self.archive, "dir/b.txt"), b"bye")

    def test_extract_entry_follows_links(self) -> None:
        self.assertEqual(asar.extract_entry(self.archive, "alias/b.txt"), b"bye")

    def test_missing_entry(self) -> None:
        with self.assertRaises(ArchiveEntryNotFound):
            asar.extract_entry(self.archive, "stylesheets/manifest.css")

    def test_directory_is_not_an_entry(self) -> None:
        with self.assertRaises(ArchiveEntryNotFound):
            asar.extract_entry(self.archive, "dir")

    def test_read_header_reports_body_offset(self) -> None:
        header, data_offset = asar.read_header(self.archive)

        self.assertIn("a.txt", header["files"])
        raw = self.archive.read_bytes()
        self.assertEqual(raw[data_offset:], b"hellobye")


class CorruptArchiveTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.archive = self.root / "app.asar"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_truncated_archive(self) -> None:
        self.archive.write_bytes(b"\x04\x00")
        with self.assertRaises(ArchiveCorrupt):
            asar.read_header(self.archive)

    def test_header_larger_than_file(self) -> None:
        self.archive.write_bytes(struct.pack("<II", 4, 4096) + b"{}")
        with self.assertRaises(ArchiveCorrupt):
            asar.read_header(self.archive)

    def test_header_is_not_json(self) -> None:
        raw = b"not json"
        self.archive.write_bytes(struct.pack("<II", 4, 8 + len(raw)) + struct.pack("<Ii", 4 + len(raw), len(raw)) + raw)
        with self.assertRaises(ArchiveCorrupt):
            asar.read_header(self.archive)

    def test_entry_outside_bounds(self) -> None:
        build_raw_asar(self.archive, {"files": {"a.txt": {"size": 50, "offset": "0"}}}, b"short")
        with self.assertRaises(ArchiveCorrupt):
            asar.extract_entry(self.archive, "a.txt")

    def test_negative_offset_is_rejected(self) -> None:
        build_raw_asar(self.archive, {"files": {"a.txt": {"size": 4, "offset": "-8"}}}, b"BODY")
        with self.assertRaises(ArchiveCorrupt):
            asar.extract_entry(self.archive, "a.txt")

        dest = self.root / "out"
        dest.mkdir()
        with self.assertRaises(ArchiveCorrupt):
            asar.extract_all(self.archive, dest)

    def test_directory_node_without_mapping(self) -> None:
        build_raw_asar(self.archive, {"files": {"dir": {"files": []}}}, b"")
        dest = self.root / "out"
        dest.mkdir()

        with self.assertRaises(ArchiveCorrupt):
            asar.extract_all(self.archive, dest)
        with self.assertRaises(ArchiveCorrupt):
            asar.unpacked_entries(self.archive)
        with self.assertRaises(ArchiveCorrupt):
            asar.extract_entry(self.archive, "dir/a.txt")

    def test_traversal_is_rejected(self) -> None:
        build_raw_asar(self.archive, {"files": {"..": {"files": {"evil": {"size": 1, "offset": "0"}}}}}, b"x")
        dest = self.root / "out"
        dest.mkdir()

        with self.assertRaises(ArchiveCorrupt):
            asar.extract_all(self.archive, dest)
        self.assertFalse((self.root / "evil").exists())

    def test_link_traversal_is_rejected(self) -> None:
        build_raw_asar(self.archive, {"files": {"up": {"link": "../outside"}}}, b"")
        with self.assertRaises(ArchiveCorrupt):
            asar.extract_entry(self.archive, "up/file")


class PackTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.source = self.root / "source"
        write_tree(self.source, SAMPLE_TREE)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _extract(self, archive: Path, name: str = "out") -> Path:
        dest = self.root / name
        dest.mkdir()
        asar.extract_all(archive, dest)
        return dest

    def test_pack_then_extract_preserves_tree(self) -> None:
        archive = self.root / "app.asar"
        asar.pack(self.source, archive)

        self.assertEqual(read_tree(self._extract(archive)), SAMPLE_TREE)
        self.assertEqual(asar.extract_entry(archive, "stylesheets/base.css"), SAMPLE_TREE["stylesheets/base.css"])

    def test_pack_is_deterministic(self) -> None:
        first = self.root / "first.asar"
        second = self.root / "second.asar"
        asar.pack(self.source, first)
        asar.pack(self.source, second)

        self.assertEqual(first.read_bytes(), second.read_bytes())

    def test_header_layout(self) -> None:
        archive = self.root / "app.asar"
        asar.pack(self.source, archive)
        raw = archive.read_bytes()

        size_payload, header_size = struct.unpack_from("<II", raw, 0)
        pickle_payload, length = struct.unpack_from("<Ii", raw, 8)
        self.assertEqual(size_payload, 4)
        self.assertEqual(header_size % 4, 0)
        self.assertEqual(pickle_payload, header_size - 4)
        header = json.loads(raw[16 : 16 + length].decode("utf-8"))

        files = header["files"]
        self.assertEqual(list(files), sorted(files))
        node = files["package.json"]
        self.assertIsInstance(node["offset"], str)
        body_start = 8 + header_size + int(node["offset"])
        self.assertEqual(raw[body_start : body_start + node["size"]], SAMPLE_TREE["package.json"])

        integrity = node["integrity"]
        self.assertEqual(integrity["algorithm"], "SHA256")
        self.assertEqual(integrity["blockSize"], asar.INTEGRITY_BLOCK_SIZE)
        self.assertEqual(integrity["hash"], hashlib.sha256(SAMPLE_TREE["package.json"]).hexdigest())
        self.assertEqual(integrity["blocks"], [integrity["hash"]])

    def test_empty_file_integrity(self) -> None:
        record = asar.file_integrity(self.source / "empty.txt")

        self.assertEqual(record["blocks"], [hashlib.sha256(b"").hexdigest()])

    def test_encode_header_pads_to_four_bytes(self) -> None:
        encoded = asar.encode_header({"files": {"ü": {"size": 0, "offset": "0"}}})

        self.assertEqual(len(encoded) % 4, 0)
        self.assertIn("ü".encode("utf-8"), encoded)

    def test_extract_requires_empty_directory(self) -> None:
        archive = self.root / "app.asar"
        asar.pack(self.source, archive)
        dest = self.root / "busy"
        write_tree(dest, {"leftover": b"x"})

        with self.assertRaises(IOFailure):
            asar.extract_all(archive, dest)
        with self.assertRaises(IOFailure):
            asar.extract_all(archive, self.root / "missing")

    def test_unpacked_entries_stay_out_of_band(self) -> None:
        archive = self.root / "app.asar"
        unpacked_dir = self.root / "app.asar.unpacked"
        write_tree(unpacked_dir, {"package.json": SAMPLE_TREE["package.json"]})

        asar.pack(self.source, archive, unpacked={"package.json"})

        self.assertEqual(asar.unpacked_entries(archive), frozenset({"package.json"}))
        self.assertNotIn(SAMPLE_TREE["package.json"], archive.read_bytes())
        self.assertEqual(asar.extract_entry(archive, "package.json"), SAMPLE_TREE["package.json"])
        self.assertEqual(read_tree(self._extract(archive)), SAMPLE_TREE)

    def test_missing_unpacked_body(self) -> None:
        archive = self.root / "app.asar"
        asar.pack(self.source, archive, unpacked={"package.json"})

        with self.assertRaises(ArchiveCorrupt):
            asar.extract_entry(archive, "package.json")

    @unittest.skipIf(os.name == "nt", "executable bits are not tracked on Windows")
    def test_executable_bit_round_trips(self) -> None:
        tool = self.source / "tool.sh"
        tool.write_bytes(b"#!/bin/sh\n")
        tool.chmod(0o755)
        archive = self.root / "app.asar"
        asar.pack(self.source, archive)

        header, _ = asar.read_header(archive)
        self.assertTrue(header["files"]["tool.sh"]["executable"])
        self.assertNotIn("executable", header["files"]["package.json"])
        extracted = self._extract(archive) / "tool.sh"
        self.assertTrue(extracted.stat().st_mode & stat.S_IXUSR)

    @unittest.skipIf(os.name == "nt", "symlinks need extra privileges on Windows")
    def test_links_round_trip(self) -> None:
        os.symlink("stylesheets", self.source / "styles")
        archive = self.root / "app.asar"
        asar.pack(self.source, archive)

        header, _ = asar.read_header(archive)
        self.assertEqual(header["files"]["styles"], {"link": "stylesheets"})
        self.assertEqual(asar.extract_entry(archive, "styles/base.css"), SAMPLE_TREE["stylesheets/base.css"])

        dest = self._extract(archive)
        self.assertTrue((dest / "styles").is_symlink())
        self.assertEqual((dest / "styles" / "base.css").read_bytes(), SAMPLE_TREE["stylesheets/base.css"])

    @unittest.skipIf(os.name == "nt", "symlinks need extra privileges on Windows")
    def test_links_outside_the_tree_are_rejected(self) -> None:
        outside = self.root / "outside.txt"
        outside.write_bytes(b"secret")
        os.symlink(outside, self.source / "leak.txt")

        with self.assertRaises(IOFailure):
            asar.pack(self.source, self.root / "app.asar")

    def test_unreadable_source(self) -> None:
        with self.assertRaises(IOFailure):
            asar.pack(self.root / "missing", self.root / "app.asar")


if __name__ == "__main__":  # pragma: no cover - manual test runner support
    unittest.main()
