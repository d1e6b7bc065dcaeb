import shutil
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import builders  # noqa: F401  (puts the package on sys.path)
from signal_styler import workspace
from signal_styler.config import DEFAULT_HASH_TIMEOUT, load_settings
from signal_styler.errors import IOFailure


class WorkspaceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_create_and_destroy(self) -> None:
        ws = workspace.create_workspace(self.root)

        self.assertTrue(ws.patch_dir.name.startswith(workspace.PATCH_PREFIX))
        self.assertTrue(ws.build_dir.name.startswith(workspace.BUILD_PREFIX))
        self.assertTrue((ws.patch_dir / "stylesheets").is_dir())
        self.assertEqual(list(ws.build_dir.iterdir()), [])

        workspace.destroy_workspace(ws)

        self.assertEqual(list(self.root.iterdir()), [])

    def test_each_run_gets_fresh_directories(self) -> None:
        first = workspace.create_workspace(self.root)
        second = workspace.create_workspace(self.root)

        self.assertNotEqual(first, second)

    def test_destroy_tolerates_missing_directories(self) -> None:
        ws = workspace.create_workspace(self.root)
        shutil.rmtree(ws.build_dir)

        workspace.destroy_workspace(ws)
        workspace.destroy_workspace(ws)

        self.assertFalse(ws.patch_dir.exists())

    def test_destroy_reports_failures_after_trying_both(self) -> None:
        ws = workspace.create_workspace(self.root)
        real_rmtree = shutil.rmtree

        def flaky_rmtree(path, *args, **kwargs):
            if Path(path) == ws.patch_dir:
                raise PermissionError("busy")
            return real_rmtree(path, *args, **kwargs)

        with mock.patch("signal_styler.workspace.shutil.rmtree", side_effect=flaky_rmtree):
            with self.assertRaises(IOFailure):
                workspace.destroy_workspace(ws)

        self.assertFalse(ws.build_dir.exists())
        self.assertTrue(ws.patch_dir.exists())

    def test_create_failure_leaves_nothing_behind(self) -> None:
        with self.assertRaises(IOFailure):
            workspace.create_workspace(self.root / "missing")

        real_mkdtemp = tempfile.mkdtemp
        calls = []

        def failing_second(*args, **kwargs):
            calls.append(kwargs.get("prefix"))
            if len(calls) == 2:
                raise OSError("disk full")
            return real_mkdtemp(*args, **kwargs)

        with mock.patch("signal_styler.workspace.tempfile.mkdtemp", side_effect=failing_second):
            with self.assertRaises(IOFailure):
                workspace.create_workspace(self.root)

        self.assertEqual(list(self.root.iterdir()), [])


class SettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = load_settings({})

        self.assertEqual(settings.cache_dir, Path.home() / ".cache")
        self.assertEqual(settings.backup_path.name, "signal-original.asar")
        self.assertEqual(settings.staging_path.name, "signal-styled.asar")
        self.assertEqual(settings.hash_timeout, DEFAULT_HASH_TIMEOUT)

    def test_environment_overrides(self) -> None:
        settings = load_settings(
            {"SIGNAL_STYLER_CACHE_DIR": "/tmp/styler", "SIGNAL_STYLER_HASH_TIMEOUT": "12.5"}
        )

        self.assertEqual(settings.backup_path, Path("/tmp/styler/signal-original.asar"))
        self.assertEqual(settings.hash_timeout, 12.5)

    def test_invalid_timeout_falls_back(self) -> None:
        for raw in ("soon", "0", "-3", "inf", "nan"):
            with self.subTest(raw=raw):
                with self.assertLogs("signal_styler.config", level="WARNING"):
                    settings = load_settings({"SIGNAL_STYLER_HASH_TIMEOUT": raw})
                self.assertEqual(settings.hash_timeout, DEFAULT_HASH_TIMEOUT)


if __name__ == "__main__":  # pragma: no cover - manual test runner support
    unittest.main()
