"""
Tests for restoring backups onto a directory.

Uses Python's unittest module with temporary directories.
"""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
import unittest
from pathlib import Path

from snapstash.backup.collector import CollectionSource, collect_backup
from snapstash.backup.compression import ENCODING_BROTLI
from snapstash.backup.envelope import encode_item
from snapstash.backup.manager import (
    load_backup_file,
    read_artifact,
    restore_backup,
    write_artifact,
)
from snapstash.backup.models import (
    FORMAT_VERSION,
    Backup,
    ChangeKind,
    Item,
    RegularFile,
    SourceInfo,
    Submodule,
    Symlink,
)
from snapstash.backup.restore import safe_relative_path
from snapstash.errors import (
    CryptoError,
    FormatError,
    PathSafetyError,
    SnapstashError,
    SourceAccessError,
)


def make_backup(*items: Item, version: int = FORMAT_VERSION) -> Backup:
    return Backup(
        format_version=version,
        created_at="2024-05-01T12:00:00+00:00",
        source_root="/work/repo",
        head=None,
        payload_encoding=ENCODING_BROTLI,
        source=SourceInfo(mode="index", root="/work/repo"),
        items=tuple(encode_item(item, ENCODING_BROTLI) for item in items),
    )


def add(path: str, content: bytes, mode: str | None = "100644") -> Item:
    return Item(kind=ChangeKind.ADD, path=path, entry=RegularFile(content=content, mode=mode))


def can_symlink(directory: Path) -> bool:
    candidate = directory / ".symlink-check"
    try:
        os.symlink("target", candidate)
    except (OSError, NotImplementedError):
        return False
    candidate.unlink()
    return True


class RestoreTestCase(unittest.TestCase):
    """Shared temporary directories."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.source = Path(self.temp_dir) / "source"
        self.target = Path(self.temp_dir) / "target"
        self.source.mkdir()
        self.target.mkdir()

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestSafeRelativePath(unittest.TestCase):
    """Tests for item path validation."""

    def test_accepts_relative_paths(self) -> None:
        """Test ordinary relative paths are accepted and normalized."""
        self.assertEqual(safe_relative_path("a/b.txt"), "a/b.txt")
        self.assertEqual(safe_relative_path("a/./b/../c.txt"), "a/c.txt")
        self.assertEqual(safe_relative_path("a:b"), "a:b")

    def test_rejects_escapes(self) -> None:
        """Test paths leaving the restore root are rejected."""
        for path in ("../../etc/passwd", "..", "a/../../b"):
            with self.subTest(path=path):
                with self.assertRaises(PathSafetyError):
                    safe_relative_path(path)

    def test_rejects_absolute(self) -> None:
        """Test absolute POSIX and Windows paths are rejected."""
        for path in ("/etc/passwd", "C:\\Windows\\system.ini", "\\\\server\\share\\x"):
            with self.subTest(path=path):
                with self.assertRaises(PathSafetyError):
                    safe_relative_path(path)

    def test_rejects_root_itself(self) -> None:
        """Test empty paths and the root itself are rejected."""
        for path in ("", ".", "a/.."):
            with self.subTest(path=path):
                with self.assertRaises(PathSafetyError):
                    safe_relative_path(path)

    def test_rejects_nul_byte(self) -> None:
        """Test paths with an embedded NUL byte are rejected."""
        with self.assertRaises(PathSafetyError):
            safe_relative_path("a\x00b")


class TestRestore(RestoreTestCase):
    """Tests for restore_backup."""

    def test_writes_files_and_permissions(self) -> None:
        """Test content, parent directories and permission bits are restored."""
        backup = make_backup(add("bin/run.sh", b"#!/bin/sh\n", mode="100755"))

        result = restore_backup(backup, self.target)

        path = self.target / "bin" / "run.sh"
        self.assertEqual(path.read_bytes(), b"#!/bin/sh\n")
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(path.stat().st_mode), 0o755)
        self.assertEqual(result.restored, 1)
        self.assertEqual(result.total, 1)
        self.assertEqual(result.target_root, self.target.resolve())

    def test_overwrites_existing_file(self) -> None:
        """Test existing files are replaced."""
        (self.target / "a.txt").write_bytes(b"old")
        restore_backup(make_backup(add("a.txt", b"new")), self.target)
        self.assertEqual((self.target / "a.txt").read_bytes(), b"new")

    def test_creates_missing_target(self) -> None:
        """Test the restore root is created when absent."""
        target = self.target / "nested" / "root"
        restore_backup(make_backup(add("a.txt", b"x")), target)
        self.assertTrue((target / "a.txt").exists())

    def test_delete_removes_file(self) -> None:
        """Test delete items remove existing files."""
        (self.target / "gone.txt").write_bytes(b"bye")
        result = restore_backup(make_backup(Item(kind=ChangeKind.DELETE, path="gone.txt")), self.target)
        self.assertFalse((self.target / "gone.txt").exists())
        self.assertEqual(result.removed, 1)

    def test_delete_is_idempotent(self) -> None:
        """Test deleting a missing file does not raise and still counts."""
        backup = make_backup(Item(kind=ChangeKind.DELETE, path="never-existed.txt"))
        result = restore_backup(backup, self.target)
        self.assertEqual(result.removed, 1)
        result = restore_backup(backup, self.target)
        self.assertEqual(result.removed, 1)

    def test_delete_under_regular_file(self) -> None:
        """Test deleting below a path that is a regular file counts as already absent."""
        (self.target / "f").write_bytes(b"plain file")
        result = restore_backup(make_backup(Item(kind=ChangeKind.DELETE, path="f/x")), self.target)
        self.assertEqual(result.removed, 1)
        self.assertEqual((self.target / "f").read_bytes(), b"plain file")

    def test_nul_byte_path_is_a_snapstash_error(self) -> None:
        """Test a NUL byte in an item path aborts with PathSafetyError, not ValueError."""
        with self.assertRaises(SnapstashError):
            restore_backup(make_backup(add("a\x00b", b"x")), self.target)
        self.assertEqual(list(self.target.iterdir()), [])

    def test_symlinked_directory_cannot_escape(self) -> None:
        """Test a file written through a restored symlink directory must stay under the root."""
        if not can_symlink(self.target):
            self.skipTest("symlinks are not supported here")
        outside = Path(self.temp_dir) / "outside"
        outside.mkdir()
        backup = make_backup(
            Item(kind=ChangeKind.ADD, path="d", entry=Symlink(target=str(outside))),
            add("d/pwn.txt", b"escaped"),
        )

        with self.assertRaises(PathSafetyError):
            restore_backup(backup, self.target)

        self.assertFalse((outside / "pwn.txt").exists())

    def test_symlinked_directory_inside_root(self) -> None:
        """Test symlinked directories that stay under the root are still usable."""
        if not can_symlink(self.target):
            self.skipTest("symlinks are not supported here")
        (self.target / "real").mkdir()
        backup = make_backup(
            Item(kind=ChangeKind.ADD, path="alias", entry=Symlink(target="real")),
            add("alias/file.txt", b"inside"),
        )

        result = restore_backup(backup, self.target)

        self.assertEqual((self.target / "real" / "file.txt").read_bytes(), b"inside")
        self.assertEqual(result.restored, 2)

    def test_rename_with_directory_at_old_path(self) -> None:
        """Test rename cleanup that cannot remove the old path does not abort the restore."""
        (self.target / "old").mkdir()
        (self.target / "old" / "keep.txt").write_bytes(b"k")
        item = Item(
            kind=ChangeKind.RENAME,
            path="new.txt",
            old_path="old",
            entry=RegularFile(content=b"content"),
        )

        result = restore_backup(make_backup(item), self.target)

        self.assertTrue((self.target / "old" / "keep.txt").exists())
        self.assertEqual((self.target / "new.txt").read_bytes(), b"content")
        self.assertEqual(result.restored, 1)
        self.assertEqual(result.removed, 0)

    def test_submodule_is_skipped(self) -> None:
        """Test submodule placeholders are never written."""
        backup = make_backup(Item(kind=ChangeKind.ADD, path="vendor/lib", entry=Submodule()))
        with self.assertLogs("snapstash.backup.restore", level="WARNING"):
            result = restore_backup(backup, self.target)
        self.assertFalse((self.target / "vendor" / "lib").exists())
        self.assertEqual(result.skipped, 1)
        self.assertEqual(result.restored, 0)

    def test_rename_removes_old_path(self) -> None:
        """Test renames write the new path and remove the old one."""
        (self.target / "old.txt").write_bytes(b"content")
        item = Item(
            kind=ChangeKind.RENAME,
            path="new.txt",
            old_path="old.txt",
            entry=RegularFile(content=b"content"),
        )
        result = restore_backup(make_backup(item), self.target)
        self.assertFalse((self.target / "old.txt").exists())
        self.assertEqual((self.target / "new.txt").read_bytes(), b"content")
        self.assertEqual(result.removed, 1)
        self.assertEqual(result.restored, 1)

    def test_copy_keeps_old_path(self) -> None:
        """Test copies leave their source in place."""
        (self.target / "orig.txt").write_bytes(b"content")
        item = Item(
            kind=ChangeKind.COPY,
            path="copy.txt",
            old_path="orig.txt",
            entry=RegularFile(content=b"content"),
        )
        result = restore_backup(make_backup(item), self.target)
        self.assertTrue((self.target / "orig.txt").exists())
        self.assertTrue((self.target / "copy.txt").exists())
        self.assertEqual(result.removed, 0)

    def test_unsafe_path_writes_nothing(self) -> None:
        """Test an escaping path aborts before anything is written."""
        backup = make_backup(add("../../etc/passwd", b"root::0:0"))
        with self.assertRaises(PathSafetyError):
            restore_backup(backup, self.target)
        self.assertEqual(list(self.target.iterdir()), [])
        self.assertFalse((Path(self.temp_dir).parent / "etc" / "passwd").exists())

    def test_absolute_path_writes_nothing(self) -> None:
        """Test an absolute path aborts the restore."""
        outside = Path(self.temp_dir) / "outside.txt"
        backup = make_backup(add(str(outside), b"x"))
        with self.assertRaises(PathSafetyError):
            restore_backup(backup, self.target)
        self.assertFalse(outside.exists())

    def test_unsupported_version(self) -> None:
        """Test restore refuses unknown format versions."""
        with self.assertRaises(FormatError):
            restore_backup(make_backup(add("a.txt", b"x"), version=9), self.target)

    def test_progress_events(self) -> None:
        """Test each item reports processing and done."""
        events = []
        restore_backup(make_backup(add("a.txt", b"x"), add("b.txt", b"yy")), self.target, events.append)
        self.assertEqual([(e.phase, e.path) for e in events], [
            ("processing", "a.txt"),
            ("done", "a.txt"),
            ("processing", "b.txt"),
            ("done", "b.txt"),
        ])
        self.assertEqual(events[-1].raw_bytes, 2)

    def test_symlink_restore(self) -> None:
        """Test symlinks are recreated with their exact target text."""
        if not can_symlink(self.target):
            self.skipTest("symlinks are not supported here")
        backup = make_backup(Item(kind=ChangeKind.ADD, path="link", entry=Symlink(target="target.txt")))
        result = restore_backup(backup, self.target)
        self.assertTrue((self.target / "link").is_symlink())
        self.assertEqual(os.readlink(self.target / "link"), "target.txt")
        self.assertEqual(result.restored, 1)


class TestEndToEnd(RestoreTestCase):
    """Backup and restore through artifact files."""

    def backup_source(self, password: str | None = None, **kwargs) -> Path:
        collection = collect_backup(CollectionSource(mode="fs", root=self.source, **kwargs))
        artifact = Path(self.temp_dir) / "backup.txt"
        write_artifact(collection.backup, artifact, password)
        return artifact

    def test_plain_round_trip(self) -> None:
        """Test a ten byte file comes back byte for byte."""
        (self.source / "a.txt").write_bytes(b"0123456789")
        artifact = self.backup_source()

        self.assertTrue(read_artifact(artifact).startswith(b"SSP1:"))
        result = restore_backup(load_backup_file(artifact), self.target)

        self.assertEqual((self.target / "a.txt").read_bytes(), b"0123456789")
        self.assertEqual(result.restored, 1)

    def test_encrypted_round_trip(self) -> None:
        """Test an encrypted artifact restores with the right password."""
        (self.source / "a.txt").write_bytes(b"secret")
        artifact = self.backup_source(password="hunter2")

        backup = load_backup_file(artifact, "hunter2")
        restore_backup(backup, self.target)

        self.assertTrue(backup.encrypted)
        self.assertEqual((self.target / "a.txt").read_bytes(), b"secret")

    def test_wrong_password_writes_nothing(self) -> None:
        """Test a wrong password fails before anything is restored."""
        (self.source / "a.txt").write_bytes(b"secret")
        artifact = self.backup_source(password="hunter2")

        with self.assertRaises(CryptoError):
            restore_backup(load_backup_file(artifact, "wrong"), self.target)
        self.assertEqual(list(self.target.iterdir()), [])

    def test_symlink_round_trip(self) -> None:
        """Test a symlink survives backup and restore."""
        if not can_symlink(self.source):
            self.skipTest("symlinks are not supported here")
        (self.source / "target.txt").write_bytes(b"t")
        os.symlink("target.txt", self.source / "link")
        artifact = self.backup_source()

        restore_backup(load_backup_file(artifact), self.target)

        self.assertTrue((self.target / "link").is_symlink())
        self.assertEqual(os.readlink(self.target / "link"), "target.txt")

    def test_excludes_round_trip(self) -> None:
        """Test excluded files are absent after restore."""
        (self.source / "a.log").write_bytes(b"log")
        (self.source / "b.txt").write_bytes(b"txt")
        artifact = self.backup_source(excludes=("*.log",))

        restore_backup(load_backup_file(artifact), self.target)

        self.assertEqual(sorted(p.name for p in self.target.iterdir()), ["b.txt"])

    def test_missing_artifact(self) -> None:
        """Test reading a missing artifact is a source access error."""
        with self.assertRaises(SourceAccessError):
            load_backup_file(Path(self.temp_dir) / "missing.txt")

    def test_write_replaces_atomically(self) -> None:
        """Test writing leaves no temporary file behind."""
        (self.source / "a.txt").write_bytes(b"a")
        artifact = self.backup_source()
        self.assertEqual(sorted(p.name for p in artifact.parent.iterdir() if p.is_file()), ["backup.txt"])


if __name__ == "__main__":
    unittest.main()
