"""Tests for tree scanning and the initial backup."""

import os

import pytest

from change_mirror import BootstrapError, IgnoreMatcher, init_backup, scan_tree
from conftest import write


def _tree(root):
    """Relative path -> file content (None for directories)."""
    out = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames:
            out[os.path.relpath(os.path.join(dirpath, name), root)] = None
        for name in filenames:
            full = os.path.join(dirpath, name)
            with open(full, "rb") as f:
                out[os.path.relpath(full, root)] = f.read()
    return out


class TestScanTree:
    def test_yields_files_and_directories(self, roots):
        source, _ = roots
        write(source / "sub" / "deep" / "c.txt", "c")
        write(source / "sub" / "b.txt", "b")

        found = {p.relative_to(source).as_posix(): is_dir for p, is_dir in scan_tree(source)}

        assert found == {
            "a.txt": False,
            "sub": True,
            "sub/b.txt": False,
            "sub/deep": True,
            "sub/deep/c.txt": False,
        }

    def test_directory_comes_before_its_children(self, roots):
        source, _ = roots
        write(source / "sub" / "deep" / "c.txt", "c")

        order = [p.relative_to(source).as_posix() for p, _ in scan_tree(source)]

        assert order.index("sub") < order.index("sub/deep") < order.index("sub/deep/c.txt")

    def test_symlink_loop_terminates(self, roots):
        source, _ = roots
        (source / "sub").mkdir()
        os.symlink(source, source / "sub" / "loop")

        paths = [p.relative_to(source).as_posix() for p, _ in scan_tree(source)]

        assert "sub" in paths
        assert "sub/loop" not in paths

    def test_symlink_alias_does_not_hide_real_directory(self, roots):
        """alias -> sub sorts first; both must still be walked."""
        source, _ = roots
        write(source / "sub" / "f.txt", "f")
        os.symlink(source / "sub", source / "alias")

        found = {p.relative_to(source).as_posix(): is_dir for p, is_dir in scan_tree(source)}

        assert found == {
            "a.txt": False,
            "alias": True,
            "alias/f.txt": False,
            "sub": True,
            "sub/f.txt": False,
        }

    def test_follows_symlinked_directory(self, roots, tmp_path):
        source, _ = roots
        outside = tmp_path / "outside"
        write(outside / "x.txt", "x")
        os.symlink(outside, source / "linked")

        found = {p.relative_to(source).as_posix(): is_dir for p, is_dir in scan_tree(source)}

        assert found["linked"] is True
        assert found["linked/x.txt"] is False

    def test_missing_root_raises(self, tmp_path):
        with pytest.raises(OSError):
            list(scan_tree(tmp_path / "nope"))

    def test_ignored_subtree_is_skipped(self, roots):
        source, _ = roots
        write(source / "node_modules" / "pkg" / "index.js", "x")
        write(source / "notes.swp", "x")
        ignore = IgnoreMatcher(source, ["node_modules/", "*.swp"])

        paths = {p.relative_to(source).as_posix() for p, _ in scan_tree(source, ignore)}

        assert paths == {"a.txt"}


class TestInitBackup:
    def test_single_file_is_copied(self, roots, logger):
        """A source holding a.txt="hello" yields a backup holding the same."""
        source, backup = roots

        copied = init_backup(source, backup, logger)

        assert copied == 1
        assert (backup / "a.txt").read_text() == "hello"

    def test_backup_matches_source_byte_for_byte(self, roots, logger):
        source, backup = roots
        write(source / "sub" / "b.txt", "bee")
        (source / "empty").mkdir()
        (source / "bin.dat").write_bytes(bytes(range(256)))

        init_backup(source, backup, logger)

        assert _tree(backup) == _tree(source)

    def test_aliased_directory_is_mirrored(self, roots, logger):
        source, backup = roots
        write(source / "sub" / "f.txt", "f")
        os.symlink(source / "sub", source / "alias")

        init_backup(source, backup, logger)

        assert (backup / "sub" / "f.txt").read_text() == "f"
        assert (backup / "alias" / "f.txt").read_text() == "f"

    def test_existing_backup_is_replaced(self, roots, logger):
        source, backup = roots
        write(backup / "stale.txt", "old")
        write(backup / "a.txt", "outdated")

        init_backup(source, backup, logger)

        assert _tree(backup) == {"a.txt": b"hello"}

    def test_missing_source_is_fatal(self, tmp_path, logger):
        with pytest.raises(BootstrapError):
            init_backup(tmp_path / "nope", tmp_path / "_backup", logger)
