"""Tests for notification classification and path rebasing."""

import pytest

from change_mirror import (
    ChangeEvent,
    DropReason,
    IgnoreMatcher,
    Notification,
    Op,
    Operation,
    classify,
    normalize_target,
    rebase,
)
from conftest import write


class TestPaths:
    def test_rebase_swaps_prefix(self, roots):
        source, backup = roots
        assert rebase(source / "sub" / "a.txt", source, backup) == backup / "sub" / "a.txt"

    def test_rebase_rejects_outside_paths(self, roots, tmp_path):
        source, backup = roots
        with pytest.raises(ValueError):
            rebase(tmp_path / "elsewhere.txt", source, backup)

    def test_rebase_rejects_sibling_with_shared_prefix(self, roots):
        source, backup = roots
        with pytest.raises(ValueError):
            rebase(source.parent / (source.name + "2") / "a.txt", source, backup)

    def test_rebase_rejects_the_root_itself(self, roots):
        source, backup = roots
        with pytest.raises(ValueError):
            rebase(source, source, backup)

    def test_trailing_tilde_is_stripped(self):
        assert normalize_target("/w/notes.txt~") == normalize_target("/w/notes.txt")

    def test_name_of_only_markers_is_kept(self):
        assert normalize_target("/w/~").name == "~"


class TestClassify:
    def test_write_is_modify(self, mirrored):
        source, backup = mirrored
        events, drops = classify(Notification(str(source / "a.txt"), Op.WRITE), source, backup)

        assert events == [ChangeEvent(source / "a.txt", backup / "a.txt", Operation.MODIFY)]
        assert drops == []

    def test_create_of_new_path(self, mirrored):
        source, backup = mirrored
        write(source / "b.txt", "")

        events, _ = classify(Notification(str(source / "b.txt"), Op.CREATE), source, backup)

        assert events == [ChangeEvent(source / "b.txt", backup / "b.txt", Operation.CREATE)]

    def test_duplicate_create_is_dropped(self, mirrored):
        source, backup = mirrored

        events, drops = classify(Notification(str(source / "a.txt"), Op.CREATE), source, backup)

        assert events == []
        assert drops == [DropReason.DUPLICATE_CREATE]

    def test_remove_of_missing_source(self, mirrored):
        source, backup = mirrored
        (source / "a.txt").unlink()

        events, _ = classify(Notification(str(source / "a.txt"), Op.REMOVE), source, backup)

        assert [e.operation for e in events] == [Operation.REMOVE]

    def test_stale_remove_is_dropped(self, mirrored):
        source, backup = mirrored

        events, drops = classify(Notification(str(source / "a.txt"), Op.REMOVE), source, backup)

        assert events == []
        assert drops == [DropReason.STALE_REMOVE]

    def test_editor_backup_removal_is_stale(self, mirrored):
        """Deleting a.txt~ maps onto a.txt, which still exists."""
        source, backup = mirrored

        _, drops = classify(Notification(str(source / "a.txt~"), Op.REMOVE), source, backup)

        assert drops == [DropReason.STALE_REMOVE]

    def test_rename_is_rename_away(self, mirrored):
        source, backup = mirrored

        events, _ = classify(Notification(str(source / "a.txt"), Op.RENAME), source, backup)

        assert [e.operation for e in events] == [Operation.RENAME_AWAY]

    def test_attribute_only_is_dropped(self, mirrored):
        source, backup = mirrored

        events, drops = classify(Notification(str(source / "a.txt"), Op.CHMOD), source, backup)

        assert events == []
        assert drops == [DropReason.ATTRIBUTE_ONLY]

    def test_multiple_bits_give_one_event_each(self, mirrored):
        source, backup = mirrored
        write(source / "b.txt", "data")

        events, _ = classify(
            Notification(str(source / "b.txt"), Op.WRITE | Op.CREATE | Op.CHMOD), source, backup
        )

        assert [e.operation for e in events] == [Operation.CREATE, Operation.MODIFY]

    def test_outside_source_is_dropped(self, mirrored, tmp_path):
        source, backup = mirrored

        events, drops = classify(Notification(str(tmp_path / "x.txt"), Op.WRITE), source, backup)

        assert events == []
        assert drops == [DropReason.OUTSIDE_SOURCE]

    def test_ignored_path_is_dropped(self, mirrored):
        source, backup = mirrored
        ignore = IgnoreMatcher(source, ["*.swp"])

        events, drops = classify(Notification(str(source / ".a.txt.swp"), Op.WRITE), source, backup, ignore)

        assert events == []
        assert drops == [DropReason.IGNORED]
