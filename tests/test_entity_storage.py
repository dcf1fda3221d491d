"""Tests for EntityStorageManager directory lifecycle"""

import itertools
import os
import threading
import time
from unittest.mock import patch

import pytest

from managers.entity_storage import EntityStorageManager, KeyedLocks
from models.asset import LifecycleState
from models.errors import ConflictError, InvalidOptionsError, StorageIOError


def visible_files(directory):
    return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))


@pytest.fixture
def manager(storage_root):
    return EntityStorageManager(storage_root, clock=lambda: 1696435200000)


class TestAllocate:
    """Tests for allocate_temporary"""

    def test_allocate_creates_temp_dir(self, manager, storage_root):
        handle = manager.allocate_temporary()

        assert handle.directory == "temp-1696435200000"
        assert handle.path == storage_root.resolve() / "temp-1696435200000"
        assert handle.path.is_dir()
        assert handle.state == LifecycleState.TEMPORARY
        assert handle.created_millis == 1696435200000
        assert handle.entity_id is None

    def test_allocate_same_millisecond_gets_suffix(self, manager):
        first = manager.allocate_temporary()
        second = manager.allocate_temporary()

        assert first.directory != second.directory
        assert second.directory.startswith("temp-1696435200000-")
        assert second.path.is_dir()

    def test_allocate_failure(self, manager):
        with patch("pathlib.Path.mkdir", side_effect=PermissionError("denied")):
            with pytest.raises(StorageIOError, match="denied"):
                manager.allocate_temporary()

    def test_root_is_created(self, tmp_path):
        root = tmp_path / "a" / "b"
        EntityStorageManager(root)
        assert root.is_dir()


class TestWriteAsset:
    """Tests for write_asset slot replacement"""

    def test_write_new_slot(self, manager):
        handle = manager.allocate_temporary()
        stored = manager.write_asset(handle, "cover", b"new-bytes", "image/webp")

        assert stored == handle.path / "cover.webp"
        assert stored.read_bytes() == b"new-bytes"
        assert visible_files(handle.path) == ["cover.webp"]

    def test_replace_same_extension(self, manager):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"old", "image/webp")
        manager.write_asset(handle, "cover", b"new", "image/webp")

        assert visible_files(handle.path) == ["cover.webp"]
        assert (handle.path / "cover.webp").read_bytes() == b"new"

    def test_replace_different_extension(self, manager):
        """Test the superseded file of the slot is removed after the new write"""
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"png-bytes", "image/png")
        manager.write_asset(handle, "cover", b"webp-bytes", "image/webp")

        assert visible_files(handle.path) == ["cover.webp"]

    def test_other_slots_untouched(self, manager):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"a", "image/webp")
        manager.write_asset(handle, "cover-thumb", b"b", "image/webp")
        manager.write_asset(handle, "cover", b"c", "image/png")

        assert visible_files(handle.path) == ["cover-thumb.webp", "cover.png"]

    def test_failed_write_keeps_old_file(self, manager):
        """Test a failing write leaves the previous file and no temp file"""
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"original", "image/webp")

        with patch("managers.entity_storage.os.replace", side_effect=OSError(28, "No space left on device")):
            with pytest.raises(StorageIOError, match="No space left"):
                manager.write_asset(handle, "cover", b"replacement", "image/webp")

        assert (handle.path / "cover.webp").read_bytes() == b"original"
        assert os.listdir(handle.path) == ["cover.webp"]

    def test_failed_write_with_different_extension_keeps_old_file(self, manager):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"original", "image/png")

        with patch("managers.entity_storage.os.fsync", side_effect=OSError("I/O error")):
            with pytest.raises(StorageIOError):
                manager.write_asset(handle, "cover", b"replacement", "image/webp")

        assert os.listdir(handle.path) == ["cover.png"]

    def test_invalid_slot(self, manager):
        handle = manager.allocate_temporary()
        with pytest.raises(InvalidOptionsError):
            manager.write_asset(handle, "../escape", b"x", "image/webp")

    def test_unknown_mime_type(self, manager):
        handle = manager.allocate_temporary()
        with pytest.raises(InvalidOptionsError, match="MIME"):
            manager.write_asset(handle, "cover", b"x", "application/pdf")

    def test_write_to_missing_directory(self, manager):
        handle = manager.open_entity("42")
        manager.remove("42")
        with pytest.raises(StorageIOError, match="does not exist"):
            manager.write_asset(handle, "cover", b"x", "image/webp")


class TestCommit:
    """Tests for commit"""

    def test_commit_moves_files(self, manager, storage_root):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"\x00\x01cover", "image/webp")
        manager.write_asset(handle, "inline-1", b"\x02inline", "image/png")
        temp_path = handle.path

        permanent = manager.commit(handle, "entity-42")

        assert permanent == storage_root.resolve() / "entity-42"
        assert not temp_path.exists()
        assert (permanent / "cover.webp").read_bytes() == b"\x00\x01cover"
        assert (permanent / "inline-1.png").read_bytes() == b"\x02inline"
        assert handle.state == LifecycleState.COMMITTED
        assert handle.entity_id == "entity-42"
        assert handle.directory == "entity-42"
        assert handle.path == permanent

    def test_commit_twice_conflicts(self, manager):
        handle = manager.allocate_temporary()
        manager.commit(handle, "42")
        with pytest.raises(ConflictError):
            manager.commit(handle, "43")

    def test_commit_resumed_copy_of_committed_handle_conflicts(self, manager):
        handle = manager.allocate_temporary()
        copy = manager.resume(handle.directory)
        manager.commit(handle, "42")
        with pytest.raises(ConflictError, match="already been committed"):
            manager.commit(copy, "43")

    def test_commit_existing_entity_conflicts(self, manager):
        manager.open_entity("42")
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"x", "image/webp")

        with pytest.raises(ConflictError, match="already exists"):
            manager.commit(handle, "42")
        # Temporary directory stays usable
        assert handle.is_temporary
        assert (handle.path / "cover.webp").exists()

    def test_commit_rename_failure_is_retryable(self, manager):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "cover", b"x", "image/webp")

        with patch("managers.entity_storage.os.rename", side_effect=OSError("EIO")):
            with pytest.raises(StorageIOError):
                manager.commit(handle, "42")

        assert handle.path.is_dir()
        assert manager.commit(handle, "42").is_dir()

    def test_commit_invalid_entity_id(self, manager):
        handle = manager.allocate_temporary()
        with pytest.raises(InvalidOptionsError):
            manager.commit(handle, "temp-999")

    def test_commit_committed_handle_conflicts(self, manager):
        handle = manager.open_entity("42")
        with pytest.raises(ConflictError):
            manager.commit(handle, "43")


class TestRemove:
    """Tests for remove"""

    def test_remove_deletes_directory(self, manager):
        handle = manager.open_entity("42")
        manager.write_asset(handle, "cover", b"x", "image/webp")

        assert manager.remove("42") is True
        assert not handle.path.exists()

    def test_remove_is_idempotent(self, manager):
        assert manager.remove("never-existed") is False
        manager.open_entity("42")
        manager.remove("42")
        assert manager.remove("42") is False

    def test_remove_failure(self, manager):
        manager.open_entity("42")
        with patch("managers.entity_storage.shutil.rmtree", side_effect=PermissionError("denied")):
            with pytest.raises(StorageIOError, match="denied"):
                manager.remove("42")

    def test_remove_rejects_temporary_names(self, manager):
        with pytest.raises(InvalidOptionsError):
            manager.remove("temp-1")


class TestResumeAndListing:
    """Tests for resume, list_assets and retain_only"""

    def test_resume_temporary(self, manager):
        handle = manager.allocate_temporary()
        resumed = manager.resume(handle.directory)
        assert resumed.state == LifecycleState.TEMPORARY
        assert resumed.created_millis == 1696435200000
        assert resumed.path == handle.path

    def test_resume_committed(self, manager):
        manager.open_entity("42")
        resumed = manager.resume("42")
        assert resumed.state == LifecycleState.COMMITTED
        assert resumed.entity_id == "42"

    def test_resume_missing(self, manager):
        with pytest.raises(StorageIOError):
            manager.resume("temp-5")

    def test_resume_invalid_name(self, manager):
        with pytest.raises(InvalidOptionsError):
            manager.resume("../outside")

    def test_list_assets_skips_hidden(self, manager):
        handle = manager.allocate_temporary()
        manager.write_asset(handle, "b", b"x", "image/webp")
        manager.write_asset(handle, "a", b"x", "image/webp")
        (handle.path / ".cover.webp.1234.tmp").write_bytes(b"partial")

        assert [p.name for p in manager.list_assets(handle)] == ["a.webp", "b.webp"]

    def test_retain_only(self, manager):
        handle = manager.open_entity("42")
        for slot in ("cover", "img-1", "img-2"):
            manager.write_asset(handle, slot, b"x", "image/webp")

        removed = manager.retain_only("42", {"cover.webp", "img-2.webp"})

        assert removed == ["img-1.webp"]
        assert visible_files(handle.path) == ["cover.webp", "img-2.webp"]

    def test_retain_nothing_removes_directory(self, manager):
        handle = manager.open_entity("42")
        manager.write_asset(handle, "cover", b"x", "image/webp")

        assert manager.retain_only("42", []) == ["cover.webp"]
        assert not handle.path.exists()

    def test_retain_only_missing_entity(self, manager):
        assert manager.retain_only("404", []) == []


class TestKeyedLocks:
    """Tests for KeyedLocks"""

    def test_hold_serializes_same_key(self):
        locks = KeyedLocks()
        events = []
        entered = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold("42"):
                events.append("first-start")
                entered.set()
                release.wait(timeout=5)
                events.append("first-end")

        def second():
            entered.wait(timeout=5)
            with locks.hold("42"):
                events.append("second")

        t1 = threading.Thread(target=first)
        t2 = threading.Thread(target=second)
        t1.start()
        t2.start()
        entered.wait(timeout=5)
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)

        assert events == ["first-start", "first-end", "second"]

    def test_hold_multiple_keys_releases_all(self):
        locks = KeyedLocks()
        with locks.hold("b", "a", "a"):
            assert locks.holders("a") == 1
            assert locks.holders("b") == 1
        assert locks.holders("a") == 0
        assert len(locks) == 0

    def test_entries_dropped_when_idle(self):
        """Test the lock map only holds keys currently in use"""
        locks = KeyedLocks()
        for i in range(100):
            with locks.hold(f"entity-{i}"):
                pass
        assert len(locks) == 0

    def test_waiter_keeps_lock_alive(self):
        """Test a thread waiting on a key still excludes later holders"""
        locks = KeyedLocks()
        inside = []
        active = []

        def worker(name):
            with locks.hold("x"):
                active.append(name)
                inside.append(len(active))
                time.sleep(0.05)
                active.remove(name)

        with locks.hold("x"):
            waiter = threading.Thread(target=worker, args=("waiter",))
            waiter.start()
            deadline = time.time() + 5
            while locks.holders("x") < 2 and time.time() < deadline:
                time.sleep(0.001)
            assert locks.holders("x") == 2

        # The key is still checked out by the waiter, so a newcomer must queue behind it
        late = threading.Thread(target=worker, args=("late",))
        late.start()
        waiter.join(timeout=5)
        late.join(timeout=5)

        assert inside == [1, 1]
        assert len(locks) == 0


class TestPromotedHistory:
    """Tests for double-commit detection across resumed handles"""

    def test_resume_committed_temporary_conflicts(self, manager):
        handle = manager.allocate_temporary()
        directory = handle.directory
        manager.commit(handle, "42")

        with pytest.raises(ConflictError, match="already been committed"):
            manager.resume(directory)

    def test_history_is_bounded(self, storage_root):
        manager = EntityStorageManager(storage_root, clock=itertools.count(1000).__next__)
        with patch("managers.entity_storage.PROMOTED_HISTORY", 2):
            names = []
            for i in range(3):
                handle = manager.allocate_temporary()
                names.append(handle.directory)
                manager.commit(handle, f"entity-{i}")

        with pytest.raises(StorageIOError):
            manager.resume(names[0])
        with pytest.raises(ConflictError):
            manager.resume(names[2])
