"""Directory lifecycle for entity-scoped assets: allocate, write, commit, remove"""

import logging
import os
import secrets
import shutil
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union

from managers.storage_layout import (
    is_valid_entity_id,
    parse_temporary_timestamp,
    permanent_dir_for,
    slot_filename,
    slot_of,
    temporary_dir_for,
    validate_entity_id,
    validate_logical_slot,
)
from models.asset import LifecycleState, StorageHandle
from models.errors import ConflictError, InvalidOptionsError, StorageIOError

logger = logging.getLogger("AssetStore")

MIME_EXTENSIONS = {
    "image/webp": "webp",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/tiff": "tiff",
    "image/bmp": "bmp",
}

# How many promoted temporary names are remembered for double-commit detection
PROMOTED_HISTORY = 4096


def _now_millis() -> int:
    return int(time.time() * 1000)


def _is_hidden(path: Path) -> bool:
    return path.name.startswith(".")


class KeyedLocks:
    """One lock per directory name, created on demand.

    Holders of the same key are serialized; different keys never contend.
    An entry lives only while someone holds or waits for it, so the map
    stays as small as the number of directories currently in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._entries: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def holders(self, key: str) -> int:
        with self._guard:
            entry = self._entries.get(key)
            return entry[1] if entry else 0

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._entries[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._entries[key]

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Fixed acquisition order so two multi-key holders cannot deadlock
        ordered = sorted(set(k for k in keys if k))
        checked_out = []
        acquired = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                checked_out.append(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)


def atomic_write(target_path: Path, data: bytes) -> None:
    """Write bytes to a hidden temp file beside the target, then rename over it.

    Raises:
        StorageIOError: If the write fails (the target is left untouched)
    """
    temp_path = target_path.parent / f".{target_path.name}.{secrets.token_hex(4)}.tmp"
    try:
        with open(temp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target_path)
    except OSError as e:
        # Clean up temp file on error
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.warning(f"Failed to remove temp file {temp_path}: {cleanup_error}")
        raise StorageIOError(f"Failed to write {target_path}: {e}", target_path) from e


class EntityStorageManager:
    """Owns creation, promotion and deletion of entity asset directories.

    Mutating calls against the same directory must be serialized by the
    caller (see ``KeyedLocks``); calls for different entities are independent.
    """

    def __init__(self, root: Union[str, Path], clock: Optional[Callable[[], int]] = None):
        self.root = Path(root).resolve()
        self._clock = clock or _now_millis
        self._commit_guard = threading.Lock()
        # Recently promoted temporary names, oldest first
        self._promoted: "OrderedDict[str, None]" = OrderedDict()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create storage root {self.root}: {e}", self.root) from e
        logger.info(f"Initialized EntityStorageManager with root={self.root}")

    def allocate_temporary(self) -> StorageHandle:
        """Create a working directory for an entity that does not exist yet.

        Raises:
            StorageIOError: If the directory cannot be created
        """
        created = self._clock()
        name = temporary_dir_for(created)
        path = self.root / name
        try:
            try:
                path.mkdir()
            except FileExistsError:
                name = temporary_dir_for(created, secrets.token_hex(4))
                path = self.root / name
                path.mkdir()
        except OSError as e:
            raise StorageIOError(f"Cannot create temporary directory {path}: {e}", path) from e

        logger.info(f"Allocated temporary directory {name}")
        return StorageHandle(
            directory=name,
            path=path,
            state=LifecycleState.TEMPORARY,
            created_millis=created,
        )

    def open_entity(self, entity_id: str) -> StorageHandle:
        """Handle for a committed entity's directory, created if missing"""
        name = permanent_dir_for(entity_id)
        path = self.root / name
        try:
            path.mkdir(exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create entity directory {path}: {e}", path) from e
        return StorageHandle(
            directory=name,
            path=path,
            state=LifecycleState.COMMITTED,
            entity_id=entity_id,
        )

    def resume(self, directory: str) -> StorageHandle:
        """Rebuild a handle from a directory name returned earlier.

        Raises:
            InvalidOptionsError: If the name is neither temporary nor a valid entity id
            ConflictError: If the temporary directory was already committed
            StorageIOError: If the directory does not exist
        """
        created = parse_temporary_timestamp(directory)
        if created is None and not is_valid_entity_id(directory):
            raise InvalidOptionsError(f"Not an asset directory name: {directory!r}")
        if created is not None and directory in self._promoted:
            raise ConflictError(f"Directory {directory} has already been committed", self.root / directory)

        path = self.root / directory
        if not path.is_dir():
            raise StorageIOError(f"Asset directory does not exist: {path}", path)

        if created is not None:
            return StorageHandle(
                directory=directory,
                path=path,
                state=LifecycleState.TEMPORARY,
                created_millis=created,
            )
        return StorageHandle(
            directory=directory,
            path=path,
            state=LifecycleState.COMMITTED,
            entity_id=directory,
        )

    def write_asset(self, handle: StorageHandle, logical_slot: str, processed_bytes: bytes, mime_type: str) -> Path:
        """Store bytes at a logical slot, replacing whatever the slot held.

        The new file is written to a hidden temp file and atomically renamed
        into place; superseded files of the slot are deleted only afterwards.

        Returns:
            Path of the stored file

        Raises:
            InvalidOptionsError: If the slot name or MIME type is not accepted
            StorageIOError: If the write fails (prior file left intact)
        """
        validate_logical_slot(logical_slot)
        extension = MIME_EXTENSIONS.get(mime_type)
        if extension is None:
            raise InvalidOptionsError(f"No file extension known for MIME type {mime_type!r}")
        if handle.state == LifecycleState.DELETED or not handle.path.is_dir():
            raise StorageIOError(f"Asset directory does not exist: {handle.path}", handle.path)

        filename = slot_filename(logical_slot, extension)
        target_path = handle.path / filename
        atomic_write(target_path, processed_bytes)

        for superseded in self._slot_files(handle.path, logical_slot):
            if superseded.name == filename:
                continue
            try:
                superseded.unlink()
                logger.debug(f"Removed superseded file {superseded}")
            except FileNotFoundError:
                pass
            except OSError as e:
                raise StorageIOError(
                    f"Stored {target_path} but could not remove superseded {superseded}: {e}", superseded
                ) from e

        logger.info(f"Stored {handle.directory}/{filename} ({len(processed_bytes)} bytes)")
        return target_path

    def commit(self, handle: StorageHandle, entity_id: str) -> Path:
        """Promote a temporary directory to the entity's permanent directory.

        On success the handle is updated in place to the committed state.

        Raises:
            ConflictError: If the handle was already committed or the target exists
            StorageIOError: If the rename fails (temporary directory stays usable)
        """
        validate_entity_id(entity_id)
        if not handle.is_temporary or handle.directory in self._promoted:
            raise ConflictError(f"Directory {handle.directory} has already been committed", handle.path)

        target_path = self.root / permanent_dir_for(entity_id)
        source_path = handle.path
        with self._commit_guard:
            if handle.directory in self._promoted:
                raise ConflictError(f"Directory {handle.directory} has already been committed", source_path)
            if target_path.exists():
                raise ConflictError(f"Entity directory already exists: {target_path}", target_path)
            if not source_path.is_dir():
                raise StorageIOError(f"Temporary directory does not exist: {source_path}", source_path)
            try:
                os.rename(source_path, target_path)
            except OSError as e:
                raise StorageIOError(f"Failed to rename {source_path} -> {target_path}: {e}", source_path) from e
            self._promoted[handle.directory] = None
            while len(self._promoted) > PROMOTED_HISTORY:
                self._promoted.popitem(last=False)

        logger.info(f"Committed {handle.directory} -> {entity_id}")
        handle.directory = entity_id
        handle.path = target_path
        handle.state = LifecycleState.COMMITTED
        handle.entity_id = entity_id
        return target_path

    def remove(self, entity_id: str) -> bool:
        """Delete an entity's directory and everything in it.

        Returns:
            True if a directory was removed, False if it was already absent

        Raises:
            StorageIOError: If deletion fails
        """
        path = self.root / permanent_dir_for(entity_id)
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            logger.debug(f"Entity directory already absent: {path}")
            return False
        except OSError as e:
            raise StorageIOError(f"Failed to delete {path}: {e}", path) from e
        logger.info(f"Removed entity directory {entity_id}")
        return True

    def list_assets(self, handle: StorageHandle) -> List[Path]:
        """Stored files of a directory, sorted by name"""
        if not handle.path.is_dir():
            return []
        return sorted(p for p in handle.path.iterdir() if p.is_file() and not _is_hidden(p))

    def retain_only(self, entity_id: str, keep_filenames: Iterable[str]) -> List[str]:
        """Delete the entity's files that are not in ``keep_filenames``.

        An empty keep set deletes every file. The directory itself is removed
        once it holds no files.

        Returns:
            Names of the deleted files
        """
        path = self.root / permanent_dir_for(entity_id)
        if not path.is_dir():
            logger.info(f"Entity directory not found: {path}")
            return []

        keep = set(keep_filenames)
        removed = []
        for file_path in sorted(path.iterdir()):
            if not file_path.is_file() or file_path.name in keep:
                continue
            try:
                file_path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageIOError(f"Failed to delete {file_path}: {e}", file_path) from e
            removed.append(file_path.name)
            logger.info(f"Cleaned up unused asset {entity_id}/{file_path.name}")

        if not any(path.iterdir()):
            try:
                path.rmdir()
                logger.info(f"Removed empty entity directory {entity_id}")
            except OSError as e:
                logger.warning(f"Could not remove empty directory {path}: {e}")
        return removed

    def _slot_files(self, directory: Path, logical_slot: str) -> List[Path]:
        return [
            p for p in directory.iterdir()
            if p.is_file() and not _is_hidden(p) and slot_of(p.name) == logical_slot
        ]

