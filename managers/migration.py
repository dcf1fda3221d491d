"""Move loose files of a legacy flat upload root into general/"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from managers.storage_layout import legacy_general_dir
from models.errors import ConflictError, StorageIOError

logger = logging.getLogger("AssetStore")


@dataclass
class MigrationFailure:
    file: str
    reason: str
    error_type: str


@dataclass
class MigrationSummary:
    root: str
    moved_count: int = 0
    moved: List[str] = field(default_factory=list)
    failed: List[MigrationFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "moved_count": self.moved_count,
            "moved": list(self.moved),
            "failed": [
                {"file": f.file, "reason": f.reason, "error_type": f.error_type}
                for f in self.failed
            ],
        }


def _move_into(source: Path, target: Path) -> None:
    """Move one file without ever overwriting an existing target"""
    if target.exists():
        raise ConflictError(f"{target.name} already exists in {target.parent.name}/", target)
    try:
        # os.link never replaces an existing target
        os.link(source, target)
    except FileExistsError as e:
        raise ConflictError(f"{target.name} already exists in {target.parent.name}/", target) from e
    except OSError:
        # No hard link support: rename after the existence check
        try:
            os.rename(source, target)
        except OSError as e:
            raise StorageIOError(f"Failed to move {source} -> {target}: {e}", source) from e
        return
    try:
        source.unlink()
    except OSError as e:
        # Roll back the link so the file is not present twice
        try:
            target.unlink()
        except OSError as cleanup_error:
            logger.warning(f"Failed to roll back link {target}: {cleanup_error}")
        raise StorageIOError(f"Failed to remove {source} after linking: {e}", source) from e


def migrate_legacy_files(root: Union[str, Path]) -> MigrationSummary:
    """Move every plain file directly under ``root`` into ``root/general/``.

    Only one level is scanned: subdirectories (entity folders, ``general/``
    itself) and symlinks are left alone. A file whose name already exists in
    ``general/`` is reported as a ``ConflictError`` and the batch continues.
    Running it again after a clean run moves nothing.

    Returns:
        MigrationSummary with the moved count and per-file failures

    Raises:
        StorageIOError: If ``root`` is missing or ``general/`` cannot be created
    """
    root = Path(root)
    summary = MigrationSummary(root=str(root))
    if not root.is_dir():
        raise StorageIOError(f"Legacy root not found: {root}", root)

    try:
        loose_files = sorted(
            entry for entry in root.iterdir()
            if entry.is_file() and not entry.is_symlink()
        )
    except OSError as e:
        raise StorageIOError(f"Cannot list legacy root {root}: {e}", root) from e

    if not loose_files:
        logger.info(f"No loose files under {root}; nothing to migrate")
        return summary

    general_dir = root / legacy_general_dir()
    try:
        general_dir.mkdir(exist_ok=True)
    except OSError as e:
        raise StorageIOError(f"Cannot create {general_dir}: {e}", general_dir) from e

    for source in loose_files:
        target = general_dir / source.name
        try:
            _move_into(source, target)
        except (ConflictError, StorageIOError) as e:
            logger.warning(f"Failed to move {source.name}: {e}")
            summary.failed.append(MigrationFailure(
                file=source.name,
                reason=str(e),
                error_type=type(e).__name__,
            ))
            continue
        summary.moved_count += 1
        summary.moved.append(source.name)
        logger.info(f"Moved: {source.name} -> {legacy_general_dir()}/{source.name}")

    logger.info(
        f"Migration of {root} completed: moved {summary.moved_count} file(s), "
        f"{len(summary.failed)} failure(s)"
    )
    return summary
