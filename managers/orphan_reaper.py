"""Time-based cleanup of temporary directories that were never committed"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from managers.storage_layout import parse_temporary_timestamp
from models.errors import RetentionPolicyError, StorageIOError

logger = logging.getLogger("AssetStore")

DEFAULT_RETENTION = timedelta(hours=24)


@dataclass
class SweepSummary:
    root: str
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[RetentionPolicyError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "deleted_count": len(self.deleted),
            "skipped_count": len(self.skipped),
            "failed_count": len(self.failed),
            "deleted": list(self.deleted),
            "skipped": list(self.skipped),
            "failed": [str(e) for e in self.failed],
        }


def sweep_orphans(
    root: Union[str, Path],
    retention: timedelta = DEFAULT_RETENTION,
    now_millis: Optional[int] = None,
) -> SweepSummary:
    """Delete temporary directories older than the retention window.

    Only entries whose name matches the temporary pattern are looked at, so
    committed entity directories are never inspected regardless of age. A
    directory is deleted when its embedded creation time is strictly older
    than ``now - retention``. Per-directory failures are logged and recorded.

    Raises:
        StorageIOError: If ``root`` cannot be listed
    """
    root = Path(root)
    if retention < timedelta(0):
        raise ValueError(f"Retention must not be negative, got {retention}")
    if now_millis is None:
        now_millis = int(time.time() * 1000)
    cutoff = now_millis - int(retention.total_seconds() * 1000)
    summary = SweepSummary(root=str(root))

    try:
        entries = sorted(root.iterdir())
    except OSError as e:
        raise StorageIOError(f"Cannot list storage root {root}: {e}", root) from e

    for entry in entries:
        created = parse_temporary_timestamp(entry.name)
        if created is None:
            continue
        if entry.is_symlink() or not entry.is_dir():
            logger.debug(f"Ignoring non-directory {entry.name}")
            continue
        if created >= cutoff:
            summary.skipped.append(entry.name)
            continue
        try:
            shutil.rmtree(entry)
        except OSError as e:
            error = RetentionPolicyError(f"Failed to delete {entry.name}: {e}")
            logger.warning(str(error))
            summary.failed.append(error)
            continue
        summary.deleted.append(entry.name)
        logger.info(f"Deleted orphan directory {entry.name} (age {(now_millis - created) // 1000}s)")

    logger.info(
        f"Sweep of {root}: deleted={len(summary.deleted)} skipped={len(summary.skipped)} "
        f"failed={len(summary.failed)}"
    )
    return summary
