"""Re-normalize images already stored under a storage root"""

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from asset_processor import (
    ImageFormat,
    ProcessingOptions,
    format_file_size,
    get_image_metadata,
    process_image,
)
from managers.entity_storage import KeyedLocks, atomic_write
from managers.storage_layout import is_valid_entity_id, legacy_general_dir
from models.errors import DecodeError, EncodeError, StorageIOError

logger = logging.getLogger("AssetStore")

# Files are re-encoded in their own format so public URLs keep working
EXTENSION_FORMATS = {
    "webp": ImageFormat.WEBP,
    "jpg": ImageFormat.JPEG,
    "jpeg": ImageFormat.JPEG,
    "png": ImageFormat.PNG,
}


@dataclass
class OptimizationFailure:
    file: str
    reason: str
    error_type: str


@dataclass
class OptimizationSummary:
    root: str
    dry_run: bool = False
    optimized: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[OptimizationFailure] = field(default_factory=list)
    original_bytes: int = 0
    optimized_bytes: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.optimized_bytes

    def to_dict(self) -> Dict[str, Any]:
        savings = 0.0
        if self.original_bytes:
            savings = round(self.saved_bytes * 100 / self.original_bytes, 1)
        return {
            "root": self.root,
            "dry_run": self.dry_run,
            "optimized_count": len(self.optimized),
            "unchanged_count": len(self.unchanged),
            "failed_count": len(self.failed),
            "optimized": list(self.optimized),
            "unchanged": list(self.unchanged),
            "failed": [
                {"file": f.file, "reason": f.reason, "error_type": f.error_type}
                for f in self.failed
            ],
            "original_size": format_file_size(self.original_bytes),
            "optimized_size": format_file_size(self.optimized_bytes),
            "savings_percent": savings,
        }


def _asset_directories(root: Path) -> List[Path]:
    # Committed entity folders and general/; temporary folders are still in flight
    return [
        entry for entry in sorted(root.iterdir())
        if entry.is_dir() and not entry.is_symlink()
        and (entry.name == legacy_general_dir() or is_valid_entity_id(entry.name))
    ]


def _optimize_file(path: Path, options: ProcessingOptions, dry_run: bool) -> Optional[int]:
    """Re-encode one file; returns the new size, or None when nothing would change"""
    fmt = EXTENSION_FORMATS[path.suffix[1:].lower()]
    try:
        original = path.read_bytes()
    except OSError as e:
        raise StorageIOError(f"Cannot read {path}: {e}", path) from e

    processed = process_image(original, options.with_overrides(format=fmt))
    before = get_image_metadata(original)
    after = get_image_metadata(processed)
    resized = (before["width"], before["height"]) != (after["width"], after["height"])
    if not resized and len(processed) >= len(original):
        return None
    if not dry_run:
        atomic_write(path, processed)
    return len(processed)


def optimize_stored_assets(
    root: Union[str, Path],
    options: Optional[ProcessingOptions] = None,
    dry_run: bool = False,
    locks: Optional[KeyedLocks] = None,
) -> OptimizationSummary:
    """Fit stored images inside the configured bounds and re-encode them in place.

    Entity directories and ``general/`` are scanned; temporary directories
    are skipped. Each file keeps its name and format, and is replaced only
    when the result is smaller or its dimensions changed. Per-file failures
    are recorded and the batch continues.

    Args:
        root: Storage root
        options: Bounds and quality (the output format always follows the file)
        dry_run: Report what would change without writing
        locks: Per-directory locks shared with a running upload manager

    Raises:
        StorageIOError: If ``root`` is missing or cannot be listed
    """
    root = Path(root)
    options = options or ProcessingOptions()
    summary = OptimizationSummary(root=str(root), dry_run=dry_run)
    if not root.is_dir():
        raise StorageIOError(f"Storage root not found: {root}", root)
    try:
        directories = _asset_directories(root)
    except OSError as e:
        raise StorageIOError(f"Cannot list storage root {root}: {e}", root) from e

    for directory in directories:
        with locks.hold(directory.name) if locks else nullcontext():
            files = sorted(
                p for p in directory.iterdir()
                if p.is_file() and not p.is_symlink() and not p.name.startswith(".")
                and p.suffix[1:].lower() in EXTENSION_FORMATS
            )
            for path in files:
                name = f"{directory.name}/{path.name}"
                try:
                    original_size = path.stat().st_size
                    new_size = _optimize_file(path, options, dry_run)
                except FileNotFoundError:
                    continue
                except (DecodeError, EncodeError, StorageIOError, OSError) as e:
                    logger.warning(f"Failed to optimize {name}: {e}")
                    summary.failed.append(OptimizationFailure(
                        file=name,
                        reason=str(e),
                        error_type=type(e).__name__,
                    ))
                    continue

                if new_size is None:
                    summary.unchanged.append(name)
                    summary.original_bytes += original_size
                    summary.optimized_bytes += original_size
                    logger.debug(f"Skipping {name} (already optimized)")
                    continue
                summary.optimized.append(name)
                summary.original_bytes += original_size
                summary.optimized_bytes += new_size
                logger.info(f"Optimized {name}: {format_file_size(original_size)} -> {format_file_size(new_size)}")

    logger.info(
        f"Optimization of {root}{' (dry run)' if dry_run else ''}: optimized={len(summary.optimized)} "
        f"unchanged={len(summary.unchanged)} failed={len(summary.failed)} "
        f"saved={format_file_size(max(summary.saved_bytes, 0))}"
    )
    return summary
