"""Upload pipeline: validate, process, store under a per-directory lock"""

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from asset_processor import (
    ProcessingOptions,
    RemoteAssetFetcher,
    format_file_size,
    get_image_metadata,
    is_processable_image,
    process_image,
)
from managers.entity_storage import EntityStorageManager, KeyedLocks
from managers.storage_layout import (
    public_url_for,
    slot_from_filename,
    slot_of,
    validate_entity_id,
    validate_logical_slot,
)
from models.asset import AssetRecord, StorageHandle
from models.errors import InvalidOptionsError, UploadRejectedError

logger = logging.getLogger("AssetStore")

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024

IMG_SRC_REGEX = re.compile(r'<img[^>]+src="([^"]+)"[^>]*>')


def extract_image_urls(content: str) -> List[str]:
    """Image URLs referenced by ``<img src="...">`` tags in HTML content"""
    return IMG_SRC_REGEX.findall(content or "")


def rewrite_asset_urls(content: str, url_mapping: Dict[str, str]) -> str:
    """Replace every old asset URL in content with its new location"""
    for old_url, new_url in url_mapping.items():
        content = content.replace(old_url, new_url)
    return content


@dataclass
class UploadResult:
    record: AssetRecord

    @property
    def public_url(self) -> str:
        return self.record.public_url

    def to_dict(self) -> Dict[str, Any]:
        return self.record.to_dict()


@dataclass
class CommitResult:
    entity_id: str
    directory: str
    previous_directory: str
    url_mapping: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "directory": self.directory,
            "previous_directory": self.previous_directory,
            "url_mapping": dict(self.url_mapping),
        }


class UploadManager:
    """Runs uploads for entity directories.

    Processing happens outside any lock; storage calls for one directory are
    serialized through ``KeyedLocks``. ``submit_upload`` runs the whole
    pipeline on a worker pool so slow decodes never block the caller.
    """

    def __init__(
        self,
        storage: EntityStorageManager,
        url_prefix: str = "/uploads/articles",
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        max_workers: int = 4,
        fetcher: Optional[RemoteAssetFetcher] = None,
        locks: Optional[KeyedLocks] = None,
    ):
        self.storage = storage
        self.url_prefix = url_prefix
        self.max_upload_bytes = max_upload_bytes
        self.fetcher = fetcher
        self.locks = locks or KeyedLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="asset-upload")
        logger.info(
            f"Initialized UploadManager (workers={max_workers}, "
            f"max_upload={format_file_size(max_upload_bytes)})"
        )

    def __enter__(self) -> "UploadManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    @contextmanager
    def _hold_directory(self, handle: StorageHandle) -> Iterator[None]:
        # A concurrent commit may rename the directory while we wait for its lock
        while True:
            directory = handle.directory
            with self.locks.hold(directory):
                if handle.directory == directory:
                    yield
                    return

    def allocate(self) -> StorageHandle:
        return self.storage.allocate_temporary()

    def open_entity(self, entity_id: str) -> StorageHandle:
        with self.locks.hold(entity_id):
            return self.storage.open_entity(entity_id)

    def resume(self, directory: str) -> StorageHandle:
        return self.storage.resume(directory)

    def _check_payload(self, payload: bytes, mime_type: str) -> None:
        if not is_processable_image(mime_type):
            raise UploadRejectedError(f"File type {mime_type} is not processable")
        if not payload:
            raise UploadRejectedError("Upload payload is empty")
        if len(payload) > self.max_upload_bytes:
            raise UploadRejectedError(
                f"Upload of {format_file_size(len(payload))} exceeds limit of "
                f"{format_file_size(self.max_upload_bytes)}"
            )

    def _prepare(
        self,
        payload: bytes,
        mime_type: str,
        slot: Optional[str],
        original_filename: Optional[str],
        options: ProcessingOptions,
    ) -> Tuple[str, bytes, Dict[str, Any]]:
        """Validate and process a payload without touching the filesystem"""
        if slot is None:
            if not original_filename:
                raise InvalidOptionsError("Either slot or original_filename is required")
            slot = slot_from_filename(original_filename)
        validate_logical_slot(slot)
        self._check_payload(payload, mime_type)

        processed = process_image(payload, options)
        return slot, processed, get_image_metadata(processed)

    def _store(
        self,
        handle: StorageHandle,
        slot: str,
        processed: bytes,
        metadata: Dict[str, Any],
        options: ProcessingOptions,
        original_size: int,
    ) -> UploadResult:
        with self._hold_directory(handle):
            stored_path = self.storage.write_asset(handle, slot, processed, options.format.mime_type)
            record = AssetRecord(
                entity_id=handle.entity_id,
                directory=handle.directory,
                logical_slot=slot,
                stored_path=stored_path,
                public_url=public_url_for(self.url_prefix, handle.directory, stored_path.name),
                mime_type=options.format.mime_type,
                size_bytes=len(processed),
                lifecycle_state=handle.state,
                width=metadata["width"],
                height=metadata["height"],
            )

        logger.info(
            f"Upload stored at {record.public_url}: {format_file_size(original_size)} -> "
            f"{format_file_size(len(processed))}"
        )
        return UploadResult(record=record)

    def upload(
        self,
        handle: StorageHandle,
        payload: bytes,
        mime_type: str,
        slot: Optional[str] = None,
        original_filename: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
    ) -> UploadResult:
        """Process one payload and store it at a logical slot of the handle's directory.

        Args:
            handle: Directory to store into (temporary or committed)
            payload: Raw uploaded bytes
            mime_type: Declared MIME type of the payload
            slot: Logical slot; derived from ``original_filename`` when omitted
            original_filename: Client-side filename, used for the slot fallback
            options: Processing options (defaults when None)

        Returns:
            UploadResult whose record points at the stored file

        Raises:
            UploadRejectedError: Unsupported type, empty or oversized payload
            InvalidOptionsError: Invalid slot name
            DecodeError, EncodeError: Image could not be processed (nothing written)
            StorageIOError: Write failed (prior file at the slot kept)
        """
        options = options or ProcessingOptions()
        slot, processed, metadata = self._prepare(payload, mime_type, slot, original_filename, options)
        return self._store(handle, slot, processed, metadata, options, len(payload))

    def upload_to_entity(
        self,
        entity_id: str,
        payload: bytes,
        mime_type: str,
        slot: Optional[str] = None,
        original_filename: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
    ) -> UploadResult:
        """Like ``upload``, addressed by entity id.

        The entity directory is created only after the payload has been
        accepted and processed, so a rejected upload leaves no trace on disk.
        """
        validate_entity_id(entity_id)
        options = options or ProcessingOptions()
        slot, processed, metadata = self._prepare(payload, mime_type, slot, original_filename, options)
        handle = self.open_entity(entity_id)
        return self._store(handle, slot, processed, metadata, options, len(payload))

    def submit_upload(self, handle: StorageHandle, payload: bytes, mime_type: str, **kwargs: Any) -> "Future[UploadResult]":
        """Run ``upload`` on the worker pool"""
        return self._executor.submit(self.upload, handle, payload, mime_type, **kwargs)

    def _fetch(self, url: str) -> Tuple[bytes, str, str]:
        if self.fetcher is None:
            raise UploadRejectedError("Remote import is not configured")
        payload, mime_type = self.fetcher.fetch(url)
        original_filename = PurePosixPath(urlparse(url).path).name or "remote"
        return payload, mime_type, original_filename

    def import_remote(
        self,
        handle: StorageHandle,
        url: str,
        slot: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
    ) -> UploadResult:
        """Download an image by URL and store it like an upload"""
        payload, mime_type, original_filename = self._fetch(url)
        return self.upload(
            handle,
            payload,
            mime_type,
            slot=slot,
            original_filename=original_filename,
            options=options,
        )

    def import_remote_to_entity(
        self,
        entity_id: str,
        url: str,
        slot: Optional[str] = None,
        options: Optional[ProcessingOptions] = None,
    ) -> UploadResult:
        """Download an image by URL and store it under an entity id"""
        validate_entity_id(entity_id)
        payload, mime_type, original_filename = self._fetch(url)
        return self.upload_to_entity(
            entity_id,
            payload,
            mime_type,
            slot=slot,
            original_filename=original_filename,
            options=options,
        )

    def commit(self, handle: StorageHandle, entity_id: str) -> CommitResult:
        """Promote a temporary directory and report how its asset URLs moved"""
        previous = handle.directory
        with self.locks.hold(previous, entity_id):
            filenames = [p.name for p in self.storage.list_assets(handle)]
            self.storage.commit(handle, entity_id)

        mapping = {
            public_url_for(self.url_prefix, previous, name): public_url_for(self.url_prefix, entity_id, name)
            for name in filenames
        }
        return CommitResult(
            entity_id=entity_id,
            directory=handle.directory,
            previous_directory=previous,
            url_mapping=mapping,
        )

    def delete_entity(self, entity_id: str) -> bool:
        with self.locks.hold(entity_id):
            return self.storage.remove(entity_id)

    def prune_entity(
        self,
        entity_id: str,
        used_urls: Optional[Iterable[str]] = None,
        content: Optional[str] = None,
    ) -> List[str]:
        """Delete entity files no longer referenced by its URLs or HTML content"""
        urls = list(used_urls or [])
        if content:
            urls.extend(extract_image_urls(content))
        marker = public_url_for(self.url_prefix, entity_id, "")
        keep = {PurePosixPath(url).name for url in urls if marker in url}
        with self.locks.hold(entity_id):
            return self.storage.retain_only(entity_id, keep)

    def list_assets(self, handle: StorageHandle) -> List[Dict[str, Any]]:
        assets = []
        for path in self.storage.list_assets(handle):
            try:
                size = path.stat().st_size
            except FileNotFoundError:
                # Pruned or replaced since the directory was listed
                continue
            assets.append({
                "filename": path.name,
                "logical_slot": slot_of(path.name),
                "size_bytes": size,
                "public_url": public_url_for(self.url_prefix, handle.directory, path.name),
            })
        return assets
