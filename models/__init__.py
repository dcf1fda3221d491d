"""Data models for the entity asset store"""

from models.asset import AssetRecord, LifecycleState, StorageHandle
from models.errors import (
    AssetStoreError,
    ConflictError,
    DecodeError,
    EncodeError,
    InvalidOptionsError,
    RetentionPolicyError,
    StorageIOError,
    UploadRejectedError,
)

__all__ = [
    "AssetRecord",
    "AssetStoreError",
    "ConflictError",
    "DecodeError",
    "EncodeError",
    "InvalidOptionsError",
    "LifecycleState",
    "RetentionPolicyError",
    "StorageHandle",
    "StorageIOError",
    "UploadRejectedError",
]
