"""Error taxonomy for asset processing and storage"""

from pathlib import Path
from typing import Optional, Union


class AssetStoreError(Exception):
    """Base class for all asset store failures"""


class DecodeError(AssetStoreError):
    """Input bytes are not a recognized or decodable image"""


class EncodeError(AssetStoreError):
    """Target codec rejected the pixel buffer"""


class StorageIOError(AssetStoreError):
    """Disk or permission failure during create, write, rename or delete"""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class ConflictError(AssetStoreError):
    """Naming conflict the caller has to resolve (duplicate id or filename)"""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class RetentionPolicyError(AssetStoreError):
    """Per-directory reaper failure; recorded in the sweep summary, never fatal"""


class InvalidOptionsError(AssetStoreError, ValueError):
    """Out-of-range option, malformed entity id or slot name"""


class UploadRejectedError(AssetStoreError, ValueError):
    """Upload refused before processing (type, size or empty payload)"""
