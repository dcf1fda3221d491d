"""Asset data models"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class LifecycleState(str, Enum):
    """Lifecycle of an entity's asset directory"""
    TEMPORARY = "temporary"
    COMMITTED = "committed"
    DELETED = "deleted"


@dataclass
class StorageHandle:
    """Reference to one entity-scoped asset directory"""
    directory: str  # Directory name relative to the storage root
    path: Path
    state: LifecycleState
    entity_id: Optional[str] = None  # None until committed
    created_millis: Optional[int] = None  # Only known for temporary directories

    @property
    def is_temporary(self) -> bool:
        return self.state == LifecycleState.TEMPORARY


@dataclass
class AssetRecord:
    """Record of one stored asset"""
    entity_id: Optional[str]
    directory: str
    logical_slot: str
    stored_path: Path
    public_url: str
    mime_type: str
    size_bytes: int
    lifecycle_state: LifecycleState
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "directory": self.directory,
            "logical_slot": self.logical_slot,
            "stored_path": str(self.stored_path),
            "public_url": self.public_url,
            "mime_type": self.mime_type,
            "size_bytes": self.size_bytes,
            "lifecycle_state": self.lifecycle_state.value,
            "width": self.width,
            "height": self.height,
            "created_at": self.created_at.isoformat(),
        }
