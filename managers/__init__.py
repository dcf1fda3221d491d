"""Manager classes for the entity asset store"""

from managers.config_manager import SettingsManager
from managers.entity_storage import EntityStorageManager, KeyedLocks
from managers.upload_manager import UploadManager

__all__ = ["EntityStorageManager", "KeyedLocks", "SettingsManager", "UploadManager"]
