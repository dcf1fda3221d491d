"""Layered settings for the asset store"""

import json
import logging
import os
import platform
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from asset_processor import ProcessingOptions
from models.errors import InvalidOptionsError

logger = logging.getLogger("AssetStore")

APP_DIR_NAME = "entity-asset-store"

PROCESSING_KEYS = ("quality", "max_width", "max_height", "format")

HARDCODED_DEFAULTS: Dict[str, Any] = {
    "storage_root": "uploads/articles",
    "url_prefix": "/uploads/articles",
    "quality": 80,
    "max_width": 1920,
    "max_height": 1080,
    "format": "webp",
    "retention_hours": 24,
    "max_upload_bytes": 5 * 1024 * 1024,
    "upload_workers": 4,
}

# Environment variable -> (setting key, parser)
ENV_VARS: Dict[str, tuple] = {
    "ASSET_STORE_ROOT": ("storage_root", str),
    "ASSET_STORE_URL_PREFIX": ("url_prefix", str),
    "ASSET_STORE_QUALITY": ("quality", int),
    "ASSET_STORE_MAX_WIDTH": ("max_width", int),
    "ASSET_STORE_MAX_HEIGHT": ("max_height", int),
    "ASSET_STORE_FORMAT": ("format", str),
    "ASSET_STORE_RETENTION_HOURS": ("retention_hours", float),
    "ASSET_STORE_MAX_UPLOAD_BYTES": ("max_upload_bytes", int),
    "ASSET_STORE_UPLOAD_WORKERS": ("upload_workers", int),
}


def get_config_dir() -> Path:
    """Get platform-specific config directory.

    Returns:
        Windows: %APPDATA%/entity-asset-store
        Mac: ~/Library/Application Support/entity-asset-store
        Linux: ~/.config/entity-asset-store
    """
    system = platform.system()
    if system == "Windows":
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata) / APP_DIR_NAME
        return Path.home() / "AppData" / "Roaming" / APP_DIR_NAME
    elif system == "Darwin":
        return Path.home() / "Library" / "Application Support" / APP_DIR_NAME
    else:
        return Path.home() / ".config" / APP_DIR_NAME


def get_config_file() -> Path:
    return get_config_dir() / "config.json"


def _validate_settings(values: Dict[str, Any]) -> None:
    """Reject unknown keys and out-of-range values before they are stored"""
    unknown = sorted(set(values) - set(HARDCODED_DEFAULTS))
    if unknown:
        raise InvalidOptionsError(f"Unknown setting(s): {unknown}")

    processing = {k: values[k] for k in PROCESSING_KEYS if k in values}
    if processing:
        ProcessingOptions.from_mapping(processing)

    if "retention_hours" in values:
        hours = values["retention_hours"]
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours < 0:
            raise InvalidOptionsError(f"retention_hours must be a non-negative number, got {hours!r}")
    for key in ("max_upload_bytes", "upload_workers"):
        if key in values:
            value = values[key]
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidOptionsError(f"{key} must be a positive integer, got {value!r}")
    for key in ("storage_root", "url_prefix"):
        if key in values and not isinstance(values[key], str):
            raise InvalidOptionsError(f"{key} must be a string, got {values[key]!r}")


class SettingsManager:
    """Resolves settings with precedence: per-call > runtime > config > env > hardcoded"""

    def __init__(self, config_file: Optional[Union[str, Path]] = None, environ: Optional[Dict[str, str]] = None):
        self.config_file = Path(config_file) if config_file else get_config_file()
        self._environ = environ if environ is not None else os.environ
        self._runtime: Dict[str, Any] = {}
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load settings from config file"""
        if not self.config_file.exists():
            return {}
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load config file {self.config_file}: {e}")
            return {}
        settings = config.get("settings", {}) if isinstance(config, dict) else {}
        try:
            _validate_settings(settings)
        except InvalidOptionsError as e:
            logger.warning(f"Ignoring invalid settings in {self.config_file}: {e}")
            return {}
        return settings

    def _env_settings(self) -> Dict[str, Any]:
        """Load settings from environment variables"""
        settings = {}
        for var, (key, parser) in ENV_VARS.items():
            raw = self._environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                settings[key] = parser(raw)
            except ValueError:
                logger.warning(f"Ignoring {var}={raw!r}: expected {parser.__name__}")
        return settings

    def get(self, key: str, provided_value: Any = None) -> Any:
        """Get a setting with precedence: provided > runtime > config > env > hardcoded"""
        if provided_value is not None:
            return provided_value
        if key in self._runtime:
            return self._runtime[key]
        if key in self._config:
            return self._config[key]
        env = self._env_settings()
        if key in env:
            return env[key]
        return HARDCODED_DEFAULTS.get(key)

    def get_all(self) -> Dict[str, Any]:
        """Get all effective settings (merged from all sources)"""
        result = dict(HARDCODED_DEFAULTS)
        result.update(self._env_settings())
        result.update(self._config)
        result.update(self._runtime)
        return result

    def set_runtime(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and apply runtime overrides.

        Raises:
            InvalidOptionsError: If any key is unknown or out of range
        """
        _validate_settings(values)
        self._runtime.update(values)
        logger.info(f"Updated runtime settings: {sorted(values)}")
        return dict(values)

    def persist(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and write settings to the config file"""
        _validate_settings(values)
        config: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
                config = loaded if isinstance(loaded, dict) else {}
            except (json.JSONDecodeError, OSError):
                config = {}
        config.setdefault("settings", {}).update(values)

        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.config_file.with_suffix(".tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2)
            temp_path.replace(self.config_file)
        except OSError:
            if temp_path.exists():
                temp_path.unlink()
            raise
        self._config = self._load_config()
        logger.info(f"Saved settings to {self.config_file}")
        return dict(values)

    def processing_options(self, **overrides: Any) -> ProcessingOptions:
        """Effective processing options with per-call overrides applied"""
        values = {key: self.get(key, overrides.get(key)) for key in PROCESSING_KEYS}
        return ProcessingOptions.from_mapping(values)

    def retention(self, hours: Optional[float] = None) -> timedelta:
        return timedelta(hours=float(self.get("retention_hours", hours)))

    def storage_root(self, provided: Optional[Union[str, Path]] = None) -> Path:
        return Path(self.get("storage_root", provided)).expanduser()

    def url_prefix(self) -> str:
        return self.get("url_prefix")

    def max_upload_bytes(self) -> int:
        return int(self.get("max_upload_bytes"))

    def upload_workers(self) -> int:
        return int(self.get("upload_workers"))
