"""Configuration tools for the asset store MCP server"""

from typing import Any, Dict

from mcp.server.fastmcp import FastMCP

from managers.config_manager import SettingsManager
from models.errors import InvalidOptionsError


def register_configuration_tools(
    mcp: FastMCP,
    settings: SettingsManager
):
    """Register configuration tools with the MCP server"""

    @mcp.tool()
    def get_defaults() -> dict:
        """Get current effective settings.

        Returns merged settings from all sources (runtime, config, env, hardcoded):
        processing defaults (quality, max_width, max_height, format), retention_hours,
        storage_root, url_prefix, max_upload_bytes and upload_workers.
        """
        return settings.get_all()

    @mcp.tool()
    def set_defaults(values: Dict[str, Any], persist: bool = False) -> dict:
        """Set runtime defaults for processing and cleanup.

        Values are validated before anything changes (e.g. quality must be
        within 1-100, format one of webp/jpeg/png). storage_root,
        url_prefix and upload_workers take effect on the next server start.

        Args:
            values: Settings to change (e.g., {"quality": 70, "format": "jpeg"})
            persist: If True, also write them to the config file. Otherwise, changes are ephemeral.

        Returns:
            Success status and the updated values, or validation errors.
        """
        try:
            updated = settings.set_runtime(values)
            if persist:
                settings.persist(values)
        except InvalidOptionsError as e:
            return {"success": False, "errors": [str(e)]}
        except OSError as e:
            return {"success": False, "errors": [f"Failed to write config file: {e}"]}
        return {"success": True, "updated": updated, "persisted": persist}
