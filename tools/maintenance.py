"""Batch maintenance tools: legacy migration and orphan sweep"""

from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from managers.config_manager import SettingsManager
from managers.entity_storage import KeyedLocks
from managers.migration import migrate_legacy_files
from managers.optimizer import optimize_stored_assets
from managers.orphan_reaper import sweep_orphans
from models.errors import AssetStoreError
from tools.helpers import error_response


def register_maintenance_tools(
    mcp: FastMCP,
    settings: SettingsManager,
    locks: Optional[KeyedLocks] = None
):
    """Register maintenance tools with the MCP server"""

    @mcp.tool()
    def migrate_legacy_assets(roots: Optional[List[str]] = None) -> dict:
        """Move loose files of legacy flat upload roots into their general/ folder.

        Only files directly under each root are moved; subdirectories are left
        alone. Files whose name already exists in general/ are reported in
        `failed` and the rest of the batch continues. Re-running is a no-op.

        Args:
            roots: Legacy roots to migrate (default: the configured storage root)
        """
        summaries = []
        for root in roots or [str(settings.storage_root())]:
            try:
                summaries.append(migrate_legacy_files(root).to_dict())
            except AssetStoreError as e:
                summaries.append({"root": root, **error_response(e, "migrate_legacy_assets")})
        return {
            "roots": summaries,
            "moved_count": sum(s.get("moved_count", 0) for s in summaries),
            "success": all("error" not in s and not s["failed"] for s in summaries),
        }

    @mcp.tool()
    def sweep_orphan_directories(retention_hours: Optional[float] = None) -> dict:
        """Delete temporary upload directories older than the retention window.

        Committed entity directories are never touched.

        Args:
            retention_hours: Minimum age before deletion (default: configured retention_hours)
        """
        if retention_hours is not None and retention_hours < 0:
            return {"error": "INVALID_OPTIONS", "message": "retention_hours must not be negative"}
        try:
            summary = sweep_orphans(settings.storage_root(), settings.retention(retention_hours))
        except AssetStoreError as e:
            return error_response(e, "sweep_orphan_directories")
        return {**summary.to_dict(), "success": summary.ok}

    @mcp.tool()
    def optimize_stored_images(
        quality: Optional[int] = None,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
        dry_run: bool = False,
    ) -> dict:
        """Re-normalize images already stored in entity directories and general/.

        Each image is fitted inside the bounds and re-encoded in its own format,
        keeping its file name so existing URLs stay valid. A file is rewritten
        only when that makes it smaller or changes its dimensions. Per-file
        failures are reported in `failed` and the batch continues.

        Args:
            quality, max_width, max_height: Overrides of the configured defaults
            dry_run: Report what would change without rewriting anything
        """
        try:
            options = settings.processing_options(quality=quality, max_width=max_width, max_height=max_height)
            summary = optimize_stored_assets(settings.storage_root(), options, dry_run=dry_run, locks=locks)
        except AssetStoreError as e:
            return error_response(e, "optimize_stored_images")
        return {**summary.to_dict(), "success": summary.ok}
