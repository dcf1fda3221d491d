"""Upload and entity lifecycle tools"""

from typing import List, Optional

import requests
from mcp.server.fastmcp import FastMCP

from managers.config_manager import SettingsManager
from managers.upload_manager import UploadManager
from models.errors import AssetStoreError
from tools.helpers import decode_payload, error_response


def register_storage_tools(
    mcp: FastMCP,
    upload_manager: UploadManager,
    settings: SettingsManager
):
    """Register upload and entity lifecycle tools with the MCP server"""

    @mcp.tool()
    def allocate_upload_directory() -> dict:
        """Allocate a temporary directory for an entity that has not been created yet.

        Upload into the returned directory, then call `commit_entity` once the
        entity is saved. Directories that are never committed are removed by
        the orphan sweep after the retention window.

        Returns:
            Dict with directory name, absolute path and creation time (epoch millis)
        """
        try:
            handle = upload_manager.allocate()
        except AssetStoreError as e:
            return error_response(e, "allocate_upload_directory")
        return {
            "directory": handle.directory,
            "path": str(handle.path),
            "created_millis": handle.created_millis,
            "state": handle.state.value,
        }

    @mcp.tool()
    def upload_asset(
        data_b64: str,
        mime_type: str,
        directory: Optional[str] = None,
        entity_id: Optional[str] = None,
        slot: Optional[str] = None,
        original_filename: Optional[str] = None,
        quality: Optional[int] = None,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
        format: Optional[str] = None,
    ) -> dict:
        """Process an image and store it at a logical slot.

        Target either a temporary `directory` from `allocate_upload_directory`
        or an `entity_id`, whose directory is created only once the image has
        been accepted. An existing file at the same slot is replaced only
        after the new one is fully written.

        Args:
            data_b64: Image bytes, base64 (data URIs accepted)
            mime_type: Declared MIME type (image/jpeg, image/png, image/webp, ...)
            directory: Temporary directory name
            entity_id: Committed entity id (alternative to directory)
            slot: Logical slot (e.g. "cover"); derived from original_filename if omitted
            original_filename: Client filename
            quality, max_width, max_height, format: Per-call processing overrides

        Returns:
            Stored asset record with public_url, or an error dict
        """
        try:
            if bool(directory) == bool(entity_id):
                return {"error": "INVALID_OPTIONS", "message": "Provide exactly one of directory or entity_id"}
            options = settings.processing_options(
                quality=quality, max_width=max_width, max_height=max_height, format=format
            )
            payload = decode_payload(data_b64)
            if directory:
                result = upload_manager.upload(
                    upload_manager.resume(directory),
                    payload,
                    mime_type,
                    slot=slot,
                    original_filename=original_filename,
                    options=options,
                )
            else:
                result = upload_manager.upload_to_entity(
                    entity_id,
                    payload,
                    mime_type,
                    slot=slot,
                    original_filename=original_filename,
                    options=options,
                )
        except AssetStoreError as e:
            return error_response(e, "upload_asset")
        return result.to_dict()

    @mcp.tool()
    def import_remote_asset(
        url: str,
        directory: Optional[str] = None,
        entity_id: Optional[str] = None,
        slot: Optional[str] = None,
    ) -> dict:
        """Download an image (including Google Drive share links) and store it like an upload.

        Returns:
            Stored asset record with public_url, or an error dict
        """
        try:
            if bool(directory) == bool(entity_id):
                return {"error": "INVALID_OPTIONS", "message": "Provide exactly one of directory or entity_id"}
            options = settings.processing_options()
            if directory:
                result = upload_manager.import_remote(upload_manager.resume(directory), url, slot=slot, options=options)
            else:
                result = upload_manager.import_remote_to_entity(entity_id, url, slot=slot, options=options)
        except (AssetStoreError, requests.RequestException) as e:
            return error_response(e, "import_remote_asset")
        return result.to_dict()

    @mcp.tool()
    def commit_entity(directory: str, entity_id: str) -> dict:
        """Promote a temporary directory to the permanent directory of a newly created entity.

        Fails with CONFLICT if the entity already has a directory or the
        temporary directory was already committed. `url_mapping` lists how each
        asset URL moved so stored content can be rewritten.
        """
        try:
            handle = upload_manager.resume(directory)
            result = upload_manager.commit(handle, entity_id)
        except AssetStoreError as e:
            return error_response(e, "commit_entity")
        return result.to_dict()

    @mcp.tool()
    def delete_entity_assets(entity_id: str) -> dict:
        """Delete an entity's asset directory. Deleting an absent directory is not an error."""
        try:
            removed = upload_manager.delete_entity(entity_id)
        except AssetStoreError as e:
            return error_response(e, "delete_entity_assets")
        return {"entity_id": entity_id, "removed": removed}

    @mcp.tool()
    def list_entity_assets(directory: str) -> dict:
        """List stored files of a temporary or committed directory."""
        try:
            handle = upload_manager.resume(directory)
            assets = upload_manager.list_assets(handle)
        except AssetStoreError as e:
            return error_response(e, "list_entity_assets")
        return {"directory": directory, "state": handle.state.value, "assets": assets, "count": len(assets)}

    @mcp.tool()
    def prune_entity_assets(
        entity_id: str,
        used_urls: Optional[List[str]] = None,
        content: Optional[str] = None,
    ) -> dict:
        """Delete an entity's files that are no longer referenced.

        References are taken from `used_urls` and from `<img src>` tags in
        `content`. With no references at all every file is deleted and the
        empty directory is removed.
        """
        try:
            removed = upload_manager.prune_entity(entity_id, used_urls=used_urls, content=content)
        except AssetStoreError as e:
            return error_response(e, "prune_entity_assets")
        return {"entity_id": entity_id, "removed": removed, "count": len(removed)}
