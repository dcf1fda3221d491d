import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import requests
from mcp.server.fastmcp import FastMCP

from asset_processor import RemoteAssetFetcher
from managers.config_manager import SettingsManager
from managers.entity_storage import EntityStorageManager
from managers.upload_manager import UploadManager
from tools.configuration import register_configuration_tools
from tools.maintenance import register_maintenance_tools
from tools.storage import register_storage_tools

logger = logging.getLogger("AssetStore")


class AppContext:
    def __init__(self, upload_manager: UploadManager, session: requests.Session):
        self.upload_manager = upload_manager
        self.session = session


def create_server(settings: Optional[SettingsManager] = None) -> FastMCP:
    """Build the MCP server and every manager it uses from settings.

    Nothing is created at import time; the HTTP session and worker pool
    belong to the returned server and are released by its lifespan.
    """
    settings = settings or SettingsManager()
    session = requests.Session()
    storage = EntityStorageManager(settings.storage_root())
    upload_manager = UploadManager(
        storage,
        url_prefix=settings.url_prefix(),
        max_upload_bytes=settings.max_upload_bytes(),
        max_workers=settings.upload_workers(),
        fetcher=RemoteAssetFetcher(session, max_bytes=settings.max_upload_bytes()),
    )

    @asynccontextmanager
    async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
        """Manage application lifecycle"""
        logger.info(f"Starting asset store server (root={storage.root})")
        try:
            yield AppContext(upload_manager=upload_manager, session=session)
        finally:
            logger.info("Shutting down asset store server")
            upload_manager.shutdown()
            session.close()

    mcp = FastMCP("Entity_Asset_Store", lifespan=app_lifespan)
    register_storage_tools(mcp, upload_manager, settings)
    register_maintenance_tools(mcp, settings, locks=upload_manager.locks)
    register_configuration_tools(mcp, settings)
    return mcp


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_server().run(transport="streamable-http")
