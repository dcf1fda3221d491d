"""Shared helper functions for tool implementations"""

import base64
import binascii
import logging
from typing import Any, Dict, Optional

import requests

from models.errors import (
    AssetStoreError,
    ConflictError,
    DecodeError,
    EncodeError,
    InvalidOptionsError,
    StorageIOError,
    UploadRejectedError,
)

logger = logging.getLogger("AssetStore")

ERROR_CODES = {
    DecodeError: "DECODE_ERROR",
    EncodeError: "ENCODE_ERROR",
    StorageIOError: "STORAGE_IO_ERROR",
    ConflictError: "CONFLICT",
    InvalidOptionsError: "INVALID_OPTIONS",
    UploadRejectedError: "UPLOAD_REJECTED",
}


def error_response(exc: Exception, tool_name: Optional[str] = None) -> Dict[str, Any]:
    """Build the error dict returned by a tool instead of raising into the transport.

    Input problems (decode/encode, invalid options, rejected uploads) are
    distinguished from an unhealthy system (storage I/O) and from naming
    conflicts the caller has to resolve.
    """
    code = "REMOTE_FETCH_FAILED" if isinstance(exc, requests.RequestException) else "INTERNAL_ERROR"
    for error_type, error_code in ERROR_CODES.items():
        if isinstance(exc, error_type):
            code = error_code
            break

    if code in ("STORAGE_IO_ERROR", "INTERNAL_ERROR"):
        logger.error(f"Tool {tool_name or ''} failed: {exc}")
    else:
        logger.info(f"Tool {tool_name or ''} rejected request: {exc}")

    response = {"error": code, "message": str(exc)}
    path = getattr(exc, "path", None)
    if isinstance(exc, AssetStoreError) and path is not None:
        response["path"] = str(path)
    return response


def decode_payload(data_b64: str) -> bytes:
    """Decode a base64 payload, accepting data URIs"""
    if data_b64.startswith("data:") and "," in data_b64:
        data_b64 = data_b64.split(",", 1)[1]
    try:
        return base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UploadRejectedError(f"Payload is not valid base64: {e}") from e
