"""Pure naming rules for the on-disk asset layout.

Layout under a storage root::

    {root}/{entity_id}/{slot}.{ext}         committed assets
    {root}/temp-{millis}[-{hex}]/...        uploads for not-yet-created entities
    {root}/general/...                      legacy assets after migration

Nothing in this module touches the filesystem.
"""

import re
from pathlib import PurePosixPath
from typing import Optional

from models.errors import InvalidOptionsError

TEMP_PREFIX = "temp-"
GENERAL_DIR = "general"

# temp-{epoch millis} with an optional collision suffix
TEMP_DIR_REGEX = re.compile(r"^temp-(\d+)(?:-[0-9a-f]{4,32})?$")
ENTITY_ID_REGEX = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
# Logical slot: simple name only, no paths, no extension
SLOT_REGEX = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def temporary_dir_for(now_millis: int, suffix: Optional[str] = None) -> str:
    """Directory name for an upload whose entity does not exist yet"""
    if now_millis < 0:
        raise ValueError(f"Timestamp must be non-negative, got {now_millis}")
    name = f"{TEMP_PREFIX}{now_millis}"
    return f"{name}-{suffix}" if suffix else name


def permanent_dir_for(entity_id: str) -> str:
    """Directory name owned by a committed entity"""
    validate_entity_id(entity_id)
    return entity_id


def legacy_general_dir() -> str:
    return GENERAL_DIR


def parse_temporary_timestamp(name: str) -> Optional[int]:
    """Creation time (epoch millis) embedded in a temporary directory name"""
    match = TEMP_DIR_REGEX.match(name)
    return int(match.group(1)) if match else None


def is_temporary_dir_name(name: str) -> bool:
    return parse_temporary_timestamp(name) is not None


def is_valid_entity_id(entity_id: str) -> bool:
    if not isinstance(entity_id, str) or not ENTITY_ID_REGEX.match(entity_id):
        return False
    # Reserved names would collide with the reaper and migration scopes
    return entity_id != GENERAL_DIR and not entity_id.startswith(TEMP_PREFIX)


def validate_entity_id(entity_id: str) -> None:
    """Raise InvalidOptionsError unless entity_id can name a committed directory"""
    if not is_valid_entity_id(entity_id):
        raise InvalidOptionsError(
            f"Invalid entity id: {entity_id!r}. Must match {ENTITY_ID_REGEX.pattern} "
            f"and may not be '{GENERAL_DIR}' or start with '{TEMP_PREFIX}'"
        )


def validate_logical_slot(slot: str) -> None:
    if not isinstance(slot, str) or not SLOT_REGEX.match(slot):
        raise InvalidOptionsError(f"Invalid logical slot: {slot!r}. Must match {SLOT_REGEX.pattern}")


def slot_from_filename(original_name: str) -> str:
    """Derive a logical slot from an uploaded file's original name"""
    stem = PurePosixPath(original_name.replace("\\", "/")).name
    if "." in stem:
        stem = stem.rsplit(".", 1)[0]
    cleaned = re.sub(r"[^a-z0-9_-]+", "_", stem.lower()).strip("_-")
    return cleaned[:64] or "asset"


def slot_filename(slot: str, extension: str) -> str:
    validate_logical_slot(slot)
    return f"{slot}.{extension.lstrip('.')}"


def slot_of(filename: str) -> str:
    """Logical slot a stored filename belongs to"""
    return filename.rsplit(".", 1)[0] if "." in filename else filename


def public_url_for(url_prefix: str, directory: str, filename: str) -> str:
    """Public URL path served for a stored asset"""
    prefix = "/" + url_prefix.strip("/") if url_prefix.strip("/") else ""
    return f"{prefix}/{directory}/{filename}"
