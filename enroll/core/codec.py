"""
Property list encoding of manifest records.

The on-disk document is a Munki manifest: an XML plist dictionary with the
keys below. Keys this service does not manage are kept as they were found.
"""

import plistlib
from xml.parsers.expat import ExpatError
from typing import Any, Dict, List, Optional

from .schema import ManifestRecord, Timestamp

MANAGED_KEYS = (
    "catalogs",
    "display_name",
    "uuid",
    "notes",
    "included_manifests",
    "managed_installs",
    "date_created",
    "date_created_human",
    "date_modified",
    "date_modified_human",
    "date_checkin",
    "date_checkin_human",
    "created_by",
    "modified_by",
)


class CodecError(ValueError):
    """Stored document cannot be read as a manifest."""
    pass


def _string_list(data: Dict[str, Any], key: str) -> List[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise CodecError(f"'{key}' must be an array of strings")
    return value


def _optional_string(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise CodecError(f"'{key}' must be a string")
    return value


def _timestamp(data: Dict[str, Any], prefix: str, fallback: Optional[Timestamp]) -> Timestamp:
    epoch = data.get(prefix)
    human = data.get(f"{prefix}_human")

    if epoch is None:
        if fallback is not None:
            return fallback
        return Timestamp.from_epoch(0)

    if isinstance(epoch, bool) or not isinstance(epoch, (int, float)):
        raise CodecError(f"'{prefix}' must be a number")

    if epoch < 0:
        raise CodecError(f"'{prefix}' must not be negative")

    try:
        stamp = Timestamp.from_epoch(epoch)
    except (OverflowError, ValueError, OSError) as e:
        raise CodecError(f"'{prefix}' is out of range: {e}") from e

    if isinstance(human, str) and human:
        return Timestamp(epoch=stamp.epoch, human=human)
    return stamp


def record_to_dict(record: ManifestRecord) -> Dict[str, Any]:
    """Convert a record to its manifest dictionary."""
    data = dict(record.extra)
    data.update({
        "catalogs": list(record.catalogs),
        "display_name": record.display_name,
        "included_manifests": list(record.included_refs),
        "managed_installs": list(record.managed_entries),
        "date_created": record.created_at.epoch,
        "date_created_human": record.created_at.human,
        "date_modified": record.modified_at.epoch,
        "date_modified_human": record.modified_at.human,
        "date_checkin": record.checked_in_at.epoch,
        "date_checkin_human": record.checked_in_at.human,
        "created_by": record.created_by,
    })

    if record.identity_token:
        data["uuid"] = record.identity_token
        data["notes"] = record.notes or record.identity_token
    elif record.notes:
        data["notes"] = record.notes

    if record.modified_by:
        data["modified_by"] = record.modified_by

    return data


def record_from_dict(record_id: str, data: Any) -> ManifestRecord:
    """Build a record from a manifest dictionary."""
    if not isinstance(data, dict):
        raise CodecError("Invalid manifest format")

    managed = data.get("managed_installs", [])
    if not isinstance(managed, list):
        raise CodecError("'managed_installs' must be an array")

    display_name = _optional_string(data, "display_name") or ""
    created_at = _timestamp(data, "date_created", None)
    modified_at = _timestamp(data, "date_modified", created_at)
    checked_in_at = _timestamp(data, "date_checkin", modified_at)

    return ManifestRecord(
        record_id=record_id,
        display_name=display_name,
        identity_token=_optional_string(data, "uuid") or None,
        notes=_optional_string(data, "notes"),
        catalogs=tuple(_string_list(data, "catalogs")),
        included_refs=tuple(_string_list(data, "included_manifests")),
        managed_entries=tuple(managed),
        created_at=created_at,
        modified_at=modified_at,
        checked_in_at=checked_in_at,
        created_by=_optional_string(data, "created_by") or "unknown",
        modified_by=_optional_string(data, "modified_by"),
        extra={key: value for key, value in data.items() if key not in MANAGED_KEYS},
    )


def encode(record: ManifestRecord) -> bytes:
    """Serialize a record as an XML property list."""
    return plistlib.dumps(record_to_dict(record), fmt=plistlib.FMT_XML, sort_keys=True)


def decode(record_id: str, payload: bytes) -> ManifestRecord:
    """Parse a stored property list into a record."""
    try:
        data = plistlib.loads(payload)
    except (plistlib.InvalidFileException, ExpatError, ValueError, TypeError) as e:
        raise CodecError(f"Unreadable manifest: {e}") from e
    return record_from_dict(record_id, data)
