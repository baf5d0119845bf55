"""
Record model for client manifests and the merge rules of each operation.

Records are immutable: an operation loads a snapshot, computes a new record
with one of the functions below and hands it to the store.
"""

import re
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from .config import MAX_DISPLAY_NAME_LENGTH

IDENTITY_TOKEN_PATTERN = re.compile(
    r"^[a-f0-9]{8}-[a-f0-9]{4}-[1-5][a-f0-9]{3}-[89ab][a-f0-9]{3}-[a-f0-9]{12}$",
    re.IGNORECASE,
)

_TAG_PATTERN = re.compile(r"<[^>]*>")
_CONTROL_PATTERN = re.compile(r"[\x00-\x1F\x7F]")

HUMAN_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def is_valid_identity_token(token: Optional[str]) -> bool:
    """Check that a token has the canonical UUID form."""
    return bool(token) and IDENTITY_TOKEN_PATTERN.match(token) is not None


def strip_control_characters(value: str) -> str:
    """Trim whitespace and drop control characters."""
    return _CONTROL_PATTERN.sub("", value.strip())


def sanitize_display_name(value: str) -> str:
    """Strip markup and keep letters, digits, whitespace, '-', '_' and '.'."""
    value = _TAG_PATTERN.sub("", value)
    value = "".join(ch for ch in value if ch.isalnum() or ch.isspace() or ch in "-_.")
    return value[:MAX_DISPLAY_NAME_LENGTH]


@dataclass(frozen=True)
class Timestamp:
    """Epoch seconds plus their UTC rendering."""
    epoch: int
    human: str

    @classmethod
    def from_epoch(cls, epoch: float) -> "Timestamp":
        seconds = int(epoch)
        return cls(epoch=seconds, human=time.strftime(HUMAN_TIME_FORMAT, time.gmtime(seconds)))


@dataclass(frozen=True)
class CallerInfo:
    """Network and identity metadata about the caller, used for audit strings."""
    remote_addr: Optional[str] = None
    forwarded_for: Optional[str] = None
    remote_user: Optional[str] = None
    user_agent: Optional[str] = None

    def audit_string(self) -> str:
        """Render the created_by / modified_by value."""
        info = []
        if self.remote_addr:
            info.append(f"IP:{self.remote_addr}")
        if self.forwarded_for:
            info.append(f"Forwarded:{self.forwarded_for.split(',')[0].strip()}")
        if self.remote_user:
            info.append(f"User:{self.remote_user}")
        if self.user_agent:
            info.append(f"UA:{self.user_agent[:100]}")
        return " | ".join(info) if info else "unknown"


@dataclass(frozen=True)
class EnrollRequest:
    """
    Normalized request parameters.

    None means the caller omitted the parameter; an empty string means it was
    supplied empty. Catalog and manifest slots map the parameter number
    (catalog1 -> 1) to the supplied value.
    """
    function: str = "enroll"
    record_id: str = ""
    display_name: Optional[str] = None
    identity_token: Optional[str] = None
    catalogs: Mapping[int, str] = field(default_factory=dict)
    included_manifests: Mapping[int, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ManifestRecord:
    """One client's manifest."""
    record_id: str
    display_name: str
    identity_token: Optional[str]
    notes: Optional[str]
    catalogs: Tuple[str, ...]
    included_refs: Tuple[str, ...]
    managed_entries: Tuple[Any, ...]
    created_at: Timestamp
    modified_at: Timestamp
    checked_in_at: Timestamp
    created_by: str
    modified_by: Optional[str] = None
    # Keys found in the stored document that this service does not manage
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FieldChanges:
    """Values an update supplied; None means carry over the stored value."""
    display_name: Optional[str] = None
    catalogs: Optional[Tuple[str, ...]] = None
    included_refs: Optional[Tuple[str, ...]] = None
    adopt_identity_token: Optional[str] = None


def new_record(record_id: str, display_name: str, identity_token: str,
               catalogs: Tuple[str, ...], included_refs: Tuple[str, ...],
               caller: CallerInfo, now: Timestamp) -> ManifestRecord:
    """Build the record created by a successful enroll."""
    return ManifestRecord(
        record_id=record_id,
        display_name=display_name,
        identity_token=identity_token,
        notes=identity_token,
        catalogs=tuple(catalogs),
        included_refs=tuple(included_refs),
        managed_entries=(),
        created_at=now,
        modified_at=now,
        checked_in_at=now,
        created_by=caller.audit_string(),
    )


def apply_update(existing: ManifestRecord, changes: FieldChanges,
                 caller: CallerInfo, now: Timestamp) -> ManifestRecord:
    """
    Merge supplied fields over a stored record.

    Supplied fields replace stored values, omitted ones carry over. The
    identity token is only set through adoption, when none was stored.
    modified_at moves only when a value actually changed; checked_in_at
    always moves.
    """
    display_name = existing.display_name if changes.display_name is None else changes.display_name
    catalogs = existing.catalogs if changes.catalogs is None else tuple(changes.catalogs)
    included_refs = existing.included_refs if changes.included_refs is None else tuple(changes.included_refs)

    identity_token = existing.identity_token
    notes = existing.notes
    if changes.adopt_identity_token and not existing.identity_token:
        identity_token = changes.adopt_identity_token
        notes = changes.adopt_identity_token

    changed = (
        display_name != existing.display_name
        or catalogs != existing.catalogs
        or included_refs != existing.included_refs
        or identity_token != existing.identity_token
    )

    return replace(
        existing,
        display_name=display_name,
        catalogs=catalogs,
        included_refs=included_refs,
        identity_token=identity_token,
        notes=notes,
        modified_at=now if changed else existing.modified_at,
        checked_in_at=now,
        modified_by=caller.audit_string(),
    )


def apply_checkin(existing: ManifestRecord, now: Timestamp) -> ManifestRecord:
    """Refresh only the checkin timestamp."""
    return replace(existing, checked_in_at=now)
