"""
Path safety gate: turns a client identifier into a file path inside the
manifests directory, or refuses.
"""

import os
import re
from pathlib import Path

from .errors import ValidationError

RECORD_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_record_name(record_id: str) -> bool:
    """Check a record name against the filename-safe pattern."""
    return bool(record_id) and RECORD_NAME_PATTERN.match(record_id) is not None


def resolve_record_path(store_root: Path, record_id: str) -> Path:
    """
    Resolve the on-disk path of a record.

    The name is checked against the filename-safe pattern first. The candidate
    path is then resolved (symlinks and '..' followed) and its parent must be
    the resolved store root itself, so even a name that slipped past the
    pattern cannot escape the directory.

    Raises:
        ValidationError: if the name is empty, has disallowed characters or
            resolves outside the store root.
    """
    if not is_valid_record_name(record_id):
        raise ValidationError(
            "Please provide valid recordname.",
            log_result="FAILURE - INVALID RECORDNAME",
        )

    root = Path(os.path.realpath(store_root))
    candidate = Path(os.path.realpath(root / record_id))

    if candidate.parent != root or candidate.name != record_id:
        raise ValidationError("Invalid manifest path.", log_result="FAILURE - INVALID PATH")

    return candidate
