"""
Configuration for the manifest enrollment service.

Values come from the environment, are collected once into an EnrollConfig
and passed explicitly to the components that need them.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

# Version string
VERSION = "2.0.0"

DEFAULT_MANIFESTS_PATH = "./data/manifests"
DEFAULT_CATALOG = "production"
DEFAULT_MANIFEST = "Management/Mandatory"
DEFAULT_ALLOWED_CATALOGS = ("production", "testing", "development")

# Audit log rotation defaults (10MB, 5 files)
DEFAULT_AUDIT_LOG_MAX_BYTES = 10485760
DEFAULT_AUDIT_LOG_BACKUPS = 5

ALLOWED_FUNCTIONS = ("enroll", "update", "checkin", "fetch")

# Field bounds
MAX_CATALOGS = 3
MAX_INCLUDED_MANIFESTS = 4
MAX_DISPLAY_NAME_LENGTH = 100

_INCLUDED_MANIFEST_PATTERN = re.compile(r"^[a-zA-Z0-9/_\-\s]+$")


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class EnrollConfig:
    """Runtime settings for the enrollment service."""
    manifests_path: Path = Path(DEFAULT_MANIFESTS_PATH)
    default_catalog: str = DEFAULT_CATALOG
    default_manifest: str = DEFAULT_MANIFEST
    allowed_catalogs: Tuple[str, ...] = DEFAULT_ALLOWED_CATALOGS
    manifest_file_mode: int = 0o644
    manifest_owner: Optional[str] = None
    manifest_group: Optional[str] = None
    audit_log_path: Optional[Path] = None
    audit_log_max_bytes: int = DEFAULT_AUDIT_LOG_MAX_BYTES
    audit_log_backups: int = DEFAULT_AUDIT_LOG_BACKUPS
    audit_syslog: bool = False
    debug: bool = False
    version: str = field(default=VERSION)

    @classmethod
    def from_env(cls) -> "EnrollConfig":
        """Build a configuration from environment variables."""
        audit_log_path = os.getenv("AUDIT_LOG_PATH")
        return cls(
            manifests_path=Path(os.getenv("MANIFESTS_PATH", DEFAULT_MANIFESTS_PATH)),
            default_catalog=os.getenv("DEFAULT_CATALOG", DEFAULT_CATALOG),
            default_manifest=os.getenv("DEFAULT_MANIFEST", DEFAULT_MANIFEST),
            allowed_catalogs=_env_list("ALLOWED_CATALOGS", DEFAULT_ALLOWED_CATALOGS),
            manifest_file_mode=int(os.getenv("MANIFEST_FILE_MODE", "644"), 8),
            manifest_owner=os.getenv("MANIFEST_OWNER") or None,
            manifest_group=os.getenv("MANIFEST_GROUP") or None,
            audit_log_path=Path(audit_log_path) if audit_log_path else None,
            audit_log_max_bytes=int(os.getenv("AUDIT_LOG_MAX_BYTES", str(DEFAULT_AUDIT_LOG_MAX_BYTES))),
            audit_log_backups=int(os.getenv("AUDIT_LOG_BACKUPS", str(DEFAULT_AUDIT_LOG_BACKUPS))),
            audit_syslog=_env_flag("AUDIT_SYSLOG"),
            debug=_env_flag("DEBUG"),
        )

    def is_allowed_catalog(self, catalog: str) -> bool:
        """Check a catalog name against the allow-list."""
        return catalog in self.allowed_catalogs


def is_valid_included_manifest(name: str) -> bool:
    """Check that an included manifest reference is path-like."""
    return bool(name) and _INCLUDED_MANIFEST_PATTERN.match(name) is not None


def validate_config(config: EnrollConfig) -> List[str]:
    """Validate configuration and return any issues."""
    issues = []

    if not config.allowed_catalogs:
        issues.append("ALLOWED_CATALOGS must name at least one catalog")

    if not config.is_allowed_catalog(config.default_catalog):
        issues.append(f"DEFAULT_CATALOG '{config.default_catalog}' is not in ALLOWED_CATALOGS")

    if not is_valid_included_manifest(config.default_manifest):
        issues.append(f"Invalid DEFAULT_MANIFEST: {config.default_manifest}")

    if config.manifest_file_mode < 0 or config.manifest_file_mode > 0o777:
        issues.append(f"Invalid MANIFEST_FILE_MODE: {oct(config.manifest_file_mode)}")

    if config.audit_log_max_bytes < 0:
        issues.append("AUDIT_LOG_MAX_BYTES must be >= 0")

    if config.audit_log_backups < 0:
        issues.append("AUDIT_LOG_BACKUPS must be >= 0")

    return issues


def ensure_store_directory(config: EnrollConfig) -> None:
    """Ensure the manifests directory exists."""
    config.manifests_path.mkdir(parents=True, exist_ok=True)
