"""
Request and response models for the enrollment API.
"""

from typing import Any, Dict, Optional
from urllib.parse import unquote

from pydantic import BaseModel, ConfigDict, field_validator

from ..core.config import ALLOWED_FUNCTIONS, MAX_CATALOGS, MAX_INCLUDED_MANIFESTS
from ..core.schema import EnrollRequest, strip_control_characters


class EnrollQuery(BaseModel):
    """Query-string parameters accepted by the enrollment endpoint."""
    model_config = ConfigDict(extra="ignore")

    function: Optional[str] = None
    recordname: Optional[str] = None
    displayname: Optional[str] = None
    uuid: Optional[str] = None
    catalog1: Optional[str] = None
    catalog2: Optional[str] = None
    catalog3: Optional[str] = None
    manifest1: Optional[str] = None
    manifest2: Optional[str] = None
    manifest3: Optional[str] = None
    manifest4: Optional[str] = None

    @field_validator('function', 'recordname', 'displayname', 'uuid', 'catalog1', 'catalog2', 'catalog3')
    @classmethod
    def strip_controls(cls, v):
        if v is None:
            return v
        return strip_control_characters(v)

    @field_validator('manifest1', 'manifest2', 'manifest3', 'manifest4')
    @classmethod
    def decode_manifest(cls, v):
        # Clients may double-encode the slashes in manifest paths
        if v is None:
            return v
        return unquote(strip_control_characters(v))

    def resolved_function(self) -> str:
        """Unknown or missing functions fall back to enroll."""
        if self.function in ALLOWED_FUNCTIONS:
            return self.function
        return "enroll"

    def to_request(self) -> EnrollRequest:
        """Convert to the engine's request type, keeping only supplied slots."""
        catalogs = {}
        for slot in range(1, MAX_CATALOGS + 1):
            value = getattr(self, f"catalog{slot}")
            if value:
                catalogs[slot] = value

        manifests = {}
        for slot in range(1, MAX_INCLUDED_MANIFESTS + 1):
            value = getattr(self, f"manifest{slot}")
            if value:
                manifests[slot] = value

        return EnrollRequest(
            function=self.resolved_function(),
            record_id=self.recordname or "",
            display_name=self.displayname,
            identity_token=self.uuid or None,
            catalogs=catalogs,
            included_manifests=manifests,
        )


class EnrollResponse(BaseModel):
    status: str
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    store_root: str
    store_writable: bool
    record_count: int
