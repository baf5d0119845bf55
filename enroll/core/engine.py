"""
Protocol engine for manifest enrollment.

Four operations move a record between Absent and Present:

    enroll   Absent  -> Present   create, fails if the record exists
    update   Present -> Present   merge supplied fields, identity checked
    checkin  Present -> Present   refresh the checkin time only
    fetch    Present -> Present   identity checked, returns the document

Every operation validates its input before touching the store, and returns
either an OperationOutcome or an EnrollError. Errors are values here; the
API layer turns them into a response.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Union

from util.logging import AuditLogger, StructuredLogger, logger as default_logger

from . import codec
from .config import MAX_CATALOGS, MAX_INCLUDED_MANIFESTS, EnrollConfig, is_valid_included_manifest
from .errors import EnrollError, SecurityError, ServerError, ValidationError
from .identity import IdentityDecision, check_identity
from .schema import (
    CallerInfo,
    EnrollRequest,
    FieldChanges,
    Timestamp,
    apply_checkin,
    apply_update,
    is_valid_identity_token,
    new_record,
    sanitize_display_name,
)
from .store import RecordStore

MANIFEST_UUID_HEADER = "X-Munki-Manifest-UUID"


@dataclass(frozen=True)
class OperationOutcome:
    """Successful result of an operation."""
    status_code: int
    message: str
    log_result: str
    data: Dict[str, Any] = field(default_factory=dict)
    # Raw manifest returned by fetch instead of a JSON envelope
    document: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_envelope(self) -> dict:
        return {"status": "success", "message": self.message, "data": self.data}


OperationResult = Union[OperationOutcome, EnrollError]


@dataclass(frozen=True)
class ValidatedParams:
    """Request parameters after validation; invalid optional values are dropped."""
    record_id: str
    display_name: Optional[str]
    identity_token: Optional[str]
    catalogs: Tuple[str, ...]
    included_manifests: Dict[int, str]

    @property
    def included_refs(self) -> Tuple[str, ...]:
        return tuple(self.included_manifests[slot] for slot in sorted(self.included_manifests))


class ProtocolEngine:
    """Runs enroll, update, checkin and fetch against a record store."""

    def __init__(self, config: EnrollConfig, store: RecordStore,
                 logger: Optional[StructuredLogger] = None,
                 audit: Optional[AuditLogger] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.store = store
        self.logger = logger or default_logger
        self.audit = audit
        self.clock = clock
        self._operations = {
            "enroll": self.enroll,
            "update": self.update,
            "checkin": self.checkin,
            "fetch": self.fetch,
        }

    def dispatch(self, request: EnrollRequest, caller: Optional[CallerInfo] = None) -> OperationResult:
        """Run the requested operation and record its outcome once."""
        caller = caller or CallerInfo()
        operation = self._operations.get(request.function, self.enroll)
        function = request.function if request.function in self._operations else "enroll"

        result = operation(request, caller)

        if isinstance(result, EnrollError):
            details = {"result": result.log_result, "status_code": result.status_code}
            if result.detail:
                details["detail"] = result.detail
            self.logger.log_record_operation(function, request.record_id, "failed", details)
        else:
            self.logger.log_record_operation(function, request.record_id, "success",
                                             {"result": result.log_result})

        self._audit(result.log_result, request, caller)
        return result

    # Operations

    def enroll(self, request: EnrollRequest, caller: CallerInfo) -> OperationResult:
        """Create a new record; at most one enroll per record name succeeds."""
        params = self._validate(request, require_all=True)
        if isinstance(params, EnrollError):
            return params

        if params.display_name is None or params.identity_token is None:
            return ValidationError(
                "Please provide valid recordname, displayname and uuid at minimum.",
                log_result="FAILURE - NOT ENOUGH ARGUMENTS",
            )

        inclusion_error = self._check_self_inclusion(params)
        if inclusion_error is not None:
            return inclusion_error

        catalogs = params.catalogs or (self.config.default_catalog,)
        included = dict(params.included_manifests)
        if 1 not in included:
            included[1] = self.config.default_manifest
        included_refs = tuple(included[slot] for slot in sorted(included))

        now = self._now()
        record = new_record(
            record_id=params.record_id,
            display_name=params.display_name,
            identity_token=params.identity_token,
            catalogs=catalogs,
            included_refs=included_refs,
            caller=caller,
            now=now,
        )

        error = self._guard(lambda: self.store.create(params.record_id, record), "Error creating manifest")
        if error is not None:
            return error

        return OperationOutcome(
            status_code=201,
            message="Manifest created successfully",
            log_result="SUCCESS - RECORD CREATED",
            data={
                "recordname": record.record_id,
                "displayname": record.display_name,
                "uuid": record.identity_token,
                "manifests": list(record.included_refs),
                "catalogs": list(record.catalogs),
            },
        )

    def update(self, request: EnrollRequest, caller: CallerInfo) -> OperationResult:
        """Merge supplied fields into an existing record."""
        params = self._validate(request)
        if isinstance(params, EnrollError):
            return params

        inclusion_error = self._check_self_inclusion(params)
        if inclusion_error is not None:
            return inclusion_error

        loaded = self._load(params.record_id)
        if isinstance(loaded, EnrollError):
            return loaded

        decision = check_identity(loaded.identity_token, params.identity_token)
        if decision is IdentityDecision.MISMATCH:
            return SecurityError(
                "UUID mismatch - this manifest belongs to a different machine",
                log_result="FAILURE - UUID MISMATCH",
            )

        changes = FieldChanges(
            display_name=params.display_name,
            catalogs=params.catalogs or None,
            included_refs=params.included_refs or None,
            adopt_identity_token=params.identity_token if decision is IdentityDecision.ADOPT else None,
        )
        updated = apply_update(loaded, changes, caller, self._now())

        error = self._guard(lambda: self.store.save(params.record_id, updated), "Error updating manifest")
        if error is not None:
            return error

        return OperationOutcome(
            status_code=200,
            message="Manifest updated successfully",
            log_result="SUCCESS - UPDATED",
            data={
                "recordname": updated.record_id,
                "displayname": updated.display_name,
                "uuid": updated.identity_token or "",
            },
        )

    def checkin(self, request: EnrollRequest, caller: CallerInfo) -> OperationResult:
        """Refresh the checkin time of an existing record."""
        params = self._validate(request)
        if isinstance(params, EnrollError):
            return params

        loaded = self._load(params.record_id)
        if isinstance(loaded, EnrollError):
            return loaded

        now = self._now()
        updated = apply_checkin(loaded, now)

        error = self._guard(lambda: self.store.save(params.record_id, updated), "Error during checkin")
        if error is not None:
            return error

        return OperationOutcome(
            status_code=200,
            message="Checkin completed successfully",
            log_result="SUCCESS - CHECKIN",
            data={"recordname": updated.record_id, "last_checkin": now.human},
        )

    def fetch(self, request: EnrollRequest, caller: CallerInfo) -> OperationResult:
        """Return the stored manifest to the machine that owns it."""
        params = self._validate(request)
        if isinstance(params, EnrollError):
            return params

        if params.identity_token is None:
            return ValidationError("uuid is required for fetch", log_result="FAILURE - FETCH MISSING UUID")

        loaded = self._load(params.record_id)
        if isinstance(loaded, EnrollError):
            return loaded

        if not loaded.identity_token:
            return SecurityError("Manifest has no UUID", log_result="FAILURE - FETCH NO UUID IN MANIFEST")

        decision = check_identity(loaded.identity_token, params.identity_token)
        if decision is not IdentityDecision.MATCH:
            return SecurityError("UUID verification failed", log_result="FAILURE - FETCH UUID MISMATCH")

        updated = apply_checkin(loaded, self._now())

        error = self._guard(lambda: self.store.save(params.record_id, updated), "Error fetching manifest")
        if error is not None:
            return error

        return OperationOutcome(
            status_code=200,
            message="Manifest fetched successfully",
            log_result="SUCCESS - FETCH",
            document=codec.encode(updated),
            headers={
                MANIFEST_UUID_HEADER: loaded.identity_token,
                "Content-Disposition": f'inline; filename="{loaded.record_id}"',
            },
        )

    # Stages

    def _validate(self, request: EnrollRequest, require_all: bool = False) -> Union[ValidatedParams, EnrollError]:
        """Validate and normalize parameters. No store access happens before this passes."""
        if not request.record_id:
            if require_all:
                return ValidationError(
                    "Please provide valid recordname, displayname and uuid at minimum.",
                    log_result="FAILURE - NOT ENOUGH ARGUMENTS",
                )
            return ValidationError("Please provide valid recordname.", log_result="FAILURE - INVALID RECORDNAME")

        try:
            self.store.path_for(request.record_id)
        except ValidationError as e:
            return e

        display_name = None
        if request.display_name:
            display_name = sanitize_display_name(request.display_name).strip() or None

        token = request.identity_token or None
        if token is not None and not is_valid_identity_token(token):
            token = None

        catalogs = tuple(
            request.catalogs[slot]
            for slot in sorted(request.catalogs)
            if 1 <= slot <= MAX_CATALOGS and self.config.is_allowed_catalog(request.catalogs[slot])
        )

        included_manifests = {
            slot: value
            for slot, value in request.included_manifests.items()
            if 1 <= slot <= MAX_INCLUDED_MANIFESTS and is_valid_included_manifest(value)
        }

        return ValidatedParams(
            record_id=request.record_id,
            display_name=display_name,
            identity_token=token,
            catalogs=catalogs,
            included_manifests=included_manifests,
        )

    def _check_self_inclusion(self, params: ValidatedParams) -> Optional[ValidationError]:
        if params.record_id in params.included_manifests.values():
            return ValidationError(
                "Cannot add manifest to its own included_manifests array.",
                log_result="FAILURE - RECURSIVE MANIFEST",
            )
        return None

    def _load(self, record_id: str):
        try:
            return self.store.load(record_id)
        except EnrollError as e:
            return e
        except OSError as e:
            return ServerError("Error reading manifest", log_result="FAILURE - EXCEPTION", detail=str(e))

    def _guard(self, write: Callable[[], None], message: str) -> Optional[EnrollError]:
        """Run a store write, turning failures into error values."""
        try:
            write()
        except EnrollError as e:
            return e
        except OSError as e:
            return ServerError(message, log_result="FAILURE - EXCEPTION", detail=str(e))
        return None

    def _now(self) -> Timestamp:
        return Timestamp.from_epoch(self.clock())

    def _audit(self, result: str, request: EnrollRequest, caller: CallerInfo) -> None:
        if self.audit is None:
            return
        self.audit.log(
            result,
            record_id=request.record_id,
            display_name=request.display_name,
            identity_token=request.identity_token,
            catalogs=[request.catalogs[slot] for slot in sorted(request.catalogs)],
            manifests=[request.included_manifests[slot] for slot in sorted(request.included_manifests)],
            ip=caller.remote_addr,
            user=caller.remote_user,
            user_agent=caller.user_agent,
        )
