"""
HTTP interface of the manifest enrollment service.

    GET /munki-enroll?function=enroll&recordname=SERIAL&displayname=NAME&uuid=UUID
    GET /munki-enroll?function=update&recordname=SERIAL&displayname=NAME&uuid=UUID
    GET /munki-enroll?function=checkin&recordname=SERIAL
    GET /munki-enroll?function=fetch&recordname=SERIAL&uuid=UUID

Enroll, update, checkin and errors answer with a JSON envelope. A successful
fetch answers with the manifest itself and the verified UUID in a header.
"""

import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from util.logging import AuditLogger, logger

from .schemas import EnrollQuery, EnrollResponse, HealthResponse
from ..core.config import EnrollConfig, ensure_store_directory, validate_config
from ..core.engine import OperationResult, ProtocolEngine
from ..core.errors import EnrollError
from ..core.schema import CallerInfo
from ..core.store import RecordStore

basic_auth = HTTPBasic(auto_error=False)


def caller_from_request(request: Request, credentials: Optional[HTTPBasicCredentials] = None) -> CallerInfo:
    """
    Collect caller metadata for audit fields.

    The user is whatever the front web server forwarded (X-Remote-User) or
    the HTTP Basic username; the credential itself is checked upstream.
    """
    remote_user = request.headers.get("x-remote-user")
    if not remote_user and credentials is not None:
        remote_user = credentials.username

    return CallerInfo(
        remote_addr=request.client.host if request.client else None,
        forwarded_for=request.headers.get("x-forwarded-for"),
        remote_user=remote_user or None,
        user_agent=request.headers.get("user-agent"),
    )


def to_response(result: OperationResult, debug: bool = False) -> Response:
    """Map an operation result to an HTTP response."""
    if isinstance(result, EnrollError):
        content = result.to_envelope()
        if debug and result.detail:
            content["debug"] = result.detail
        return JSONResponse(status_code=result.status_code, content=content)

    if result.document is not None:
        return Response(
            content=result.document,
            status_code=result.status_code,
            media_type="text/xml; charset=UTF-8",
            headers=result.headers,
        )

    return JSONResponse(status_code=result.status_code, content=result.to_envelope())


def create_app(config: Optional[EnrollConfig] = None, engine: Optional[ProtocolEngine] = None) -> FastAPI:
    """Build the FastAPI application around a protocol engine."""
    config = config or EnrollConfig.from_env()

    for issue in validate_config(config):
        logger.warning(f"Configuration issue: {issue}")

    if engine is None:
        store = RecordStore(
            config.manifests_path,
            logger=logger,
            file_mode=config.manifest_file_mode,
            owner=config.manifest_owner,
            group=config.manifest_group,
        )
        audit = AuditLogger(
            log_path=config.audit_log_path,
            max_bytes=config.audit_log_max_bytes,
            backup_count=config.audit_log_backups,
            use_syslog=config.audit_syslog,
        )
        engine = ProtocolEngine(config, store, logger=logger, audit=audit)

    app = FastAPI(
        title="Munki Enroll API",
        version=config.version,
        description="Enrollment and manifest management for Munki clients",
        docs_url="/docs" if config.debug else None,
        redoc_url="/redoc" if config.debug else None,
    )
    app.state.config = config
    app.state.engine = engine

    @app.on_event("startup")
    async def startup():
        """Create the manifests directory on startup."""
        ensure_store_directory(config)
        logger.info(f"Munki enroll service started, manifests in {config.manifests_path}")

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check that the manifests directory is usable."""
        store = engine.store
        writable = store.is_writable()
        return HealthResponse(
            status="healthy" if writable else "unhealthy",
            version=config.version,
            store_root=str(store.root),
            store_writable=writable,
            record_count=len(store.list_ids()),
        )

    @app.api_route("/munki-enroll", methods=["GET", "POST"], response_model=EnrollResponse)
    @app.api_route("/munki-enroll.php", methods=["GET", "POST"], include_in_schema=False)
    def enroll_endpoint(request: Request, credentials: Optional[HTTPBasicCredentials] = Depends(basic_auth)):
        """Run enroll, update, checkin or fetch for one client."""
        query = EnrollQuery.model_validate(dict(request.query_params))
        result = engine.dispatch(query.to_request(), caller_from_request(request, credentials))
        return to_response(result, debug=config.debug)

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all unhandled exceptions."""
        logging.error(f"Unhandled exception: {exc}")
        content = {"status": "error", "error": "Server error", "message": "Internal server error"}
        if config.debug:
            content["debug"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    return app


app = create_app()
