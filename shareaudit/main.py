import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse

from shareaudit import stats
from shareaudit.audit import AuditLog
from shareaudit.config import Settings, configure_logging, get_settings
from shareaudit.errors import (
    DownloadNotAllowed,
    Forbidden,
    LinkExpired,
    LinkRevoked,
    PasswordRequired,
    ResourceNotFound,
    ShareAuditError,
    TokenNotFound,
)
from shareaudit.expiry import is_active
from shareaudit.geoip import GeoLocator, HttpGeoLocator, NullGeoLocator, locate
from shareaudit.models import (
    AccessEventInput,
    AccessLogResponse,
    AccessStatsResponse,
    AccessStatus,
    AdminAction,
    AdminLogEntry,
    AdminLogInput,
    AdminLogListResponse,
    AuditFilter,
    CreateShareRequest,
    LinkState,
    RevokeRequest,
    SharedFileView,
    SharedLink,
    SharedLinkListResponse,
    SharedLinkResponse,
    SharedLinkSummary,
)
from shareaudit.recorder import AccessRecorder
from shareaudit.repository import Database, LinkRepository, utc_now
from shareaudit.service import Expired, NotFound, ShareLinkService
from shareaudit.storage import DEFAULT_CONTENT_TYPE, LocalObjectStore
from shareaudit.tokens import TokenIssuer


def build_geo_locator(settings: Settings) -> GeoLocator:
    if settings.geoip_url_template:
        return HttpGeoLocator(settings.geoip_url_template, timeout=settings.geoip_timeout_seconds)
    return NullGeoLocator()


def create_app(
    settings: Settings | None = None,
    *,
    clock: Callable[[], datetime] = utc_now,
    geo_locator: GeoLocator | None = None,
    random_bytes: Callable[[int], bytes] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    database = Database(settings.database_path, timeout=settings.db_timeout_seconds)
    links = LinkRepository(database)
    storage = LocalObjectStore(settings.storage_dir)
    issuer = TokenIssuer(
        links.token_exists,
        token_bytes=settings.token_bytes,
        max_attempts=settings.token_max_attempts,
        random_bytes=random_bytes or secrets.token_bytes,
    )
    service = ShareLinkService(
        links,
        storage,
        issuer,
        clock=clock,
        min_days=settings.min_expiry_days,
        max_days=settings.max_expiry_days,
        password_iterations=settings.password_hash_iterations,
    )
    recorder = AccessRecorder(database, clock=clock, retries=settings.storage_retry_attempts)
    audit_log = AuditLog(database, clock=clock, retries=settings.storage_retry_attempts)
    geo = geo_locator or build_geo_locator(settings)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        database.init()
        storage.init()
        yield
        if isinstance(geo, HttpGeoLocator):
            geo.close()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.service = service
    app.state.recorder = recorder
    app.state.audit_log = audit_log
    app.state.storage = storage

    @app.get("/")
    def root() -> dict:
        return {"status": "ok", "service": settings.app_name}

    def error_response(status_code: int, message: str, code: str) -> JSONResponse:
        return JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message}},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
        missing_fields = [
            ".".join(str(item) for item in error["loc"] if item != "body")
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        if missing_fields:
            message = f"missing parameters: {', '.join(missing_fields)}"
        else:
            message = "invalid request parameters"
        return error_response(400, message, "bad_request")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException):
        message = str(exc.detail) if exc.detail else "request failed"
        code_map = {
            400: "bad_request",
            401: "unauthorized",
            403: "forbidden",
            404: "not_found",
            410: "expired",
        }
        return error_response(exc.status_code, message, code_map.get(exc.status_code, "error"))

    @app.exception_handler(ShareAuditError)
    async def share_audit_exception_handler(_: Request, exc: ShareAuditError):
        return error_response(exc.status_code, exc.message, exc.code)

    def require_admin(x_actor_role: str | None = Header(default=None)) -> None:
        if (x_actor_role or "").strip().lower() != "admin":
            raise Forbidden("administrative role required")

    def client_ip(request: Request) -> str:
        if settings.trust_forwarded_for:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return request.client.host if request.client else ""

    def share_url(request: Request, token: str) -> str:
        base = settings.public_base_url or str(request.base_url)[:-1]
        return f"{base.rstrip('/')}/shared/{token}"

    def link_response(link: SharedLink, request: Request) -> SharedLinkResponse:
        return SharedLinkResponse(
            **link.model_dump(),
            password_protected=link.password_protected,
            is_active=is_active(link, clock()),
            share_url=share_url(request, link.token),
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "environment": settings.app_env}

    @app.post("/shared-files", response_model=SharedLinkResponse, status_code=201)
    def create_shared_file(payload: CreateShareRequest, request: Request):
        link = service.create_link(
            payload,
            payload.expires_in_days,
            content_type=payload.content_type,
            size=payload.size,
            allow_download=payload.allow_download,
            password=payload.password,
        )
        return link_response(link, request)

    @app.get("/shared-files", response_model=SharedLinkListResponse)
    def list_shared_files(request: Request, owner_id: str = Query(..., min_length=1)):
        summaries = [
            SharedLinkSummary(
                **link_response(link, request).model_dump(),
                access_count=recorder.count_by_resource(link.id),
            )
            for link in service.list_links(owner_id)
        ]
        return SharedLinkListResponse(links=summaries)

    @app.post("/shared-files/{token}/revoke", response_model=SharedLinkResponse)
    def revoke_shared_file(token: str, payload: RevokeRequest, request: Request):
        link = service.revoke(token, payload.owner_id)
        return link_response(link, request)

    @app.get("/shared-files/{link_id}/access-logs", response_model=AccessLogResponse)
    def access_logs(
        link_id: int,
        owner_id: str = Query(..., min_length=1),
        limit: int | None = Query(None, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        link = service.get_owned_link(link_id, owner_id)
        events = recorder.list_by_resource(link.id, limit=limit, offset=offset)
        return AccessLogResponse(link_id=link.id, events=events)

    @app.get("/shared-files/{link_id}/stats", response_model=AccessStatsResponse)
    def access_stats(link_id: int, owner_id: str = Query(..., min_length=1)):
        link = service.get_owned_link(link_id, owner_id)
        summary = stats.summarize(recorder.list_by_resource(link.id))
        return AccessStatsResponse(link_id=link.id, **summary.model_dump())

    @app.get("/shared/{token}")
    def open_shared_file(
        token: str,
        request: Request,
        download: bool = Query(False),
        password: str | None = Query(None),
    ):
        resolution = service.resolve_link(token)
        if isinstance(resolution, NotFound):
            raise TokenNotFound("this link does not exist")

        link = resolution.link
        ip = client_ip(request)
        attempt = AccessEventInput(
            ip_address=ip,
            user_agent=request.headers.get("user-agent", ""),
            referrer=request.headers.get("referer"),
            geo=locate(geo, ip),
            is_download=download,
        )

        if isinstance(resolution, Expired):
            if resolution.state is LinkState.REVOKED:
                recorder.record(link.id, attempt.model_copy(update={"status": AccessStatus.REVOKED}))
                raise LinkRevoked()
            recorder.record(link.id, attempt.model_copy(update={"status": AccessStatus.EXPIRED}))
            raise LinkExpired()

        try:
            service.check_password(link, password)
        except PasswordRequired:
            recorder.record(link.id, attempt.model_copy(update={"status": AccessStatus.PASSWORD_REJECTED}))
            raise

        if download and not link.allow_download:
            recorder.record(link.id, attempt.model_copy(update={"status": AccessStatus.DOWNLOAD_BLOCKED}))
            raise DownloadNotAllowed()

        file_path = storage.open_path(link.resource_ref())
        if file_path is None:
            raise ResourceNotFound("file content missing")

        recorder.record(link.id, attempt)

        if download:
            return FileResponse(
                path=file_path,
                filename=link.filename,
                media_type=link.content_type or DEFAULT_CONTENT_TYPE,
            )

        url = share_url(request, link.token)
        return SharedFileView(
            filename=link.filename,
            content_type=link.content_type,
            size=link.size,
            allow_download=link.allow_download,
            expires_at=link.expires_at,
            download_url=f"{url}?download=true" if link.allow_download else None,
        )

    @app.get("/admin/logs", response_model=AdminLogListResponse, dependencies=[Depends(require_admin)])
    def admin_logs(
        action: AdminAction | None = Query(None),
        admin_id: str | None = Query(None),
        target_user_id: str | None = Query(None),
        since: datetime | None = Query(None),
        until: datetime | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        query = AuditFilter(
            action=action,
            admin_id=admin_id,
            target_user_id=target_user_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
        return AdminLogListResponse(entries=audit_log.list(query))

    @app.post(
        "/admin/logs",
        response_model=AdminLogEntry,
        status_code=201,
        dependencies=[Depends(require_admin)],
    )
    def append_admin_log(payload: AdminLogInput, request: Request):
        if payload.ip_address is None:
            payload = payload.model_copy(update={"ip_address": client_ip(request)})
        return audit_log.append(payload)

    return app


app = create_app()
