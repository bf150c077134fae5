from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from reportstore.analyzer import ReportAnalyzer, create_analyzer_from_env
from reportstore.config import StoreConfig
from reportstore.errors import ApiError
from reportstore.record_store import AnalysisRecordStore
from reportstore.routes import admin, reports
from reportstore.routes._deps import error_response, trace_id_from_request
from reportstore.schemas import success_envelope
from reportstore.security import JwtSecurityConfig, redact_sensitive, resolve_session

logger = logging.getLogger(__name__)

_CRON_PATHS = {"/api/v1/admin/cleanup"}
_SECURITY_CODES = {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN"}


def create_app(
    *,
    record_store: AnalysisRecordStore | None = None,
    analyzer: ReportAnalyzer | None = None,
) -> FastAPI:
    app = FastAPI(title="Report Analysis Record Store API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    store_cfg = StoreConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.store_cfg = store_cfg
    app.state.record_store = record_store or AnalysisRecordStore.from_env()
    app.state.analyzer = analyzer if analyzer is not None else create_analyzer_from_env()
    if store_cfg.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=store_cfg.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _log_security_block(request: Request, exc: ApiError) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            exc.code,
            request.url.path,
            trace_id_from_request(request),
            exc.message,
            headers_payload,
        )

    @app.middleware("http")
    async def resolve_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.session = None
        request.state.cron_authorized = False
        path = request.url.path
        authorization = request.headers.get("Authorization")
        try:
            if path.startswith("/api/v1/") and path != "/api/v1/health":
                if (
                    path in _CRON_PATHS
                    and store_cfg.cron_secret
                    and authorization == f"Bearer {store_cfg.cron_secret}"
                ):
                    request.state.cron_authorized = True
                else:
                    request.state.session = resolve_session(
                        authorization=authorization,
                        user_header=request.headers.get("x-user-id"),
                        cfg=security_cfg,
                    )
        except ApiError as exc:
            _log_security_block(request, exc)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            return response
        response = await call_next(request)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            _log_security_block(request, exc)
        elif exc.retryable:
            logger.warning("request_failed_retryable code=%s path=%s detail=%s", exc.code, request.url.path, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(reports.router)
    app.include_router(admin.router)
    return app
