from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from reportstore.errors import AuthError
from reportstore.record_store import AnalysisRecordStore
from reportstore.schemas import error_envelope
from reportstore.security import SessionContext


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def session_from_request(request: Request) -> SessionContext:
    session = getattr(request.state, "session", None)
    if session is None:
        raise AuthError("not logged in")
    return session


def owner_from_request(request: Request) -> str:
    return session_from_request(request).user_id


def record_store_from_request(request: Request) -> AnalysisRecordStore:
    return request.app.state.record_store


def require_admin(request: Request) -> None:
    if getattr(request.state, "cron_authorized", False):
        return
    if not session_from_request(request).is_admin:
        raise AuthError("admin access required", code="AUTH_FORBIDDEN", http_status=403)


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
