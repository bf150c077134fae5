from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Query, Request
from fastapi.responses import JSONResponse

from reportstore.errors import ApiError, RecordNotFound, ValidationError
from reportstore.idempotency import DUPLICATE_COMPLETED, IN_PROGRESS, AnalysisWorkflow
from reportstore.record_store import record_summary
from reportstore.routes._deps import owner_from_request, record_store_from_request, trace_id_from_request
from reportstore.schemas import AnalyzeRequest, CleanRequest, success_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["reports"])


@router.get("/reports")
def list_reports(request: Request, symbol: str | None = Query(default=None)):
    store = record_store_from_request(request)
    owner = owner_from_request(request)
    if symbol:
        listing = store.get_by_company(owner=owner, symbol=symbol)
    else:
        listing = store.get_all_with_failures(owner=owner)
    items = [record.to_json_dict() for record in listing.records]
    return success_envelope(
        {"items": items, "total": len(items), "skipped": len(listing.failures)},
        trace_id_from_request(request),
    )


@router.get("/reports/status")
def report_status(request: Request, id: str | None = Query(default=None)):
    store = record_store_from_request(request)
    owner = owner_from_request(request)
    if id:
        record = store.require(owner=owner, id=id)
        data = record_summary(record, now=store.now(), stale_minutes=store.stale_minutes)
        data["processed"] = record.is_completed
        data["processing"] = data["status"] == "processing"
        return success_envelope(data, trace_id_from_request(request))
    return success_envelope(store.status_summary(owner=owner), trace_id_from_request(request))


@router.get("/reports/stats")
def report_stats(request: Request):
    store = record_store_from_request(request)
    stats = store.stats(owner=owner_from_request(request))
    return success_envelope(stats.as_dict(), trace_id_from_request(request))


@router.get("/reports/clean")
def preview_stale_reports(request: Request, maxAgeMinutes: float | None = Query(default=None, gt=0)):
    store = record_store_from_request(request)
    threshold = maxAgeMinutes or request.app.state.store_cfg.clean_default_minutes
    now = store.now()
    stale = store.find_stale(owner=owner_from_request(request), max_age_minutes=threshold)
    return success_envelope(
        {
            "staleCount": len(stale),
            "staleReports": [record_summary(r, now=now, stale_minutes=threshold) for r in stale],
        },
        trace_id_from_request(request),
    )


@router.post("/reports/clean")
def clean_stale_reports(request: Request, payload: CleanRequest | None = Body(default=None)):
    store = record_store_from_request(request)
    requested = payload.maxAgeMinutes if payload is not None else None
    threshold = requested or request.app.state.store_cfg.clean_default_minutes
    deleted = store.delete_stale(owner=owner_from_request(request), max_age_minutes=threshold)
    return success_envelope(
        {"deletedCount": deleted, "maxAgeMinutes": threshold},
        trace_id_from_request(request),
        message=f"cleaned {deleted} stale processing reports",
    )


@router.post("/reports/analyze")
def analyze_report(payload: AnalyzeRequest, request: Request):
    analyzer = request.app.state.analyzer
    if analyzer is None:
        raise ApiError(
            code="ANALYZER_UNAVAILABLE",
            message="analysis backend not configured",
            error_class="dependency",
            retryable=True,
            http_status=503,
        )
    if not payload.financialFiles:
        raise ValidationError("financialFiles is required")

    store = record_store_from_request(request)
    owner = owner_from_request(request)
    workflow = AnalysisWorkflow(store=store)
    result = workflow.run(
        owner=owner,
        request_id=payload.requestId,
        initial_fields={},
        prepare=lambda: analyzer.describe(payload),
        analyze=lambda record: analyzer.analyze(record=record, request=payload),
    )
    record = result.record
    trace_id = trace_id_from_request(request)
    if result.decision == IN_PROGRESS:
        return JSONResponse(
            status_code=202,
            content=success_envelope(
                {"analysis_id": record.id, "duplicate": True, "processing": True},
                trace_id,
                message="request is still processing",
            ),
        )
    data = {
        "analysis_id": record.id,
        "duplicate": result.decision == DUPLICATE_COMPLETED,
        "analysis": record.to_json_dict(),
        "metadata": {
            "company_name": record.payload.get("company_name"),
            "company_symbol": record.payload.get("company_symbol"),
            "period": record.payload.get("period"),
        },
    }
    if not result.duplicate:
        data["duration_ms"] = result.duration_ms
    return success_envelope(data, trace_id)


@router.get("/reports/{record_id}")
def get_report(record_id: str, request: Request):
    store = record_store_from_request(request)
    record = store.require(owner=owner_from_request(request), id=record_id)
    return success_envelope(record.to_json_dict(), trace_id_from_request(request))


@router.delete("/reports/{record_id}")
def delete_report(record_id: str, request: Request):
    store = record_store_from_request(request)
    if not store.delete(owner=owner_from_request(request), id=record_id):
        raise RecordNotFound()
    logger.info("report_deleted record_id=%s", record_id)
    return success_envelope({"id": record_id, "deleted": True}, trace_id_from_request(request))
