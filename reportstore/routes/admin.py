from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Request

from reportstore.maintenance import migrate_legacy_records, migration_status, storage_inventory, sweep_all_tenants
from reportstore.routes._deps import (
    owner_from_request,
    record_store_from_request,
    require_admin,
    trace_id_from_request,
)
from reportstore.schemas import CleanupRequest, MigrateRequest, success_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.post("/clear")
def clear_tenant(request: Request, owner: str | None = Body(default=None, embed=True)):
    require_admin(request)
    target = owner or owner_from_request(request)
    deleted = record_store_from_request(request).clear_user(owner=target)
    logger.warning("admin_tenant_cleared owner=%s count=%s", target, deleted)
    return success_envelope({"owner": target, "deletedCount": deleted}, trace_id_from_request(request))


@router.get("/migrate")
def get_migration_status(request: Request):
    require_admin(request)
    data = migration_status(store=record_store_from_request(request))
    return success_envelope(data, trace_id_from_request(request))


@router.post("/migrate")
def run_migration(request: Request, payload: MigrateRequest | None = Body(default=None)):
    require_admin(request)
    payload = payload or MigrateRequest()
    report = migrate_legacy_records(
        store=record_store_from_request(request),
        default_owner=payload.defaultOwner or request.app.state.store_cfg.legacy_owner,
        dry_run=payload.dryRun,
    )
    return success_envelope(report.as_dict(), trace_id_from_request(request))


@router.post("/cleanup")
def cleanup_stale(request: Request, payload: CleanupRequest | None = Body(default=None)):
    require_admin(request)
    payload = payload or CleanupRequest()
    store = record_store_from_request(request)
    data = sweep_all_tenants(
        store=store,
        max_age_minutes=payload.staleMinutes or store.stale_minutes,
        dry_run=payload.dryRun,
    )
    return success_envelope(data, trace_id_from_request(request))


@router.get("/inventory")
def get_inventory(request: Request):
    require_admin(request)
    data = storage_inventory(store=record_store_from_request(request))
    return success_envelope(data, trace_id_from_request(request))
