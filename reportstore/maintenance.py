"""Admin-only operations that look across tenants.

These are the only code paths that enumerate the store without an owner;
they are reached from the admin routes and the operator scripts.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from reportstore.errors import ApiError
from reportstore.object_storage import StoredObject
from reportstore.record_store import TENANT_SEGMENT, AnalysisRecordStore, latest_per_key
from reportstore.records import AnalysisRecord, RecordDecodeError

logger = logging.getLogger(__name__)

INDEX_SUFFIX = "_index.json"


@dataclass
class MigrationReport:
    dry_run: bool
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def tenant_of_key(key: str, *, root_prefix: str) -> str | None:
    """Owner segment of a tenant-scoped key, or None for an unscoped one."""
    relative = key[len(root_prefix) + 1 :] if key.startswith(f"{root_prefix}/") else key
    segment, sep, _rest = relative.partition("/")
    if not sep or not segment.startswith(TENANT_SEGMENT):
        return None
    return segment[len(TENANT_SEGMENT) :] or None


def is_ownerless(*, key: str, body: dict[str, Any] | None, root_prefix: str) -> bool:
    if tenant_of_key(key, root_prefix=root_prefix) is None:
        return True
    if body is None:
        return False
    return not (body.get("owner") or body.get("user_id"))


def _group_by_key(objects: list[StoredObject]) -> dict[str, list[StoredObject]]:
    grouped: dict[str, list[StoredObject]] = defaultdict(list)
    for obj in objects:
        grouped[obj.key].append(obj)
    return grouped


def _root_objects(store: AnalysisRecordStore) -> list[StoredObject]:
    return list(store.storage.list_objects(prefix=f"{store.root_prefix}/"))


def migrate_legacy_records(
    *,
    store: AnalysisRecordStore,
    default_owner: str,
    dry_run: bool = True,
) -> MigrationReport:
    """Move unscoped records under ``tenant_{owner}/``.

    Records that already carry an owner keep it; the rest are stamped with
    ``default_owner``. Keys already under a tenant segment are skipped, so
    the migration can be re-run after a partial failure.
    """
    report = MigrationReport(dry_run=dry_run)
    root = store.root_prefix
    grouped = _group_by_key(_root_objects(store))
    report.total = len(grouped)
    logger.info("migration_started dry_run=%s keys=%s", dry_run, report.total)

    for key in sorted(grouped):
        versions = grouped[key]
        if tenant_of_key(key, root_prefix=root) is not None:
            report.skipped += 1
            report.details.append(f"Skip (already migrated): {key}")
            continue
        if key.endswith(INDEX_SUFFIX) or not key.endswith(".json"):
            report.skipped += 1
            report.details.append(f"Skip (not a record): {key}")
            continue
        latest = latest_per_key(versions)[key]
        try:
            body = json.loads(store.storage.get_object(url=latest.url).decode("utf-8"))
            if not isinstance(body, dict):
                raise RecordDecodeError("record body must be a JSON object")
            if not (body.get("owner") or body.get("user_id")):
                body["owner"] = default_owner
            record = AnalysisRecord.from_json_dict(body)
            new_key = store.record_key(owner=record.owner, record_id=record.id)
            # an existing tenant record is never shadowed by a legacy body
            conflict = store.get(owner=record.owner, id=record.id) is not None
            if not dry_run and not conflict:
                store.storage.put_object(
                    key=new_key,
                    content_bytes=record.to_json_bytes(),
                    content_type="application/json",
                )
                for obj in versions:
                    store.storage.delete_object(url=obj.url)
        except (FileNotFoundError, ValueError, ApiError) as exc:
            report.errors += 1
            report.details.append(f"Error: {key} - {exc}")
            logger.warning("migration_record_failed key=%s error=%s", key, exc)
            continue
        if conflict:
            report.skipped += 1
            report.details.append(f"Skip (tenant record exists): {key} -> {new_key}")
            logger.warning("migration_record_conflict key=%s target=%s", key, new_key)
            continue
        report.migrated += 1
        report.details.append(f"{'[DRY RUN] ' if dry_run else ''}Migrate: {key} -> {new_key}")

    logger.info(
        "migration_finished dry_run=%s migrated=%s skipped=%s errors=%s",
        dry_run,
        report.migrated,
        report.skipped,
        report.errors,
    )
    return report


def migration_status(*, store: AnalysisRecordStore) -> dict[str, Any]:
    needs_migration = 0
    already_migrated = 0
    keys = {obj.key for obj in _root_objects(store)}
    for key in keys:
        if key.endswith(INDEX_SUFFIX):
            continue
        if is_ownerless(key=key, body=None, root_prefix=store.root_prefix):
            needs_migration += 1
        else:
            already_migrated += 1
    return {
        "total": len(keys),
        "needsMigration": needs_migration,
        "alreadyMigrated": already_migrated,
        "migrationRequired": needs_migration > 0,
    }


def list_tenants(*, store: AnalysisRecordStore) -> list[str]:
    owners = {tenant_of_key(obj.key, root_prefix=store.root_prefix) for obj in _root_objects(store)}
    return sorted(owner for owner in owners if owner)


def storage_inventory(*, store: AnalysisRecordStore) -> dict[str, Any]:
    tenants: dict[str, dict[str, int]] = defaultdict(lambda: {"objects": 0, "keys": 0, "bytes": 0})
    seen_keys: set[str] = set()
    total_bytes = 0
    legacy_files = 0
    objects = _root_objects(store)
    for obj in objects:
        total_bytes += obj.size
        owner = tenant_of_key(obj.key, root_prefix=store.root_prefix)
        if owner is None:
            legacy_files += 1
            continue
        entry = tenants[owner]
        entry["objects"] += 1
        entry["bytes"] += obj.size
        if obj.key not in seen_keys:
            seen_keys.add(obj.key)
            entry["keys"] += 1
    return {
        "totalFiles": len(objects),
        "totalBytes": total_bytes,
        "legacyFiles": legacy_files,
        "tenants": dict(tenants),
    }


def sweep_all_tenants(
    *,
    store: AnalysisRecordStore,
    max_age_minutes: float | None = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    per_tenant: dict[str, int] = {}
    failed_tenants: list[str] = []
    for owner in list_tenants(store=store):
        try:
            if dry_run:
                count = len(store.find_stale(owner=owner, max_age_minutes=max_age_minutes))
            else:
                count = store.delete_stale(owner=owner, max_age_minutes=max_age_minutes)
        except ApiError as exc:
            logger.warning("tenant_sweep_failed owner=%s error=%s", owner, exc.message)
            failed_tenants.append(owner)
            continue
        if count:
            per_tenant[owner] = count
    return {
        "dryRun": dry_run,
        "staleDeleted": sum(per_tenant.values()),
        "tenants": per_tenant,
        "failedTenants": failed_tenants,
    }
