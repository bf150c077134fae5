from __future__ import annotations

import dataclasses
import logging
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from reportstore.config import StoreConfig
from reportstore.errors import AccessDenied, InvalidTransition, RecordNotFound, TransientStoreError, ValidationError
from reportstore.object_storage import ObjectStorageBackend, StoredObject, create_object_storage_from_env
from reportstore.records import (
    HEADER_FIELDS,
    LEGACY_ALIASES,
    AnalysisRecord,
    Completed,
    Failed,
    Pending,
    RecordDecodeError,
    RecordStatus,
    record_id_for,
    status_from_flags,
)

logger = logging.getLogger(__name__)

TENANT_SEGMENT = "tenant_"
RECORD_SUFFIX = ".json"
LIFECYCLE_FIELDS = frozenset({"processing", "processed", "error"})
IMMUTABLE_FIELDS = frozenset({"id", "owner", "requestId", "createdAt", *LEGACY_ALIASES})

_OWNER_RE = re.compile(r"[A-Za-z0-9._@-]+")
_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]+")
_RECORD_ID_RE = re.compile(r"[A-Za-z0-9._-]+")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _version_rank(obj: StoredObject) -> tuple[bool, datetime, str]:
    return obj.is_latest, obj.uploaded_at, obj.url


def latest_per_key(objects: Iterable[StoredObject]) -> dict[str, StoredObject]:
    """Collapse physical versions to the newest one per key.

    A version the backend flags as current wins outright; otherwise ordering
    is by ``uploaded_at`` with the url breaking exact ties, which the memory
    and local backends keep monotonic.
    """
    latest: dict[str, StoredObject] = {}
    for obj in objects:
        current = latest.get(obj.key)
        if current is None or _version_rank(obj) > _version_rank(current):
            latest[obj.key] = obj
    return latest


@dataclass(frozen=True)
class ReadOutcome:
    obj: StoredObject
    record: AnalysisRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class ListingResult:
    records: list[AnalysisRecord]
    failures: list[ReadOutcome]


@dataclass(frozen=True)
class RecordStats:
    total: int
    processing: int
    completed: int
    failed: int
    stale: int

    def as_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


def matches_company(record: AnalysisRecord, symbol: str) -> bool:
    return str(record.payload.get("company_symbol") or "").upper() == symbol.strip().upper()


def record_summary(record: AnalysisRecord, *, now: datetime, stale_minutes: float) -> dict[str, Any]:
    status = record.status.name
    if record.is_stale(now=now, max_age_minutes=stale_minutes):
        status = "stale"
    return {
        "id": record.id,
        "company_name": record.payload.get("company_name"),
        "company_symbol": record.payload.get("company_symbol"),
        "status": status,
        "error": record.error,
        "created_at": record.created_at.isoformat(),
        "age_minutes": round(record.age_minutes(now=now), 1),
    }


class AnalysisRecordStore:
    """Tenant-isolated analysis records on top of an append-only object store.

    Physical layout is ``{root}/tenant_{owner}/{id}.json``. Every operation
    takes ``owner``; reads re-check the owner embedded in the body so a
    foreign record is reported as absent, never returned.
    """

    def __init__(
        self,
        *,
        storage: ObjectStorageBackend,
        root_prefix: str = "analyses",
        stale_minutes: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._storage = storage
        self._root = root_prefix.strip("/") or "analyses"
        self._stale_minutes = stale_minutes
        self._clock = clock or _utcnow

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AnalysisRecordStore":
        env = os.environ if environ is None else environ
        cfg = StoreConfig.from_env(env)
        return cls(
            storage=create_object_storage_from_env(dict(env)),
            root_prefix=cfg.root_prefix,
            stale_minutes=cfg.stale_minutes,
        )

    @property
    def storage(self) -> ObjectStorageBackend:
        return self._storage

    @property
    def root_prefix(self) -> str:
        return self._root

    @property
    def stale_minutes(self) -> int:
        return self._stale_minutes

    def now(self) -> datetime:
        return self._clock()

    # key namespacing

    @staticmethod
    def _require_owner(owner: Any) -> str:
        if not isinstance(owner, str) or not owner.strip():
            raise ValidationError("owner is required")
        if not _OWNER_RE.fullmatch(owner):
            raise ValidationError("owner contains unsupported characters")
        return owner

    @staticmethod
    def _require_request_id(request_id: Any) -> str:
        if not isinstance(request_id, str) or not request_id.strip():
            raise ValidationError("requestId is required")
        if not _REQUEST_ID_RE.fullmatch(request_id):
            raise ValidationError("requestId contains unsupported characters")
        return request_id

    @staticmethod
    def _require_record_id(record_id: Any) -> str:
        if not isinstance(record_id, str) or not record_id.strip():
            raise ValidationError("record id is required")
        if not _RECORD_ID_RE.fullmatch(record_id):
            raise ValidationError("record id contains unsupported characters")
        return record_id

    def tenant_prefix(self, owner: str) -> str:
        return f"{self._root}/{TENANT_SEGMENT}{self._require_owner(owner)}/"

    def record_key(self, *, owner: str, record_id: str) -> str:
        return f"{self.tenant_prefix(owner)}{record_id}{RECORD_SUFFIX}"

    # physical access

    def _versions(self, *, owner: str, record_id: str) -> list[StoredObject]:
        exact_key = self.record_key(owner=owner, record_id=record_id)
        prefix = f"{self.tenant_prefix(owner)}{record_id}"
        # prefix listing also returns req_r10.json for req_r1; keep the exact key only
        return [obj for obj in self._storage.list_objects(prefix=prefix) if obj.key == exact_key]

    def _write(self, *, key: str, record: AnalysisRecord) -> StoredObject:
        return self._storage.put_object(
            key=key,
            content_bytes=record.to_json_bytes(),
            content_type="application/json",
        )

    def _read_outcome(self, obj: StoredObject) -> ReadOutcome:
        try:
            raw = self._storage.get_object(url=obj.url)
            return ReadOutcome(obj=obj, record=AnalysisRecord.from_json_bytes(raw))
        except FileNotFoundError:
            return ReadOutcome(obj=obj, error="object vanished")
        except (TransientStoreError, RecordDecodeError) as exc:
            return ReadOutcome(obj=obj, error=str(exc))

    def _load_latest(self, *, owner: str, record_id: str) -> tuple[StoredObject, AnalysisRecord] | None:
        """Newest readable version of the record, or None.

        Raises ``AccessDenied`` when the stored body names another owner.
        """
        versions = self._versions(owner=owner, record_id=record_id)
        if not versions:
            return None
        latest = latest_per_key(versions)[versions[0].key]
        try:
            raw = self._storage.get_object(url=latest.url)
        except FileNotFoundError:
            # listed but already deleted; an older version must not stand in for it
            logger.info("record_version_vanished owner=%s record_id=%s", owner, record_id)
            return None
        try:
            record = AnalysisRecord.from_json_bytes(raw)
        except RecordDecodeError as exc:
            logger.error("record_decode_failed key=%s error=%s", latest.key, exc)
            return None
        if record.owner != owner:
            logger.warning(
                "record_access_denied requested_owner=%s record_id=%s key=%s",
                owner,
                record_id,
                latest.key,
            )
            raise AccessDenied()
        return latest, record

    # reads

    def get(self, *, owner: str, id: str) -> AnalysisRecord | None:
        self._require_owner(owner)
        self._require_record_id(id)
        try:
            located = self._load_latest(owner=owner, record_id=id)
        except AccessDenied:
            return None
        if located is None:
            return None
        return located[1]

    def require(self, *, owner: str, id: str) -> AnalysisRecord:
        record = self.get(owner=owner, id=id)
        if record is None:
            raise RecordNotFound()
        return record

    def get_by_request_id(self, *, owner: str, request_id: str) -> AnalysisRecord | None:
        self._require_request_id(request_id)
        return self.get(owner=owner, id=record_id_for(request_id))

    def get_all_with_failures(self, *, owner: str) -> ListingResult:
        prefix = self.tenant_prefix(owner)
        candidates = (
            obj
            for obj in self._storage.list_objects(prefix=prefix)
            if obj.key.endswith(RECORD_SUFFIX) and "/" not in obj.key[len(prefix) :]
        )
        outcomes = [self._read_outcome(obj) for obj in latest_per_key(candidates).values()]

        records: list[AnalysisRecord] = []
        failures: list[ReadOutcome] = []
        for outcome in outcomes:
            if outcome.record is None:
                failures.append(outcome)
            elif outcome.record.owner != owner:
                logger.warning("record_owner_mismatch requested_owner=%s key=%s", owner, outcome.obj.key)
                failures.append(dataclasses.replace(outcome, record=None, error="owner mismatch"))
            else:
                records.append(outcome.record)
        for failure in failures:
            logger.warning("record_listing_skipped key=%s error=%s", failure.obj.key, failure.error)
        records.sort(key=lambda record: record.created_at, reverse=True)
        return ListingResult(records=records, failures=failures)

    def get_all(self, *, owner: str) -> list[AnalysisRecord]:
        return self.get_all_with_failures(owner=owner).records

    def get_by_company(self, *, owner: str, symbol: str) -> ListingResult:
        listing = self.get_all_with_failures(owner=owner)
        return ListingResult(
            records=[record for record in listing.records if matches_company(record, symbol)],
            failures=listing.failures,
        )

    # writes

    def create(
        self,
        *,
        owner: str,
        request_id: str,
        initial_fields: dict[str, Any] | None = None,
        created_at: datetime | None = None,
    ) -> AnalysisRecord:
        self._require_owner(owner)
        self._require_request_id(request_id)
        payload = {
            key: value
            for key, value in (initial_fields or {}).items()
            if key not in HEADER_FIELDS and key not in LEGACY_ALIASES
        }
        record = AnalysisRecord(
            id=record_id_for(request_id),
            owner=owner,
            request_id=request_id,
            created_at=created_at or self._clock(),
            status=Pending(),
            payload=payload,
        )
        self._write(key=self.record_key(owner=owner, record_id=record.id), record=record)
        logger.info("record_created owner=%s record_id=%s", owner, record.id)
        # no read-after-write guarantee, so echo what was written
        return record

    def update(self, *, owner: str, id: str, fields: dict[str, Any]) -> AnalysisRecord:
        """Merge ``fields`` into the latest version and write a new version.

        Kept for callers that still speak in raw flags. Lifecycle flags in
        ``fields`` replace the previous lifecycle as a unit and are resolved
        with the same precedence as decoding (error, processed, processing).
        """
        self._require_owner(owner)
        self._require_record_id(id)
        located = self._load_latest(owner=owner, record_id=id)
        if located is None:
            raise RecordNotFound()
        obj, current = located

        updates = dict(fields)
        dropped = sorted(key for key in updates if key in IMMUTABLE_FIELDS)
        if dropped:
            logger.warning("record_update_immutable_fields_ignored record_id=%s fields=%s", id, ",".join(dropped))
        lifecycle = {key: updates.pop(key) for key in list(updates) if key in LIFECYCLE_FIELDS}
        payload = {key: value for key, value in updates.items() if key not in IMMUTABLE_FIELDS}

        status: RecordStatus = current.status
        if lifecycle:
            status = status_from_flags(
                processing=lifecycle.get("processing", False),
                processed=lifecycle.get("processed", False),
                error=lifecycle.get("error"),
            )
        updated = current.with_status(status, payload=payload)
        # the key comes from where the stored record lives, not from the caller
        self._write(key=obj.key, record=updated)
        logger.info("record_updated owner=%s record_id=%s status=%s", owner, id, status.name)
        return updated

    def _transition(
        self,
        *,
        owner: str,
        id: str,
        status: RecordStatus,
        payload: dict[str, Any] | None = None,
    ) -> AnalysisRecord:
        self._require_owner(owner)
        self._require_record_id(id)
        located = self._load_latest(owner=owner, record_id=id)
        if located is None:
            raise RecordNotFound()
        obj, current = located
        if not current.is_processing:
            raise InvalidTransition(f"invalid transition: {current.status.name} -> {status.name}")
        clean_payload = {
            key: value
            for key, value in (payload or {}).items()
            if key not in IMMUTABLE_FIELDS and key not in LIFECYCLE_FIELDS
        }
        updated = current.with_status(status, payload=clean_payload)
        self._write(key=obj.key, record=updated)
        logger.info("record_transitioned owner=%s record_id=%s status=%s", owner, id, status.name)
        return updated

    def mark_completed(self, *, owner: str, id: str, payload: dict[str, Any] | None = None) -> AnalysisRecord:
        return self._transition(owner=owner, id=id, status=Completed(), payload=payload)

    def mark_failed(self, *, owner: str, id: str, error: str) -> AnalysisRecord:
        if not isinstance(error, str) or not error.strip():
            raise ValidationError("error message is required")
        return self._transition(owner=owner, id=id, status=Failed(error=error))

    # deletes

    def delete(self, *, owner: str, id: str) -> bool:
        """Remove every physical version of the record.

        Updates never overwrite in place, so deleting only the newest
        version would let an older one win the next version collapse.
        """
        self._require_owner(owner)
        self._require_record_id(id)
        existed = False
        for obj in self._versions(owner=owner, record_id=id):
            if self._storage.delete_object(url=obj.url):
                existed = True
        if existed:
            logger.info("record_deleted owner=%s record_id=%s", owner, id)
        return existed

    def find_stale(self, *, owner: str, max_age_minutes: float | None = None) -> list[AnalysisRecord]:
        threshold = self._stale_minutes if max_age_minutes is None else max_age_minutes
        now = self._clock()
        return [
            record for record in self.get_all(owner=owner) if record.is_stale(now=now, max_age_minutes=threshold)
        ]

    def delete_stale(self, *, owner: str, max_age_minutes: float | None = None) -> int:
        deleted = 0
        for record in self.find_stale(owner=owner, max_age_minutes=max_age_minutes):
            try:
                if self.delete(owner=owner, id=record.id):
                    deleted += 1
            except TransientStoreError as exc:
                logger.warning("record_stale_delete_failed owner=%s record_id=%s error=%s", owner, record.id, exc)
        if deleted:
            logger.info("stale_records_deleted owner=%s count=%s", owner, deleted)
        return deleted

    def clear_user(self, *, owner: str) -> int:
        """Delete every physical object under the tenant prefix.

        Unreadable bodies go too; the count is of distinct keys removed.
        """
        cleared: set[str] = set()
        for obj in list(self._storage.list_objects(prefix=self.tenant_prefix(owner))):
            try:
                if self._storage.delete_object(url=obj.url):
                    cleared.add(obj.key)
            except TransientStoreError as exc:
                logger.warning("record_clear_delete_failed owner=%s key=%s error=%s", owner, obj.key, exc)
        logger.info("tenant_cleared owner=%s count=%s", owner, len(cleared))
        return len(cleared)

    # summaries

    def stats(self, *, owner: str) -> RecordStats:
        now = self._clock()
        records = self.get_all(owner=owner)
        stale = sum(1 for r in records if r.is_stale(now=now, max_age_minutes=self._stale_minutes))
        return RecordStats(
            total=len(records),
            processing=sum(1 for r in records if r.is_processing) - stale,
            completed=sum(1 for r in records if r.is_completed),
            failed=sum(1 for r in records if r.is_failed),
            stale=stale,
        )

    def status_summary(self, *, owner: str) -> dict[str, Any]:
        now = self._clock()
        records = self.get_all(owner=owner)
        summaries = [record_summary(r, now=now, stale_minutes=self._stale_minutes) for r in records]
        processing = [s for s in summaries if s["status"] == "processing"]
        return {
            "processing": processing,
            "completed": [s for s in summaries if s["status"] == "completed"][:10],
            "errors": [s for s in summaries if s["status"] == "failed"][:5],
            "stale": [s for s in summaries if s["status"] == "stale"],
            "processingCount": len(processing),
            "totalCount": len(records),
        }
