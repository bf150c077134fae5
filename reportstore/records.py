from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar

RECORD_ID_PREFIX = "req_"

# Body keys owned by the store; everything else in a body is opaque payload.
HEADER_FIELDS = frozenset({"id", "owner", "requestId", "createdAt", "processing", "processed", "error"})

# Older writers used snake_case names for the header fields.
LEGACY_ALIASES = {"user_id": "owner", "request_id": "requestId", "created_at": "createdAt"}


class RecordDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class Pending:
    name: ClassVar[str] = "processing"


@dataclass(frozen=True)
class Completed:
    name: ClassVar[str] = "completed"


@dataclass(frozen=True)
class Failed:
    error: str
    name: ClassVar[str] = "failed"


RecordStatus = Pending | Completed | Failed


def record_id_for(request_id: str) -> str:
    return f"{RECORD_ID_PREFIX}{request_id}"


def status_from_flags(*, processing: Any, processed: Any, error: Any) -> RecordStatus:
    """Resolve the three lifecycle flags to exactly one state.

    Precedence is error, then processed, then processing. A body with none of
    them set is what completed analyses looked like before ``processed`` was
    written, so it reads as Completed.
    """
    if error:
        return Failed(error=str(error))
    if processed is True:
        return Completed()
    if processing is True:
        return Pending()
    return Completed()


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, str) and raw.strip():
        try:
            value = datetime.fromisoformat(raw.strip())
        except ValueError as exc:
            raise RecordDecodeError(f"invalid createdAt: {raw!r}") from exc
    else:
        raise RecordDecodeError("missing createdAt")
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def _format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


@dataclass(frozen=True)
class AnalysisRecord:
    id: str
    owner: str
    request_id: str
    created_at: datetime
    status: RecordStatus
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def is_processing(self) -> bool:
        return isinstance(self.status, Pending)

    @property
    def is_completed(self) -> bool:
        return isinstance(self.status, Completed)

    @property
    def is_failed(self) -> bool:
        return isinstance(self.status, Failed)

    @property
    def error(self) -> str | None:
        if isinstance(self.status, Failed):
            return self.status.error
        return None

    def age_minutes(self, *, now: datetime) -> float:
        return (now - self.created_at).total_seconds() / 60.0

    def is_stale(self, *, now: datetime, max_age_minutes: float) -> bool:
        return self.is_processing and self.age_minutes(now=now) > max_age_minutes

    def with_status(self, status: RecordStatus, *, payload: dict[str, Any] | None = None) -> AnalysisRecord:
        merged = dict(self.payload)
        if payload:
            merged.update(payload)
        return dataclasses.replace(self, status=status, payload=merged)

    def to_json_dict(self) -> dict[str, Any]:
        body = dict(self.payload)
        body.update(
            {
                "id": self.id,
                "owner": self.owner,
                "requestId": self.request_id,
                "createdAt": _format_timestamp(self.created_at),
                "processing": self.is_processing,
                "processed": self.is_completed,
                "error": self.error,
            }
        )
        return body

    def to_json_bytes(self) -> bytes:
        return json.dumps(self.to_json_dict(), ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json_dict(cls, body: dict[str, Any]) -> AnalysisRecord:
        if not isinstance(body, dict):
            raise RecordDecodeError("record body must be a JSON object")
        normalized = dict(body)
        for legacy, current in LEGACY_ALIASES.items():
            if legacy in normalized:
                value = normalized.pop(legacy)
                normalized.setdefault(current, value)
        record_id = str(normalized.get("id") or "").strip()
        if not record_id:
            raise RecordDecodeError("missing id")
        request_id = str(normalized.get("requestId") or "").strip()
        if not request_id:
            request_id = record_id[len(RECORD_ID_PREFIX) :] if record_id.startswith(RECORD_ID_PREFIX) else record_id
        return cls(
            id=record_id,
            owner=str(normalized.get("owner") or "").strip(),
            request_id=request_id,
            created_at=_parse_timestamp(normalized.get("createdAt")),
            status=status_from_flags(
                processing=normalized.get("processing"),
                processed=normalized.get("processed"),
                error=normalized.get("error"),
            ),
            payload={k: v for k, v in normalized.items() if k not in HEADER_FIELDS},
        )

    @classmethod
    def from_json_bytes(cls, raw: bytes) -> AnalysisRecord:
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise RecordDecodeError(f"invalid record json: {exc}") from exc
        return cls.from_json_dict(body)
