from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from reportstore.errors import AnalysisFailed, ApiError, InvalidTransition
from reportstore.record_store import AnalysisRecordStore
from reportstore.records import AnalysisRecord

logger = logging.getLogger(__name__)

PROCEED = "proceed"
DUPLICATE_COMPLETED = "duplicate_completed"
IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class GuardDecision:
    kind: str
    record: AnalysisRecord | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.kind in {DUPLICATE_COMPLETED, IN_PROGRESS}


class IdempotencyGuard:
    """Check-then-act gate in front of the analysis workflow.

    Without compare-and-swap in the store this narrows the double-submit
    window but cannot close it; two requests that both read "absent" will
    both proceed.
    """

    def __init__(self, *, store: AnalysisRecordStore) -> None:
        self._store = store

    def check(self, *, owner: str, request_id: str) -> GuardDecision:
        existing = self._store.get_by_request_id(owner=owner, request_id=request_id)
        if existing is None:
            return GuardDecision(kind=PROCEED)
        if existing.is_completed:
            logger.info("duplicate_submission_completed owner=%s record_id=%s", owner, existing.id)
            return GuardDecision(kind=DUPLICATE_COMPLETED, record=existing)
        if existing.is_processing:
            if existing.is_stale(now=self._store.now(), max_age_minutes=self._store.stale_minutes):
                logger.info("stale_submission_restarted owner=%s record_id=%s", owner, existing.id)
                return GuardDecision(kind=PROCEED, record=existing)
            logger.info("duplicate_submission_in_progress owner=%s record_id=%s", owner, existing.id)
            return GuardDecision(kind=IN_PROGRESS, record=existing)
        # failed attempts may be retried with the same requestId
        return GuardDecision(kind=PROCEED, record=existing)


@dataclass
class WorkflowResult:
    decision: str
    record: AnalysisRecord
    duration_ms: int = 0

    @property
    def duplicate(self) -> bool:
        return self.decision != PROCEED


class AnalysisWorkflow:
    """create, process, complete, with the guard run at each expensive step."""

    def __init__(self, *, store: AnalysisRecordStore, guard: IdempotencyGuard | None = None) -> None:
        self._store = store
        self._guard = guard or IdempotencyGuard(store=store)

    def run(
        self,
        *,
        owner: str,
        request_id: str,
        initial_fields: dict[str, Any],
        analyze: Callable[[AnalysisRecord], dict[str, Any]],
        prepare: Callable[[], dict[str, Any]] | None = None,
    ) -> WorkflowResult:
        started = time.monotonic()

        decision = self._guard.check(owner=owner, request_id=request_id)
        if decision.is_duplicate:
            return WorkflowResult(decision=decision.kind, record=decision.record)  # type: ignore[arg-type]

        fields = dict(initial_fields)
        if prepare is not None:
            fields.update(prepare())
            decision = self._guard.check(owner=owner, request_id=request_id)
            if decision.is_duplicate:
                return WorkflowResult(decision=decision.kind, record=decision.record)  # type: ignore[arg-type]

        record = self._store.create(owner=owner, request_id=request_id, initial_fields=fields)
        try:
            result = analyze(record)
        except ApiError as exc:
            self._record_failure(owner=owner, record=record, message=exc.message)
            raise
        except Exception as exc:
            self._record_failure(owner=owner, record=record, message=str(exc) or type(exc).__name__)
            raise AnalysisFailed(str(exc) or "analysis failed") from exc

        try:
            decision = self._guard.check(owner=owner, request_id=request_id)
            if decision.kind == DUPLICATE_COMPLETED:
                logger.info("completion_skipped_already_completed owner=%s record_id=%s", owner, record.id)
                return WorkflowResult(decision=decision.kind, record=decision.record)  # type: ignore[arg-type]
            completed = self._store.mark_completed(owner=owner, id=record.id, payload=result)
        except InvalidTransition:
            # a concurrent writer finished first between the check and the write
            winner = self._store.get(owner=owner, id=record.id)
            if winner is None or not winner.is_completed:
                raise
            return WorkflowResult(decision=DUPLICATE_COMPLETED, record=winner)
        except Exception as exc:
            # the record must not stay Processing when its completion write fails
            self._record_failure(owner=owner, record=record, message=str(exc) or type(exc).__name__)
            raise
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("analysis_completed owner=%s record_id=%s duration_ms=%s", owner, record.id, duration_ms)
        return WorkflowResult(decision=PROCEED, record=completed, duration_ms=duration_ms)

    def _record_failure(self, *, owner: str, record: AnalysisRecord, message: str) -> None:
        logger.error("analysis_failed owner=%s record_id=%s error=%s", owner, record.id, message)
        try:
            self._store.mark_failed(owner=owner, id=record.id, error=message)
        except ApiError as exc:
            logger.error("analysis_failure_not_recorded owner=%s record_id=%s error=%s", owner, record.id, exc.message)
