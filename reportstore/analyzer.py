"""
Seam between the record store and the external analysis service.

The real analyzer (document download, text extraction, LLM prompting) lives
outside this package and is injected into ``create_app``. ``MockReportAnalyzer``
gives deterministic output for local runs and end-to-end tests; it is
enabled with MOCK_ANALYZER_ENABLED=true.
"""

from __future__ import annotations

import hashlib
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from reportstore.records import AnalysisRecord
from reportstore.schemas import AnalyzeRequest


class ReportAnalyzer:
    def describe(self, request: AnalyzeRequest) -> dict[str, Any]:
        """Metadata stored on the Pending record before analysis starts."""
        raise NotImplementedError

    def analyze(self, *, record: AnalysisRecord, request: AnalyzeRequest) -> dict[str, Any]:
        """Produce the analysis payload for a Pending record."""
        raise NotImplementedError


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    h = hashlib.sha256(seed.encode()).hexdigest()
    val = int(h[:8], 16) / 0xFFFFFFFF
    return min_val + val * (max_val - min_val)


def default_period(request: AnalyzeRequest, *, now: datetime | None = None) -> tuple[int, int, str]:
    current = now or datetime.now(UTC)
    fiscal_year = request.fiscalYear or current.year
    fiscal_quarter = request.fiscalQuarter or 4
    return fiscal_year, fiscal_quarter, f"{fiscal_year} Q{fiscal_quarter}"


class MockReportAnalyzer(ReportAnalyzer):
    def describe(self, request: AnalyzeRequest) -> dict[str, Any]:
        fiscal_year, fiscal_quarter, period = default_period(request)
        first = request.financialFiles[0].originalName if request.financialFiles else "report"
        symbol = (request.company_symbol or first.split(".")[0] or "UNKNOWN").upper()
        return {
            "company_name": request.company_name or symbol,
            "company_symbol": symbol,
            "report_type": "10-Q" if fiscal_quarter < 4 else "10-K",
            "fiscal_year": fiscal_year,
            "fiscal_quarter": fiscal_quarter,
            "period": period,
            "category": request.category,
            "has_research_report": bool(request.researchFiles),
        }

    def analyze(self, *, record: AnalysisRecord, request: AnalyzeRequest) -> dict[str, Any]:
        seed = f"{record.owner}:{record.request_id}"
        confidence = round(_deterministic_float(seed, 0.5, 0.95), 2)
        symbol = record.payload.get("company_symbol", "UNKNOWN")
        return {
            "one_line_conclusion": f"{symbol} {record.payload.get('period', '')} results in line with plan",
            "final_judgment": {
                "confidence": f"{confidence:.2f}",
                "recommendation": "hold" if confidence < 0.75 else "accumulate",
            },
            "metadata": {
                "analysis_timestamp": datetime.now(UTC).isoformat(),
                "prompt_version": "mock",
                "has_research_report": bool(request.researchFiles),
            },
        }


def create_analyzer_from_env(environ: Mapping[str, str] | None = None) -> ReportAnalyzer | None:
    env = os.environ if environ is None else environ
    if env.get("MOCK_ANALYZER_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}:
        return MockReportAnalyzer()
    return None
