from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class UploadedFile(BaseModel):
    url: str
    pathname: str = ""
    originalName: str = ""


class AnalyzeRequest(BaseModel):
    requestId: str = Field(min_length=1, max_length=128)
    financialFiles: list[UploadedFile] = Field(default_factory=list)
    researchFiles: list[UploadedFile] = Field(default_factory=list)
    category: Literal["AI_APPLICATION", "AI_SUPPLY_CHAIN"] | None = None
    fiscalYear: int | None = Field(default=None, ge=1900, le=2200)
    fiscalQuarter: int | None = Field(default=None, ge=1, le=4)
    company_name: str | None = None
    company_symbol: str | None = None


class CleanRequest(BaseModel):
    maxAgeMinutes: float | None = Field(default=None, gt=0)


class MigrateRequest(BaseModel):
    dryRun: bool = True
    defaultOwner: str | None = None


class CleanupRequest(BaseModel):
    staleMinutes: float | None = Field(default=None, gt=0)
    dryRun: bool = False


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
