from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class ValidationError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class RecordNotFound(ApiError):
    def __init__(self, message: str = "record not found") -> None:
        super().__init__(
            code="RECORD_NOT_FOUND",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class AccessDenied(RecordNotFound):
    """Owner mismatch on an existing record.

    Rendered exactly like ``RecordNotFound`` so the caller cannot tell a
    foreign record from a missing one.
    """


class TransientStoreError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="STORE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class InvalidTransition(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="RECORD_STATE_CONFLICT",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class AnalysisFailed(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="ANALYSIS_FAILED",
            message=message,
            error_class="upstream",
            retryable=False,
            http_status=500,
        )


class AuthError(ApiError):
    def __init__(self, message: str, *, code: str = "AUTH_UNAUTHORIZED", http_status: int = 401) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=http_status,
        )
