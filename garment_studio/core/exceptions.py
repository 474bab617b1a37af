"""
Global Exception Handling

Provides the exception family raised by service clients and the API layer,
error-text scrubbing for caller-facing messages, and structured error
responses for FastAPI.
"""

import re
import traceback
from typing import Optional, Dict, Any, Iterable, List
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from garment_studio.core.logging import get_logger, run_id_var

logger = get_logger(__name__)

MAX_ERROR_TEXT_LENGTH = 500

_URL_PATTERN = re.compile(r"(?:https?|wss?)://[^\s\"'<>]+", re.IGNORECASE)
_DATA_URL_PATTERN = re.compile(r"data:[\w/+.-]+;base64,[A-Za-z0-9+/=]+")
_CREDENTIAL_PATTERN = re.compile(
    r"(\b(?:api[_-]?key|key|token|secret|authorization)\s*[=:]\s*)(?:Bearer\s+|Key\s+|Token\s+)?[^\s&,;\"']+",
    re.IGNORECASE,
)


def sanitize_error_text(text: Optional[str], secrets: Iterable[str] = ()) -> str:
    """Strip URLs and credentials from upstream error text before it reaches a caller."""
    if not text:
        return ""
    cleaned = str(text)
    for secret in secrets:
        if secret:
            cleaned = cleaned.replace(secret, "[redacted]")
    cleaned = _DATA_URL_PATTERN.sub("[image]", cleaned)
    cleaned = _URL_PATTERN.sub("[url]", cleaned)
    cleaned = _CREDENTIAL_PATTERN.sub(r"\1[redacted]", cleaned)
    cleaned = cleaned.strip()
    if len(cleaned) > MAX_ERROR_TEXT_LENGTH:
        cleaned = cleaned[:MAX_ERROR_TEXT_LENGTH - 3] + "..."
    return cleaned


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Custom Exceptions
# =============================================================================

class StudioBaseException(Exception):
    """Base exception for the studio pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        run_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.run_id = run_id or run_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(StudioBaseException):
    """Raised when request input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class ExternalAPIError(StudioBaseException):
    """Raised when an external inference service call fails."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class UpstreamTimeoutError(ExternalAPIError):
    """Raised when an external service does not answer within its network timeout."""

    def __init__(self, message: str, service: str, **kwargs):
        super().__init__(message, service=service, **kwargs)
        self.code = 504


class PipelineFailedError(StudioBaseException):
    """Raised by the API layer when a pipeline run ends Failed or Cancelled."""

    def __init__(
        self,
        message: str,
        kind: str,
        failure_code: Optional[str] = None,
        log: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        super().__init__(message, code=self.status_for(kind, failure_code), **kwargs)
        self.kind = kind
        self.failure_code = failure_code
        self.details["kind"] = kind
        self.details["failure_code"] = failure_code
        self.details["stages"] = log or []
        if failure_code == "quota_exceeded":
            self.details["quota_error"] = True
        elif failure_code == "invalid_input":
            self.details["image_error"] = True

    @staticmethod
    def status_for(kind: str, failure_code: Optional[str] = None) -> int:
        """HTTP status for a failure kind and its sub-classification."""
        if kind == "PolicyRejected":
            return 422
        if kind == "Timeout":
            return 504
        if kind == "Cancelled":
            return 499
        if failure_code == "quota_exceeded":
            return 429
        if failure_code == "invalid_input":
            return 400
        return 502

    @classmethod
    def from_outcome(cls, outcome) -> "PipelineFailedError":
        """Build the error from a non-Done pipeline outcome."""
        failure = outcome.failure
        return cls(
            failure.message,
            kind=failure.kind.value,
            failure_code=failure.code,
            log=[entry.model_dump(mode="json") for entry in outcome.log],
            run_id=outcome.run_id,
            stage=outcome.failed_stage.value if outcome.failed_stage else None,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: StudioBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "run_id": exc.run_id or run_id_var.get(),
        "code": exc.code,
        "stage": exc.stage,
        "details": exc.details,
        "timestamp": _utc_timestamp(),
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(StudioBaseException)
    async def studio_exception_handler(request: Request, exc: StudioBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "studio_exception",
            error=exc.message,
            code=exc.code,
            stage=exc.stage,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "run_id": run_id_var.get(),
                "code": 500,
                "timestamp": _utc_timestamp(),
            }
        )
