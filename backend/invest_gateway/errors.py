"""
Invest Gateway - Error Normalizer
=================================

What:  The single terminal stage that turns any failure into exactly one JSON
       response with a stable envelope and status code.
How:   1. `classify()` reduces an exception to a typed `Failure`.
       2. `ERROR_TABLE` maps each `FailureKind` to a status, a title and an
          optional fixed message.
       3. `ErrorNormalizer.render()` builds the response, adding the `stack`
          field for internal failures outside production.
Who:   Used by the FastAPI exception handlers, the error-boundary middleware,
       the dispatcher (for returned failures) and the policy middleware.

Envelope:
    {
        "error":   "Validation failed",   # title for the failure kind
        "message": "email is required",   # human-readable detail
        ...extra fields (code, path, method, limit)...
        "stack":   "Traceback ..."        # internal failures, non-production only
    }
"""

import http
import logging
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from invest_gateway.exceptions import Failure, FailureKind, GatewayError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "Internal server error"

# Always-safe response used when rendering itself goes wrong
FALLBACK_BODY = {"error": GENERIC_MESSAGE, "message": GENERIC_MESSAGE}


@dataclass(frozen=True)
class EnvelopeRule:
    """One row of the mapping table: status, title, and a fixed message if any."""

    status_code: int
    error: str
    message: Optional[str] = None


ERROR_TABLE: Dict[FailureKind, EnvelopeRule] = {
    FailureKind.DUPLICATE_ENTRY: EnvelopeRule(
        400, "Duplicate entry", "The provided data already exists"
    ),
    FailureKind.INVALID_TOKEN: EnvelopeRule(401, "Invalid token", "Please login again"),
    FailureKind.VALIDATION_FAILED: EnvelopeRule(400, "Validation failed"),
    FailureKind.RATE_LIMIT_EXCEEDED: EnvelopeRule(429, "Too many requests"),
    FailureKind.NOT_FOUND: EnvelopeRule(404, "Not found"),
    FailureKind.PAYLOAD_TOO_LARGE: EnvelopeRule(413, "Payload too large"),
    FailureKind.ORIGIN_REJECTED: EnvelopeRule(403, "Origin not allowed"),
    FailureKind.INTERNAL: EnvelopeRule(500, GENERIC_MESSAGE),
}

_unmapped = set(FailureKind) - set(ERROR_TABLE)
if _unmapped:
    raise RuntimeError(f"ERROR_TABLE is missing failure kinds: {sorted(k.value for k in _unmapped)}")

_DUPLICATE_MARKERS = ("duplicate", "unique constraint", "unique violation", "is not unique")


# ══════════════════════════════════════════════════════════════════════════
# Classification
# ══════════════════════════════════════════════════════════════════════════

def _supplied_status(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return None


def _status_phrase(status: int) -> str:
    try:
        return http.HTTPStatus(status).phrase
    except ValueError:
        return GENERIC_MESSAGE


def _describe_validation_errors(errors) -> str:
    parts = []
    for err in errors:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        msg = err.get("msg", "invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Validation failed"


def classify(exc: BaseException) -> Failure:
    """
    Reduce any exception to a typed Failure.

    Mapping:
        GatewayError subclasses        → their own kind
        IntegrityError (duplicate key) → DUPLICATE_ENTRY
        pydantic / request validation  → VALIDATION_FAILED
        HTTPException 404              → NOT_FOUND
        anything else                  → INTERNAL (status from the exception
                                         when it carries a 4xx/5xx one)

    Exception groups holding exactly one exception (anyio task groups inside
    Starlette middleware produce these) are classified by that exception.
    """
    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]

    if isinstance(exc, GatewayError):
        return exc.to_failure()

    if isinstance(exc, IntegrityError):
        text = str(getattr(exc, "orig", None) or exc).lower()
        if any(marker in text for marker in _DUPLICATE_MARKERS):
            return Failure(FailureKind.DUPLICATE_ENTRY, cause=exc)
        return Failure(FailureKind.INTERNAL, cause=exc)

    if isinstance(exc, (PydanticValidationError, RequestValidationError)):
        return Failure(
            FailureKind.VALIDATION_FAILED,
            message=_describe_validation_errors(exc.errors()),
            cause=exc,
        )

    if isinstance(exc, StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else ""
        if exc.status_code == 404:
            return Failure(FailureKind.NOT_FOUND, message=detail or "Not found", cause=exc)
        return Failure(
            FailureKind.INTERNAL,
            message=detail,
            status_code=exc.status_code,
            cause=exc,
        )

    return Failure(
        FailureKind.INTERNAL,
        message=str(exc),
        status_code=_supplied_status(exc),
        cause=exc,
    )


# ══════════════════════════════════════════════════════════════════════════
# Rendering
# ══════════════════════════════════════════════════════════════════════════

class ErrorNormalizer:
    """
    Maps failures to JSON error responses.

    One instance lives on the gateway context; `expose_diagnostics` is fixed
    at construction from the environment name and is never True in
    production.
    """

    def __init__(self, expose_diagnostics: bool = False):
        self.expose_diagnostics = expose_diagnostics

    def envelope(self, failure: Failure) -> Tuple[int, Dict[str, Any]]:
        """Build (status, body) for a failure. Pure; may raise on malformed input."""
        rule = ERROR_TABLE[failure.kind]
        status = rule.status_code
        title = rule.error
        message = rule.message or failure.message

        if failure.kind is FailureKind.INTERNAL:
            if failure.status_code is not None:
                status = failure.status_code
                if status != 500:
                    title = _status_phrase(status)
            message = failure.message or GENERIC_MESSAGE
        elif not message:
            message = title

        body: Dict[str, Any] = {"error": title, "message": message}
        for key, value in failure.extra.items():
            body.setdefault(key, value)

        if (
            self.expose_diagnostics
            and failure.kind is FailureKind.INTERNAL
            and failure.cause is not None
        ):
            cause = failure.cause
            body["stack"] = "".join(
                traceback.format_exception(type(cause), cause, cause.__traceback__)
            )
        return status, body

    def render(
        self,
        failure: Union[Failure, BaseException],
        headers: Optional[Mapping[str, str]] = None,
        request_id: str = "",
    ) -> JSONResponse:
        """
        Produce exactly one response for a failure. Never raises.

        Any fault while classifying or rendering collapses to a bare 500.
        """
        try:
            if not isinstance(failure, Failure):
                failure = classify(failure)
            status, body = self.envelope(failure)

            response_headers = dict(headers or {})
            retry_after = getattr(failure.cause, "retry_after", None)
            if retry_after is not None:
                response_headers.setdefault("Retry-After", str(retry_after))

            self._log(failure, status, request_id)
            return JSONResponse(status_code=status, content=body, headers=response_headers)
        except Exception:
            logger.exception("[%s] Error normalizer failed; answering with generic 500", request_id)
            return JSONResponse(status_code=500, content=dict(FALLBACK_BODY))

    @staticmethod
    def _log(failure: Failure, status: int, request_id: str) -> None:
        if status >= 500:
            logger.error(
                "[%s] %s failure: %s",
                request_id,
                failure.kind.value,
                failure.message or GENERIC_MESSAGE,
                exc_info=failure.cause,
            )
        else:
            logger.warning(
                "[%s] %s failure (%d): %s",
                request_id,
                failure.kind.value,
                status,
                failure.message,
            )
