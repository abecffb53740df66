"""
Invest Gateway - Failure Taxonomy
=================================

What:  The fixed set of failure kinds the gateway knows how to answer, plus the
       exception classes and the `Failure` value that carry them.
How:   Every failure, raised or returned, is reduced to a `Failure(kind, ...)`.
       The error normalizer (errors.py) holds one mapping row per kind.
Who:   Raised or returned by handler groups and middleware; consumed by the
       error normalizer.

Exception Hierarchy:
    GatewayError (base)
    ├── DuplicateEntryError      → 400 (uniqueness constraint violated)
    ├── InvalidTokenError        → 401 (identity token failed verification)
    ├── ValidationError          → 400 (domain-level input validation)
    ├── RateLimitExceededError   → 429 (request budget spent for this window)
    ├── NotFoundError            → 404 (no route or resource matched)
    ├── PayloadTooLargeError     → 413 (body above the configured ceiling)
    └── OriginRejectedError      → 403 (cross-origin request not allowed)

    RouteTableError      (startup: namespaces overlap)
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class FailureKind(str, enum.Enum):
    """Closed set of failure kinds; the normalizer maps each one exactly once."""

    DUPLICATE_ENTRY = "DuplicateEntry"
    INVALID_TOKEN = "InvalidToken"
    VALIDATION_FAILED = "ValidationFailed"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    NOT_FOUND = "NotFound"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    ORIGIN_REJECTED = "OriginRejected"
    INTERNAL = "Internal"


@dataclass(frozen=True)
class Failure:
    """
    A failure outcome, returned by a handler group or derived from an exception.

    Attributes:
        kind:        Which row of the normalizer's table applies.
        message:     Human-readable description (may be empty for kinds whose
                     message is fixed).
        status_code: Overrides the table status; only honoured for INTERNAL.
        extra:       Additional envelope fields (e.g. `code`, `path`).
        cause:       The exception this failure was derived from, if any.
    """

    kind: FailureKind
    message: str = ""
    status_code: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)


class GatewayError(Exception):
    """
    Base exception for all failures the gateway answers with a typed envelope.

    Attributes:
        message:  User-facing error description (safe to return to clients)
        context:  Additional debug info (logged, and merged into the envelope
                  only through `extra`)
    """

    kind: FailureKind = FailureKind.INTERNAL

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        self.status_code = status_code
        self.extra = extra or {}
        super().__init__(self.message)

    def to_failure(self) -> Failure:
        return Failure(
            kind=self.kind,
            message=self.message,
            status_code=self.status_code,
            extra=dict(self.extra),
            cause=self,
        )


class DuplicateEntryError(GatewayError):
    """A write attempted by a domain handler violated a uniqueness constraint."""

    kind = FailureKind.DUPLICATE_ENTRY

    def __init__(self, message: str = "The provided data already exists", **kwargs):
        super().__init__(message=message, **kwargs)


class InvalidTokenError(GatewayError):
    """An identity token failed verification; the client must log in again."""

    kind = FailureKind.INVALID_TOKEN

    def __init__(self, message: str = "Please login again", **kwargs):
        super().__init__(message=message, **kwargs)


class ValidationError(GatewayError):
    """
    Raised when input fails domain-level validation.

    The message is returned to the client verbatim:

        {"error": "Validation failed", "message": "<message>"}
    """

    kind = FailureKind.VALIDATION_FAILED

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx, **kwargs)
        self.field = field


class RateLimitExceededError(GatewayError):
    """
    Raised when a client exceeds its request budget for the current window.

    Response includes:
        - Retry-After header: seconds until the window resets
        - code: RATE_LIMIT_EXCEEDED
    """

    kind = FailureKind.RATE_LIMIT_EXCEEDED

    def __init__(
        self,
        retry_after: int = 60,
        message: str = "Too many requests from this IP, please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(
            message=message,
            context=ctx,
            extra={"code": "RATE_LIMIT_EXCEEDED"},
        )
        self.retry_after = retry_after


class NotFoundError(GatewayError):
    """Raised when no route or resource matched."""

    kind = FailureKind.NOT_FOUND

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx, **kwargs)


class PayloadTooLargeError(GatewayError):
    """Raised when a request body crosses the configured size ceiling."""

    kind = FailureKind.PAYLOAD_TOO_LARGE

    def __init__(self, limit: int, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["limit"] = limit
        super().__init__(
            message=f"Request body exceeds the {limit} byte limit",
            context=ctx,
            extra={"limit": limit},
        )
        self.limit = limit


class OriginRejectedError(GatewayError):
    """Raised when a cross-origin request comes from an origin that is not allowed."""

    kind = FailureKind.ORIGIN_REJECTED

    def __init__(self, origin: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            message=message or f"Origin '{origin}' is not allowed",
            context={"origin": origin},
        )
        self.origin = origin


class RouteTableError(ValueError):
    """Raised at startup when the route table is inconsistent (overlapping prefixes)."""