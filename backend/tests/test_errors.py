"""
Invest Gateway - Error Normalizer Tests
=======================================

What:  Tests for failure classification and the response envelope.

What we test:
    ✅ Every failure kind has exactly one mapping row
    ✅ ValidationFailed keeps the exact {error, message} shape
    ✅ Duplicate-key integrity errors map to DuplicateEntry
    ✅ Internal failures honour a supplied status
    ✅ Stack traces only outside production
    ✅ render() never raises
    ✅ Single-member exception groups are classified by their member
"""

import pytest
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException

from invest_gateway.errors import ERROR_TABLE, FALLBACK_BODY, ErrorNormalizer, classify
from invest_gateway.exceptions import (
    DuplicateEntryError,
    Failure,
    FailureKind,
    InvalidTokenError,
    NotFoundError,
    PayloadTooLargeError,
    RateLimitExceededError,
    ValidationError,
)


class Deposit(BaseModel):
    amount: float = Field(gt=0)


class UpstreamUnavailable(Exception):
    status_code = 503


def _raised(exc: BaseException) -> BaseException:
    """Return `exc` with a real traceback attached."""
    try:
        raise exc
    except BaseException as caught:
        return caught


class TestErrorTable:
    def test_every_kind_is_mapped(self):
        assert set(ERROR_TABLE) == set(FailureKind)

    @pytest.mark.parametrize(
        "kind,status",
        [
            (FailureKind.DUPLICATE_ENTRY, 400),
            (FailureKind.INVALID_TOKEN, 401),
            (FailureKind.VALIDATION_FAILED, 400),
            (FailureKind.RATE_LIMIT_EXCEEDED, 429),
            (FailureKind.NOT_FOUND, 404),
            (FailureKind.INTERNAL, 500),
        ],
    )
    def test_status_per_kind(self, kind, status):
        assert ERROR_TABLE[kind].status_code == status


class TestClassify:
    def test_gateway_error_keeps_its_kind(self):
        failure = classify(InvalidTokenError())
        assert failure.kind is FailureKind.INVALID_TOKEN

    def test_duplicate_key_integrity_error(self):
        exc = IntegrityError(
            "INSERT INTO users ...",
            {},
            Exception('duplicate key value violates unique constraint "users_email_key"'),
        )
        assert classify(exc).kind is FailureKind.DUPLICATE_ENTRY

    def test_other_integrity_error_is_internal(self):
        exc = IntegrityError("INSERT ...", {}, Exception("null value in column violates not-null"))
        assert classify(exc).kind is FailureKind.INTERNAL

    def test_pydantic_validation_error(self):
        with pytest.raises(PydanticValidationError) as info:
            Deposit(amount=-5)

        failure = classify(info.value)

        assert failure.kind is FailureKind.VALIDATION_FAILED
        assert failure.message.startswith("amount: ")

    def test_http_404_is_not_found(self):
        assert classify(HTTPException(status_code=404)).kind is FailureKind.NOT_FOUND

    def test_supplied_status_is_kept(self):
        failure = classify(UpstreamUnavailable("payment provider down"))

        assert failure.kind is FailureKind.INTERNAL
        assert failure.status_code == 503

    def test_out_of_range_status_is_ignored(self):
        exc = UpstreamUnavailable()
        exc.status_code = 302
        assert classify(exc).status_code is None

    def test_single_exception_group_is_unwrapped(self):
        group = ExceptionGroup("unhandled errors in a TaskGroup", [PayloadTooLargeError(1024)])

        failure = classify(group)

        assert failure.kind is FailureKind.PAYLOAD_TOO_LARGE
        assert failure.extra == {"limit": 1024}

    def test_nested_single_groups_are_unwrapped(self):
        inner = ExceptionGroup("inner", [ValidationError("Email is required")])

        failure = classify(ExceptionGroup("outer", [inner]))

        assert failure.kind is FailureKind.VALIDATION_FAILED
        assert failure.message == "Email is required"

    def test_multi_member_group_is_internal(self):
        group = ExceptionGroup("many", [ValueError("a"), KeyError("b")])
        assert classify(group).kind is FailureKind.INTERNAL


class TestEnvelope:
    def setup_method(self):
        self.normalizer = ErrorNormalizer(expose_diagnostics=True)

    def test_validation_failed_exact_shape(self):
        status, body = self.normalizer.envelope(classify(ValidationError("Email is required")))

        assert status == 400
        assert body == {"error": "Validation failed", "message": "Email is required"}

    def test_duplicate_entry_fixed_message(self):
        status, body = self.normalizer.envelope(classify(DuplicateEntryError("users.email")))

        assert status == 400
        assert body == {
            "error": "Duplicate entry",
            "message": "The provided data already exists",
        }

    def test_invalid_token(self):
        status, body = self.normalizer.envelope(Failure(FailureKind.INVALID_TOKEN))

        assert status == 401
        assert body == {"error": "Invalid token", "message": "Please login again"}

    def test_extra_fields_merged(self):
        status, body = self.normalizer.envelope(
            NotFoundError("investment", "inv-7", extra={"path": "/api/investments/inv-7"}).to_failure()
        )

        assert status == 404
        assert body["path"] == "/api/investments/inv-7"
        assert body["message"] == "investment 'inv-7' was not found"

    def test_extra_cannot_override_envelope_fields(self):
        _, body = self.normalizer.envelope(
            Failure(FailureKind.NOT_FOUND, message="gone", extra={"error": "spoofed"})
        )
        assert body["error"] == "Not found"

    def test_payload_too_large(self):
        status, body = self.normalizer.envelope(classify(PayloadTooLargeError(1024)))

        assert status == 413
        assert body["limit"] == 1024

    def test_internal_includes_stack_outside_production(self):
        exc = _raised(RuntimeError("ledger exploded"))

        status, body = self.normalizer.envelope(classify(exc))

        assert status == 500
        assert body["error"] == "Internal server error"
        assert body["message"] == "ledger exploded"
        assert "RuntimeError: ledger exploded" in body["stack"]

    def test_internal_omits_stack_in_production(self):
        normalizer = ErrorNormalizer(expose_diagnostics=False)

        _, body = normalizer.envelope(classify(_raised(RuntimeError("ledger exploded"))))

        assert "stack" not in body

    def test_non_internal_kinds_never_carry_stack(self):
        _, body = self.normalizer.envelope(classify(_raised(ValidationError("bad"))))
        assert "stack" not in body

    def test_internal_with_supplied_status(self):
        status, body = self.normalizer.envelope(classify(UpstreamUnavailable("provider down")))

        assert status == 503
        assert body["error"] == "Service Unavailable"
        assert body["message"] == "provider down"

    def test_http_exception_status(self):
        status, body = self.normalizer.envelope(
            classify(HTTPException(status_code=405, detail="Method Not Allowed"))
        )

        assert status == 405
        assert body["message"] == "Method Not Allowed"

    def test_every_internal_envelope_has_error_and_message(self):
        _, body = self.normalizer.envelope(classify(_raised(RuntimeError(""))))

        assert body["error"] == "Internal server error"
        assert body["message"] == "Internal server error"


class TestRender:
    def setup_method(self):
        self.normalizer = ErrorNormalizer(expose_diagnostics=False)

    def test_render_exception(self):
        response = self.normalizer.render(ValidationError("Amount must be positive"))

        assert response.status_code == 400
        assert response.body == b'{"error":"Validation failed","message":"Amount must be positive"}'

    def test_rate_limit_sets_retry_after(self):
        response = self.normalizer.render(
            RateLimitExceededError(retry_after=42), headers={"RateLimit-Limit": "100"}
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["RateLimit-Limit"] == "100"

    def test_render_never_raises(self, monkeypatch):
        def broken(failure):
            raise TypeError("cannot build envelope")

        monkeypatch.setattr(self.normalizer, "envelope", broken)

        response = self.normalizer.render(RuntimeError("original"))

        assert response.status_code == 500
        assert response.body == (
            b'{"error":"' + FALLBACK_BODY["error"].encode()
            + b'","message":"' + FALLBACK_BODY["message"].encode() + b'"}'
        )

    def test_unserialisable_extra_falls_back(self):
        response = self.normalizer.render(
            Failure(FailureKind.NOT_FOUND, message="x", extra={"blob": object()})
        )
        assert response.status_code == 500
