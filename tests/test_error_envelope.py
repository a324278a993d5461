"""Tests for the error envelope format and request schemas.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import Request
from pydantic import ValidationError

from shopauth.api import error_handling
from shopauth.api.error_handling import _error_code_for_status, _error_response
from shopauth.api.schemas import (
    AccountActionRequest,
    Envelope,
    ErrorBody,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
)
from shopauth.service.errors import (
    AccountLockedError,
    BadCredentialsError,
    DuplicateResourceError,
    InvalidOrExpiredCodeError,
    InvalidTokenError,
    ResourceNotFoundError,
)


class TestErrorBody:
    def test_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="nope")

    @pytest.mark.parametrize(
        "code", ["bad_credentials", "account_locked", "invalid_token", "invalid_or_expired_code"]
    )
    def test_accepts_auth_codes(self, code):
        assert ErrorBody(code=code, message="m").code == code

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")
        assert Envelope(status="ok").request_id


class TestErrorResponse:
    def test_status_mapping(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(423) == "account_locked"
        assert _error_code_for_status(418) == "server_error"

    def test_response_body(self):
        response = _error_response(404, "User not found", {"user_id": "u-1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "User not found",
            "details": {"user_id": "u-1"},
        }


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (BadCredentialsError("x"), 401, "bad_credentials"),
        (AccountLockedError("x"), 423, "account_locked"),
        (InvalidTokenError("x"), 401, "invalid_token"),
        (DuplicateResourceError("x"), 409, "duplicate_resource"),
        (InvalidOrExpiredCodeError("x"), 401, "invalid_or_expired_code"),
        (ResourceNotFoundError("x"), 404, "not_found"),
    ],
)
def test_service_errors_carry_status_and_code(exc, status, code):
    assert exc.status_code == status
    assert exc.error_code == code


class TestRequestSchemas:
    def test_register_accepts_camel_case_and_normalizes(self):
        body = RegisterRequest(
            email=" Shopper@Example.COM",
            username="Shopper_1",
            firstName="Sam",
            lastName="Shopper",
            password="longenough",
        )
        assert body.email == "shopper@example.com"
        assert body.username == "shopper_1"
        assert body.first_name == "Sam"

    def test_register_strips_zero_width_characters(self):
        body = RegisterRequest(
            email="ad\u200bmin@example.com",
            username="admin",
            first_name="A",
            last_name="B",
            password="longenough",
        )
        assert body.email == "admin@example.com"

    @pytest.mark.parametrize("password", ["short", "x" * 129])
    def test_password_length_bounds(self, password):
        with pytest.raises(ValidationError):
            PasswordChangeRequest(current_password="old", new_password=password)

    def test_login_rejects_malformed_email(self):
        with pytest.raises(ValidationError):
            LoginRequest(email="no-at-sign", password="whatever")

    def test_lock_reason_is_bounded(self):
        with pytest.raises(ValidationError):
            AccountActionRequest(userId="u-1", reason="x" * 501)
        assert AccountActionRequest(userId="u-1").reason is None


class _RecordingLogger:
    def __init__(self):
        self.calls = []

    def warning(self, event, **fields):
        self.calls.append(("warning", event, fields))

    def error(self, event, **fields):
        self.calls.append(("error", event, fields))


def _request(path="/v1/auth/login", client=("203.0.113.9", 51000)):
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": path,
            "headers": [],
            "query_string": b"",
            "client": client,
        }
    )


class TestFailureLogging:
    def test_auth_rejection_records_client_ip(self, monkeypatch):
        recorder = _RecordingLogger()
        monkeypatch.setattr(error_handling, "logger", recorder)

        error_handling._log_failure("auth_rejected", _request(), 401, error_code="bad_credentials")

        level, event, fields = recorder.calls[0]
        assert (level, event) == ("warning", "auth_rejected")
        assert fields["client_ip"] == "203.0.113.9"
        assert fields["path"] == "/v1/auth/login"

    def test_other_failures_omit_client_ip(self, monkeypatch):
        recorder = _RecordingLogger()
        monkeypatch.setattr(error_handling, "logger", recorder)

        error_handling._log_failure("service_error", _request("/v1/auth/me"), 404)
        error_handling._log_failure("http_error", _request(client=None), 503)

        assert "client_ip" not in recorder.calls[0][2]
        assert recorder.calls[1][0] == "error"

    def test_locked_account_without_client_address(self, monkeypatch):
        recorder = _RecordingLogger()
        monkeypatch.setattr(error_handling, "logger", recorder)

        error_handling._log_failure("auth_rejected", _request(client=None), 423)

        assert recorder.calls[0][2]["client_ip"] is None


class TestHttpDetailUnpacking:
    def test_route_envelope_detail(self):
        detail = {
            "status": "error",
            "error": {"code": "forbidden", "message": "Admin access required"},
        }
        assert error_handling._envelope_error(detail) == ("Admin access required", "forbidden", None)

    @pytest.mark.parametrize("detail", ["Not Found", None, {"error": "flat"}, {"status": "error"}])
    def test_other_details_fall_through(self, detail):
        assert error_handling._envelope_error(detail) is None

    def test_field_path_drops_body_prefix(self):
        assert error_handling._field_path(("body", "newPassword")) == "newPassword"
        assert error_handling._field_path(("query", "code")) == "query.code"
