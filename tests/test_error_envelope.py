"""Tests for the error envelope format and error handling.

Every error response has the stable shape:
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
from fastapi.testclient import TestClient
from pydantic import ValidationError

from lawmakers_auth import app as app_module
from lawmakers_auth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from lawmakers_auth.api.schemas import Envelope, ErrorBody
from lawmakers_auth.service.runtime import get_runtime


class TestErrorBody:
    def test_known_code(self):
        error = ErrorBody(code="INVALID_CREDENTIALS", message="invalid email or password")
        assert error.details is None

    def test_details_may_be_a_list(self):
        error = ErrorBody(
            code="INVALID_EMAIL",
            message="invalid email address",
            details=[{"field": "body.email", "message": "invalid email address"}],
        )
        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_request_id_generated(self):
        first, second = Envelope(status="ok"), Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


class TestErrorCodeMapping:
    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_4xx_is_validation_error(self):
        assert _error_code_for_status(418) == "VALIDATION_ERROR"

    def test_any_5xx_is_server_error(self):
        assert _error_code_for_status(503) == "SERVER_ERROR"

    def test_error_response_shape(self):
        response = _error_response(429, "slow down", code="RATE_LIMITED", headers={"Retry-After": "60"})
        body = json.loads(response.body)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {"code": "RATE_LIMITED", "message": "slow down", "details": None}
        assert body["request_id"]


@pytest.fixture
def client():
    return TestClient(app_module.app, base_url="https://testserver", raise_server_exceptions=False)


def _assert_envelope(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert isinstance(body["error"]["message"], str) and body["error"]["message"]
    assert body["request_id"]
    return body


def test_unknown_route(client):
    _assert_envelope(client.get("/api/does-not-exist"), 404, "NOT_FOUND")


def test_wrong_method(client):
    response = client.get("/api/login")
    _assert_envelope(response, 405, "METHOD_NOT_ALLOWED")
    assert "POST" in response.headers.get("allow", "")


def test_malformed_json_body(client):
    response = client.post(
        "/api/signup", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    body = _assert_envelope(response, 400, "VALIDATION_ERROR")
    assert isinstance(body["error"]["details"], list)


def test_validation_details_name_the_field(client):
    response = client.post("/api/signup", json={"email": "nope", "password": "TestPassword123!"})
    body = _assert_envelope(response, 400, "INVALID_EMAIL")
    assert body["error"]["details"][0]["field"] == "body.email"
    assert not body["error"]["message"].startswith("Value error")


def test_unhandled_exception_is_masked(client, monkeypatch):
    async def _explode(email, password):
        raise RuntimeError("database exploded: secret detail")

    monkeypatch.setattr(get_runtime().auth, "login", _explode)
    response = client.post("/api/login", json={"email": "a@example.com", "password": "x" * 8})
    body = _assert_envelope(response, 500, "SERVER_ERROR")
    assert "secret detail" not in json.dumps(body)


def test_rate_limit_error_carries_retry_after(client):
    for _ in range(5):
        client.post("/api/login", json={"email": "a@example.com", "password": "Wrong-Password-1"})
    response = client.post("/api/login", json={"email": "a@example.com", "password": "Wrong-Password-1"})
    _assert_envelope(response, 429, "RATE_LIMITED")
    assert response.headers["Retry-After"] == "900"


def test_server_error_keeps_its_message(client, monkeypatch):
    from lawmakers_auth.service.errors import ServerError

    async def _fail(email):
        raise ServerError("mail provider misconfigured")

    monkeypatch.setattr(get_runtime().auth, "resend_verification", _fail)
    response = client.post("/api/resend", json={"email": "a@example.com"})
    body = _assert_envelope(response, 500, "SERVER_ERROR")
    assert body["error"]["message"] == "mail provider misconfigured"
