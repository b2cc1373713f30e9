"""Tests for the error envelope format and exception mapping.

Every error response has the shape:
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

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ticketgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from ticketgate.api.schemas import Envelope, ErrorBody
from ticketgate.app import create_app
from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    ValidationError,
)
from ticketgate.service.runtime import Runtime
from ticketgate.storage.counters import MemoryCounterStore
from ticketgate.storage.errors import ConstraintViolation, StoreUnavailable
from ticketgate.storage.memory import MemoryStore


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Not signed in")
        assert error.details is None

    def test_details_accepts_list(self):
        error = ErrorBody(
            code="validation_error",
            message="invalid request",
            details=[{"loc": ["body", "email"]}],
        )
        assert len(error.details) == 1

    def test_unknown_code_rejected(self):
        """Only the stable codes are allowed."""
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        first = Envelope(status="ok")
        second = Envelope(status="ok")
        assert first.request_id and first.request_id != second.request_id


class TestStatusMapping:
    @pytest.mark.parametrize("status_code,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(403, "nope", {"capability": "manage_credentials"})
        assert response.status_code == 403
        assert b'"code":"forbidden"' in response.body
        assert b'"status":"error"' in response.body


class _Body(BaseModel):
    name: str


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("Not signed in")

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Email address not verified", detail={"reason": "email_unverified"})

    @app.get("/invalid")
    async def invalid():
        raise ValidationError("Invalid email address", detail={"field": "email"})

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("Either email or username is already in use")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate", {"field": "email"})

    @app.get("/limited")
    async def limited():
        raise RateLimitedError(limit=5, remaining=0, reset_seconds=240)

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("counter store timed out")

    @app.get("/http")
    async def http_error():
        raise HTTPException(
            status_code=401,
            detail={"status": "error", "error": {"code": "unauthorized", "message": "gone"}},
            headers={"Set-Cookie": "session=; Max-Age=0; Path=/"},
        )

    @app.get("/plain-http")
    async def plain_http():
        raise HTTPException(status_code=404, detail="no such thing")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database exploded: password=hunter2")

    @app.post("/body")
    async def body(payload: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


def _error(response):
    body = response.json()
    assert body["status"] == "error"
    assert body["data"] is None
    assert body["request_id"]
    return body["error"]


class TestHandlers:
    """Domain, storage and framework errors all leave as envelopes."""

    @pytest.mark.parametrize(
        "path,status_code,code",
        [
            ("/unauthorized", 401, "unauthorized"),
            ("/forbidden", 403, "forbidden"),
            ("/invalid", 400, "validation_error"),
            ("/conflict", 409, "conflict"),
            ("/constraint", 409, "conflict"),
            ("/limited", 429, "rate_limited"),
            ("/store-down", 500, "server_error"),
            ("/boom", 500, "server_error"),
        ],
    )
    def test_status_and_code(self, client, path, status_code, code):
        response = client.get(path)
        assert response.status_code == status_code
        assert _error(response)["code"] == code

    def test_service_detail_is_passed_through(self, client):
        error = _error(client.get("/forbidden"))
        assert error["message"] == "Email address not verified"
        assert error["details"] == {"reason": "email_unverified"}

    def test_rate_limit_headers(self, client):
        response = client.get("/limited")
        assert response.headers["Retry-After"] == "240"
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "240"

    def test_internal_errors_are_not_leaked(self, client):
        for path in ("/store-down", "/boom", "/constraint"):
            error = _error(client.get(path))
            assert "hunter2" not in error["message"]
            assert "timed out" not in error["message"]
            assert error["details"] is None

    def test_http_exception_envelope_and_headers(self, client):
        response = client.get("/http")
        assert response.status_code == 401
        assert _error(response) == {"code": "unauthorized", "message": "gone", "details": None}
        assert response.headers["set-cookie"].startswith("session=")

    def test_plain_http_exception(self, client):
        response = client.get("/plain-http")
        assert response.status_code == 404
        error = _error(response)
        assert error["code"] == "not_found"
        assert error["message"] == "no such thing"

    def test_request_validation_is_400(self, client):
        response = client.post("/body", json={})
        assert response.status_code == 400
        error = _error(response)
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "name"]


class TestAppMiddleware:
    @pytest.fixture
    def app_client(self, settings):
        runtime = Runtime(settings, store=MemoryStore(), counters=MemoryCounterStore())
        with TestClient(create_app(runtime)) as test_client:
            yield test_client

    def test_request_id_is_echoed(self, app_client):
        response = app_client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers_on_api_paths(self, app_client):
        response = app_client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health_reports_version(self, app_client):
        assert app_client.get("/healthz").json() == {"status": "ok", "version": "0.1.0"}
