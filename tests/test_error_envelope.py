"""Tests for the error envelope format and exception handlers.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<human_readable>", "details": ...},
    "request_id": "<id>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from tenantauth import app as app_module
from tenantauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
)
from tenantauth.api.routes import _http_error
from tenantauth.api.schemas import Envelope, ErrorBody
from tenantauth.service.errors import (
    AccountLocked,
    InvalidCredentials,
    NotAMember,
    ServerError,
)
from tenantauth.storage.errors import ConstraintViolation


@pytest.fixture
def probe_client():
    """Minimal app with the production handlers and routes that raise on demand."""
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentials()

    @app.get("/locked")
    async def locked():
        raise AccountLocked()

    @app.get("/member")
    async def member():
        raise NotAMember()

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("database connection failed at /var/run/postgresql/.s.PGSQL.5432")

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "admin access required", status_code=403)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid credentials")
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_request_id_auto_generated(self):
        assert len(Envelope(status="ok").request_id) == 36


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_code_is_a_valid_error_body_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestHandlers:
    def test_invalid_credentials_is_401(self, probe_client):
        response = probe_client.get("/credentials")
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }

    @pytest.mark.parametrize("path", ["/locked", "/member"])
    def test_forbidden_errors_are_403(self, probe_client, path):
        response = probe_client.get(path)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_constraint_violation_is_409(self, probe_client):
        response = probe_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_server_error_message_is_sanitized(self, probe_client):
        response = probe_client.get("/server")
        assert response.status_code == 500
        assert "/var/run" not in response.json()["error"]["message"]

    def test_http_error_keeps_code(self, probe_client):
        response = probe_client.get("/http")
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "admin access required"

    def test_unhandled_exception_hides_details(self, probe_client):
        response = probe_client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }


class TestApplication:
    def test_unknown_route_uses_envelope(self):
        response = TestClient(app_module.app).get("/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_request_id_is_echoed(self):
        response = TestClient(app_module.app).get(
            "/v1/health", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_error_request_id_matches_header(self):
        response = TestClient(app_module.app).post(
            "/v1/refresh", json={"refresh_token": "bogus"}, headers={"X-Request-ID": "req-456"}
        )
        assert response.status_code == 401
        assert response.json()["request_id"] == "req-456"
