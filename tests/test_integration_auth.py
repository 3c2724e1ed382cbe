"""Integration tests for the HTTP authentication and provisioning flow.

Tests the complete flow including:
- Bootstrap of the root tenant and administrator login
- Token refresh and introspection
- Registration and the current-user projection
- Administrative organization, department and membership management
"""

import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module
from tenantauth.service.provisioning import BootstrapInput
from tenantauth.service.runtime import get_runtime

ADMIN_USERNAME = "root-admin"
ADMIN_PASSWORD = "ChangeMe123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def root_tenant():
    runtime = get_runtime()
    return runtime.provisioning.bootstrap_admin(BootstrapInput.from_settings(runtime.settings))


def _login(client, username, password, organization_id, **extra):
    return client.post(
        "/v1/login",
        json={
            "username": username,
            "password": password,
            "organization_id": organization_id,
            **extra,
        },
    )


@pytest.fixture
def admin_headers(client, root_tenant):
    response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, root_tenant.organization.id)
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


class TestLoginFlow:
    def test_bootstrap_admin_can_log_in(self, client, root_tenant):
        """A fresh bootstrap admits the default administrator into organization 1."""
        response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1)

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 15 * 60
        assert body["access_token"] and body["refresh_token"]
        assert body["user"]["is_super_admin"] is True
        assert body["user"]["username"] == ADMIN_USERNAME
        assert body["user"]["organizations"] == [
            {
                "organization_id": 1,
                "organization_name": "Root Organization",
                "role": "SYSTEM_ADMIN",
                "is_primary": True,
            }
        ]
        assert body["logged_organization"]["domain"] == "root.local"
        assert "logged_department" not in body

    def test_auth_prefixed_alias(self, client, root_tenant):
        response = client.post(
            "/v1/auth/login",
            json={"username": "admin@root.local", "password": ADMIN_PASSWORD, "organization_id": 1},
        )
        assert response.status_code == 200

    def test_zero_department_means_none(self, client, root_tenant):
        response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1, department_id=0, role_id=0)
        assert response.status_code == 200

    def test_wrong_password_is_unauthorized(self, client, root_tenant):
        response = _login(client, ADMIN_USERNAME, "nope-nope", 1)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unknown_organization_is_forbidden(self, client, root_tenant):
        response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 99)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_lockout_after_repeated_failures(self, client, root_tenant):
        for _ in range(5):
            assert _login(client, ADMIN_USERNAME, "wrong-password", 1).status_code == 401
        response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1)
        assert response.status_code == 403
        assert response.json()["error"]["message"] == "account is temporarily locked"

    def test_missing_fields_are_rejected(self, client):
        response = client.post("/v1/login", json={"username": "x"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestTokenFlow:
    def test_refresh_issues_new_pair(self, client, root_tenant):
        tokens = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1).json()
        response = client.post("/v1/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 200
        assert response.json()["token_type"] == "Bearer"

    def test_refresh_with_access_token_is_unauthorized(self, client, root_tenant):
        tokens = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1).json()
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["access_token"]})
        assert response.status_code == 401

    def test_introspect(self, client, root_tenant):
        tokens = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1).json()
        active = client.post("/v1/token/introspect", json={"token": tokens["access_token"]})
        assert active.status_code == 200
        assert active.json()["active"] is True
        assert active.json()["username"] == ADMIN_USERNAME

        inactive = client.post("/v1/token/introspect", json={"token": "garbage"})
        assert inactive.status_code == 200
        assert inactive.json() == {"active": False}

    def test_me_requires_bearer_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401

    def test_me_returns_projection(self, client, admin_headers):
        response = client.get("/v1/auth/me", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data"]["username"] == ADMIN_USERNAME


class TestRegistration:
    def test_register_then_conflict(self, client):
        payload = {
            "email": "New.User@Example.com",
            "username": "new-user",
            "password": "Sufficient123",
        }
        created = client.post("/v1/auth/register", json=payload)
        assert created.status_code == 201
        assert created.json()["data"]["email"] == "new.user@example.com"

        duplicate = client.post("/v1/auth/register", json=payload)
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "conflict"

    def test_register_rejects_bad_email(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "username": "x", "password": "Sufficient123"},
        )
        assert response.status_code == 422

    def test_registered_user_cannot_log_in_without_membership(self, client, root_tenant):
        client.post(
            "/v1/auth/register",
            json={"email": "solo@example.com", "username": "solo", "password": "Sufficient123"},
        )
        response = _login(client, "solo", "Sufficient123", 1)
        assert response.status_code == 403


class TestAdministration:
    def test_non_admin_is_forbidden(self, client, root_tenant):
        client.post(
            "/v1/auth/register",
            json={"email": "plain@example.com", "username": "plain", "password": "Sufficient123"},
        )
        runtime = get_runtime()
        user = runtime.store.get_account_by_username("plain")
        runtime.provisioning.assign_user_to_organization(user.id, 1, is_primary=True)
        token = _login(client, "plain", "Sufficient123", 1).json()["access_token"]

        response = client.get("/v1/admin/users", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    def test_list_users_is_paginated(self, client, admin_headers):
        response = client.get("/v1/admin/users?page=1&page_size=10", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["pagination"] == {"page": 1, "page_size": 10, "total": 1, "total_pages": 1}
        assert data["items"][0]["username"] == ADMIN_USERNAME

    def test_unlock_user(self, client, admin_headers, root_tenant):
        for _ in range(2):
            _login(client, ADMIN_USERNAME, "wrong-password", 1)
        response = client.post(
            f"/v1/admin/users/{root_tenant.account.id}/unlock", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["login_attempts"] == 0

    def test_organization_department_membership_lifecycle(self, client, admin_headers):
        org = client.post(
            "/v1/organizations",
            json={"name": "Acme", "domain": "Acme.Example"},
            headers=admin_headers,
        )
        assert org.status_code == 201
        org_id = org.json()["data"]["id"]
        assert org.json()["data"]["domain"] == "acme.example"

        dept = client.post(
            f"/v1/organizations/{org_id}/departments",
            json={"name": "Platform", "kind": "TEAM", "code": "PLT"},
            headers=admin_headers,
        )
        assert dept.status_code == 201
        dept_id = dept.json()["data"]["id"]
        assert dept.json()["data"]["kind"] == "TEAM"

        listed = client.get(f"/v1/organizations/{org_id}/departments", headers=admin_headers)
        assert [d["id"] for d in listed.json()["data"]] == [dept_id]

        client.post(
            "/v1/auth/register",
            json={"email": "dev@example.com", "username": "dev", "password": "Sufficient123"},
        )
        user_id = get_runtime().store.get_account_by_username("dev").id

        assigned = client.post(
            f"/v1/organizations/{org_id}/users",
            json={"user_id": user_id, "is_primary": True},
            headers=admin_headers,
        )
        assert assigned.status_code == 200
        assert assigned.json()["data"]["organization"]["name"] == "Acme"

        dept_assigned = client.post(
            f"/v1/departments/{dept_id}/users",
            json={"user_id": user_id, "role": "LEAD", "is_primary": True},
            headers=admin_headers,
        )
        assert dept_assigned.status_code == 200

        orgs = client.get(f"/v1/users/{user_id}/organizations", headers=admin_headers)
        assert [m["organization_id"] for m in orgs.json()["data"]] == [org_id]
        depts = client.get(f"/v1/users/{user_id}/departments", headers=admin_headers)
        assert depts.json()["data"][0]["role"] == "LEAD"

        login = _login(client, "dev", "Sufficient123", org_id, department_id=dept_id)
        assert login.status_code == 200
        assert login.json()["logged_department"]["code"] == "PLT"

        removed = client.delete(f"/v1/departments/{dept_id}/users/{user_id}", headers=admin_headers)
        assert removed.status_code == 200
        removed = client.delete(f"/v1/organizations/{org_id}/users/{user_id}", headers=admin_headers)
        assert removed.status_code == 200
        again = client.delete(f"/v1/organizations/{org_id}/users/{user_id}", headers=admin_headers)
        assert again.status_code == 404

    def test_duplicate_domain_conflicts(self, client, admin_headers):
        response = client.post(
            "/v1/organizations", json={"name": "Clone", "domain": "root.local"}, headers=admin_headers
        )
        assert response.status_code == 409

    def test_unknown_organization_departments(self, client, admin_headers):
        response = client.get("/v1/organizations/999/departments", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


def test_health(client):
    response = client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "auth-service"}


def test_startup_bootstrap(monkeypatch, tmp_path):
    """BOOTSTRAP_ON_STARTUP provisions the root tenant while the runtime is built."""
    from tenantauth.service.runtime import reset_runtime_for_tests

    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "startup"))
    monkeypatch.setenv("BOOTSTRAP_ON_STARTUP", "true")
    runtime = reset_runtime_for_tests()

    account = runtime.store.get_account_by_username(ADMIN_USERNAME)
    assert account is not None
    assert account.is_super_admin
    assert runtime.store.get_organization_by_domain("root.local") is not None


def test_default_settings_bootstrap_root_admin(monkeypatch, tmp_path):
    """Without any bootstrap configuration the root administrator can log in."""
    from tenantauth.service.runtime import reset_runtime_for_tests

    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "defaults"))
    monkeypatch.delenv("BOOTSTRAP_ON_STARTUP", raising=False)
    reset_runtime_for_tests()

    client = TestClient(app_module.create_app())
    response = _login(client, ADMIN_USERNAME, ADMIN_PASSWORD, 1)
    assert response.status_code == 200
    assert response.json()["token_type"] == "Bearer"
    assert response.json()["user"]["is_super_admin"] is True


def test_non_ascii_token_is_unauthorized(client):
    token = "eyJhbGciOiJIUzI1NiJ9.eyJ0eXBlIjoicmVmcmVzaCJ9.é"

    refreshed = client.post("/v1/refresh", json={"refresh_token": token})
    assert refreshed.status_code == 401
    assert refreshed.json()["error"]["message"] == "invalid token"

    introspected = client.post("/v1/token/introspect", json={"token": token})
    assert introspected.json() == {"active": False}
