from datetime import datetime, timedelta, timezone

from tenantauth.service.claims import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    ClaimsComposer,
    unique_roles,
)
from tenantauth.storage.models import (
    Account,
    Department,
    DepartmentMembership,
    Organization,
    OrganizationMembership,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _composer() -> ClaimsComposer:
    return ClaimsComposer(
        "auth-service",
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
    )


def _account(**kwargs) -> Account:
    return Account(
        id=42, email="jane@example.com", username="jane", password_hash="x", **kwargs
    )


def _org_membership(org_id: int, name: str, role: str = "", primary: bool = False):
    return OrganizationMembership(
        user_id=42,
        organization_id=org_id,
        role=role,
        is_primary=primary,
        created_at=NOW,
        updated_at=NOW,
        organization=Organization(id=org_id, name=name),
    )


class TestUniqueRoles:
    def test_trims_dedupes_and_keeps_order(self):
        assert unique_roles([" ADMIN", "", "VIEWER", "ADMIN ", "  "]) == ["ADMIN", "VIEWER"]


class TestAccessClaims:
    def test_registered_claims(self):
        """Subject is the decimal id string; audience holds the issuer."""
        claims = _composer().access_claims(_account(), [], [], NOW)
        assert claims["iss"] == "auth-service"
        assert claims["sub"] == "42"
        assert claims["user_id"] == 42
        assert claims["aud"] == ["auth-service"]
        assert claims["type"] == ACCESS_TOKEN_TYPE
        assert claims["iat"] == claims["nbf"] == int(NOW.timestamp())
        assert claims["exp"] == int((NOW + timedelta(minutes=15)).timestamp())
        assert claims["jti"]

    def test_empty_memberships_are_omitted(self):
        claims = _composer().access_claims(_account(), [], [], NOW)
        assert "organizations" not in claims
        assert "departments" not in claims
        assert "roles" not in claims
        assert "org_id" not in claims
        assert "is_super_admin" not in claims

    def test_memberships_roles_and_primary_org(self):
        account = _account(primary_organization_id=1, is_super_admin=True)
        orgs = [
            _org_membership(1, "Root", role="SYSTEM_ADMIN", primary=True),
            _org_membership(2, "Other", role="SYSTEM_ADMIN"),
            _org_membership(3, "Plain"),
        ]
        depts = [
            DepartmentMembership(
                user_id=42,
                department_id=9,
                role="",
                is_primary=True,
                created_at=NOW,
                updated_at=NOW,
                department=Department(id=9, organization_id=1, name="Ops"),
            )
        ]
        claims = _composer().access_claims(account, orgs, depts, NOW)

        assert claims["org_id"] == 1
        assert claims["is_super_admin"] is True
        assert claims["roles"] == ["SYSTEM_ADMIN"]
        assert claims["organizations"] == [
            {"id": 1, "is_primary": True, "name": "Root", "role": "SYSTEM_ADMIN"},
            {"id": 2, "is_primary": False, "name": "Other", "role": "SYSTEM_ADMIN"},
            {"id": 3, "is_primary": False, "name": "Plain"},
        ]
        assert claims["departments"] == [{"id": 9, "is_primary": True, "name": "Ops"}]

    def test_memberships_without_roles_omit_role_aggregate(self):
        claims = _composer().access_claims(
            _account(), [_org_membership(1, "Root")], [], NOW
        )
        assert "roles" not in claims


class TestRefreshClaims:
    def test_refresh_claims_carry_only_registered_fields(self):
        claims = _composer().refresh_claims(_account(is_super_admin=True), NOW)
        assert claims["type"] == REFRESH_TOKEN_TYPE
        assert claims["exp"] == int((NOW + timedelta(days=7)).timestamp())
        assert "email" not in claims
        assert "organizations" not in claims

    def test_each_token_gets_a_fresh_jti(self):
        composer = _composer()
        first = composer.refresh_claims(_account(), NOW)
        second = composer.refresh_claims(_account(), NOW)
        assert first["jti"] != second["jti"]
