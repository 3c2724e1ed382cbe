from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Sequence

from tenantauth.storage.models import (
    Account,
    DepartmentMembership,
    OrganizationMembership,
)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def unique_roles(roles: Iterable[str]) -> List[str]:
    """Trimmed, non-empty roles in first-seen order."""
    seen: set[str] = set()
    result: List[str] = []
    for role in roles:
        trimmed = (role or "").strip()
        if not trimmed or trimmed in seen:
            continue
        seen.add(trimmed)
        result.append(trimmed)
    return result


class ClaimsComposer:
    """Builds access and refresh token payloads for an account."""

    def __init__(
        self, issuer: str, access_ttl: timedelta, refresh_ttl: timedelta
    ) -> None:
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _registered(
        self, account: Account, token_type: str, now: datetime, ttl: timedelta
    ) -> dict[str, Any]:
        issued_at = int(now.timestamp())
        return {
            "iss": self.issuer,
            "sub": str(account.id),
            "aud": [self.issuer],
            "exp": int((now + ttl).timestamp()),
            "iat": issued_at,
            "nbf": issued_at,
            "jti": str(uuid.uuid4()),
            "type": token_type,
            "user_id": account.id,
        }

    def access_claims(
        self,
        account: Account,
        organizations: Sequence[OrganizationMembership],
        departments: Sequence[DepartmentMembership],
        now: datetime,
    ) -> dict[str, Any]:
        """Compose access-token claims.

        Membership lists are emitted in the order given (the stores return
        primary first, then most recently updated). Empty lists and an empty
        role aggregate are omitted rather than sent as ``[]``.
        """
        claims = self._registered(account, ACCESS_TOKEN_TYPE, now, self.access_ttl)
        claims["email"] = account.email
        claims["username"] = account.username
        if account.primary_organization_id is not None:
            claims["org_id"] = account.primary_organization_id
        if account.is_super_admin:
            claims["is_super_admin"] = True

        if organizations:
            org_claims = []
            roles = []
            for membership in organizations:
                entry: dict[str, Any] = {
                    "id": membership.organization_id,
                    "is_primary": membership.is_primary,
                }
                if membership.organization is not None:
                    entry["name"] = membership.organization.name
                if membership.role:
                    entry["role"] = membership.role
                    roles.append(membership.role)
                org_claims.append(entry)
            claims["organizations"] = org_claims
            distinct = unique_roles(roles)
            if distinct:
                claims["roles"] = distinct

        if departments:
            dept_claims = []
            for membership in departments:
                entry = {
                    "id": membership.department_id,
                    "is_primary": membership.is_primary,
                }
                if membership.department is not None:
                    entry["name"] = membership.department.name
                if membership.role:
                    entry["role"] = membership.role
                dept_claims.append(entry)
            claims["departments"] = dept_claims

        return claims

    def refresh_claims(self, account: Account, now: datetime) -> dict[str, Any]:
        return self._registered(account, REFRESH_TOKEN_TYPE, now, self.refresh_ttl)
