from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Sequence

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.claims import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    ClaimsComposer,
)
from tenantauth.service.errors import (
    AccountInactive,
    AccountLocked,
    ConflictError,
    InsufficientRole,
    InvalidCredentials,
    InvalidToken,
    NotAMember,
    UserNotFound,
    ValidationError,
)
from tenantauth.service.lockout import LockoutPolicy
from tenantauth.service.passwords import PasswordManager
from tenantauth.service.tokens import TokenCodec, subject_id
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    SYSTEM_ADMIN_ROLE,
    Account,
    Department,
    DepartmentMembership,
    Organization,
    OrganizationMembership,
)

logger = get_logger(__name__)

TOKEN_TYPE_BEARER = "Bearer"


class CredentialStore(Protocol):
    def create_account(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        is_active: bool = True,
        is_verified: bool = False,
        is_super_admin: bool = False,
        primary_organization_id: Optional[int] = None,
    ) -> Account: ...

    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_login(self, identifier: str) -> Optional[Account]: ...

    def update_account(self, account_id: int, **updates: Any) -> Optional[Account]: ...

    def increment_login_attempts(self, account_id: int) -> int: ...

    def set_locked_until(self, account_id: int, until: Optional[datetime]) -> None: ...

    def record_successful_login(self, account_id: int, at: datetime) -> None: ...

    def clear_lockout(self, account_id: int) -> Optional[Account]: ...

    def list_accounts(self, offset: int = 0, limit: int = 20) -> List[Account]: ...

    def count_accounts(self) -> int: ...

    def list_user_organizations(self, user_id: int) -> List[OrganizationMembership]: ...

    def list_user_departments(self, user_id: int) -> List[DepartmentMembership]: ...


@dataclass
class OrganizationSummary:
    organization_id: int
    organization_name: str
    role: str
    is_primary: bool


@dataclass
class DepartmentSummary:
    department_id: int
    department_name: str
    role: str
    is_primary: bool


@dataclass
class UserInfo:
    id: int
    email: str
    username: str
    first_name: str
    last_name: str
    primary_organization_id: Optional[int]
    primary_department_id: Optional[int]
    is_super_admin: bool
    mfa_enabled: bool
    organizations: List[OrganizationSummary] = field(default_factory=list)
    departments: List[DepartmentSummary] = field(default_factory=list)


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: UserInfo
    token_type: str = TOKEN_TYPE_BEARER
    logged_organization: Optional[Organization] = None
    logged_department: Optional[Department] = None


@dataclass
class UserPage:
    items: List[UserInfo]
    page: int
    page_size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass
class AuthContext:
    user_id: int
    username: str
    is_super_admin: bool = False
    roles: List[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return self.is_super_admin or SYSTEM_ADMIN_ROLE in self.roles


def check_login_role(membership: OrganizationMembership) -> None:
    """Organization-scoped login admits unrestricted or administrator memberships.

    Any other non-empty role is rejected. This is input validation carried
    over from the existing login contract, not a general permission check.
    """
    if membership.role and membership.role != SYSTEM_ADMIN_ROLE:
        raise InsufficientRole()


def summarize_user(
    account: Account,
    organizations: Sequence[OrganizationMembership],
    departments: Sequence[DepartmentMembership],
) -> UserInfo:
    return UserInfo(
        id=account.id,
        email=account.email,
        username=account.username,
        first_name=account.first_name,
        last_name=account.last_name,
        primary_organization_id=account.primary_organization_id,
        primary_department_id=account.primary_department_id,
        is_super_admin=account.is_super_admin,
        mfa_enabled=account.mfa_enabled,
        organizations=[
            OrganizationSummary(
                organization_id=m.organization_id,
                organization_name=m.organization.name if m.organization else "",
                role=m.role,
                is_primary=m.is_primary,
            )
            for m in organizations
        ],
        departments=[
            DepartmentSummary(
                department_id=m.department_id,
                department_name=m.department.name if m.department else "",
                role=m.role,
                is_primary=m.is_primary,
            )
            for m in departments
        ],
    )


class AuthService:
    """Login, refresh and token validation over a credential/membership store."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordManager] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self.passwords = passwords or PasswordManager(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.service_name,
            audience=settings.service_name,
        )
        self.claims = ClaimsComposer(
            settings.service_name,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
        )
        self.lockout = LockoutPolicy(
            settings.max_login_attempts,
            timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.logger = logger
        self._decoy_hash: Optional[str] = None
        self._decoy_lock = threading.Lock()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _get_decoy_hash(self) -> str:
        with self._decoy_lock:
            if self._decoy_hash is None:
                self._decoy_hash = self.passwords.hash("decoy-password-for-timing")
            return self._decoy_hash

    async def _verify_password(self, password_hash: str, password: str) -> bool:
        # argon2 is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(self.passwords.verify, password_hash, password)

    def _load_memberships(
        self, account_id: int
    ) -> tuple[List[OrganizationMembership], List[DepartmentMembership]]:
        return (
            self.store.list_user_organizations(account_id),
            self.store.list_user_departments(account_id),
        )

    def _record_failure(self, account: Account, now: datetime) -> None:
        attempts = self.store.increment_login_attempts(account.id)
        decision = self.lockout.register_failure(attempts, now)
        if decision.locked:
            self.store.set_locked_until(account.id, decision.locked_until)
            self.logger.warning(
                "account_locked",
                user_id=account.id,
                attempts=attempts,
                locked_until=decision.locked_until.isoformat(),
            )
        else:
            self.logger.info("login_failed", user_id=account.id, attempts=attempts)

    def _issue(
        self,
        account: Account,
        organizations: Sequence[OrganizationMembership],
        departments: Sequence[DepartmentMembership],
        now: datetime,
    ) -> LoginResult:
        access = self.codec.encode(
            self.claims.access_claims(account, organizations, departments, now)
        )
        refresh = self.codec.encode(self.claims.refresh_claims(account, now))
        return LoginResult(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(self.claims.access_ttl.total_seconds()),
            user=summarize_user(account, organizations, departments),
        )

    async def login(
        self,
        identifier: str,
        password: str,
        organization_id: int,
        *,
        department_id: Optional[int] = None,
        role_id: Optional[int] = None,
    ) -> LoginResult:
        """Authenticate by email or username into an organization scope.

        ``role_id`` is accepted for request compatibility and not interpreted.
        """
        account = self.store.get_account_by_login(identifier)
        if not account:
            # Spend the same hashing work as a real mismatch
            await self._verify_password(self._get_decoy_hash(), password)
            self.logger.info("login_unknown_identifier")
            raise InvalidCredentials()

        now = self._now()
        if self.lockout.is_locked(account, now):
            self.logger.warning(
                "login_rejected_locked",
                user_id=account.id,
                locked_until=account.locked_until.isoformat(),
            )
            raise AccountLocked()
        if not account.is_active:
            self.logger.warning("login_rejected_inactive", user_id=account.id)
            raise AccountInactive()

        if not await self._verify_password(account.password_hash, password):
            self._record_failure(account, now)
            raise InvalidCredentials()

        organizations, departments = self._load_memberships(account.id)
        membership = next(
            (m for m in organizations if m.organization_id == organization_id), None
        )
        if membership is None:
            self.logger.warning(
                "login_rejected_not_member",
                user_id=account.id,
                organization_id=organization_id,
            )
            raise NotAMember()
        check_login_role(membership)

        logged_department = None
        if department_id is not None:
            dept_membership = next(
                (m for m in departments if m.department_id == department_id), None
            )
            if dept_membership is not None:
                logged_department = dept_membership.department

        self.store.record_successful_login(account.id, now)
        if self.passwords.needs_rehash(account.password_hash):
            new_hash = await asyncio.to_thread(self.passwords.hash, password)
            self.store.update_account(account.id, password_hash=new_hash)
        reset = self.lockout.register_success(now)
        account.login_attempts = reset.attempts
        account.locked_until = reset.locked_until
        account.last_login = now

        result = self._issue(account, organizations, departments, now)
        result.logged_organization = membership.organization
        result.logged_department = logged_department
        self.logger.info(
            "login_succeeded",
            user_id=account.id,
            organization_id=organization_id,
            department_id=logged_department.id if logged_department else None,
        )
        return result

    def refresh_token(self, refresh_token: str) -> LoginResult:
        """Issue a new token pair from a valid refresh token.

        Memberships are reloaded so the new access token reflects current
        assignments. The old refresh token stays valid until it expires.
        """
        claims = self.codec.decode(refresh_token, expected_type=REFRESH_TOKEN_TYPE)
        account = self.store.get_account(subject_id(claims))
        if not account or not account.is_active:
            self.logger.warning("refresh_rejected_account", user_id=claims.get("user_id"))
            raise InvalidToken()
        organizations, departments = self._load_memberships(account.id)
        return self._issue(account, organizations, departments, self._now())

    def validate_token(self, access_token: str) -> int:
        claims = self.codec.decode(access_token, expected_type=ACCESS_TOKEN_TYPE)
        return subject_id(claims)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            self.logger.info("bearer_token_missing")
            raise InvalidToken()
        account = self.store.get_account(self.validate_token(token))
        if not account or not account.is_active:
            raise InvalidToken()
        roles = [m.role for m in self.store.list_user_organizations(account.id) if m.role]
        return AuthContext(
            user_id=account.id,
            username=account.username,
            is_super_admin=account.is_super_admin,
            roles=roles,
        )

    def introspect(self, token: str) -> dict[str, Any]:
        """RFC 7662 style description of a token; inactive for any failure."""
        try:
            claims = self.codec.decode(token)
            if claims.get("type") not in (ACCESS_TOKEN_TYPE, REFRESH_TOKEN_TYPE):
                raise InvalidToken()
            account = self.store.get_account(subject_id(claims))
        except InvalidToken:
            return {"active": False}
        if not account or not account.is_active:
            return {"active": False}
        result: dict[str, Any] = {
            "active": True,
            "sub": claims.get("sub"),
            "user_id": account.id,
            "username": account.username,
            "email": account.email,
            "token_type": claims.get("type"),
            "exp": claims.get("exp"),
            "iat": claims.get("iat"),
            "nbf": claims.get("nbf"),
            "iss": claims.get("iss"),
            "aud": claims.get("aud"),
            "jti": claims.get("jti"),
        }
        for optional in ("org_id", "is_super_admin", "roles"):
            if optional in claims:
                result[optional] = claims[optional]
        return result

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        *,
        first_name: str = "",
        last_name: str = "",
    ) -> UserInfo:
        email = (email or "").strip()
        username = (username or "").strip()
        if not email or not username:
            raise ValidationError("email and username are required")
        if len(password or "") < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters"
            )
        if self.store.get_account_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        if self.store.get_account_by_username(username):
            raise ConflictError("username already taken", detail={"field": "username"})

        password_hash = await asyncio.to_thread(self.passwords.hash, password)
        try:
            account = self.store.create_account(
                email,
                username,
                password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                is_active=True,
                is_verified=False,
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info("account_registered", user_id=account.id)
        return summarize_user(account, [], [])

    def get_user_info(self, account_id: int) -> UserInfo:
        account = self.store.get_account(account_id)
        if not account:
            raise UserNotFound()
        organizations, departments = self._load_memberships(account.id)
        return summarize_user(account, organizations, departments)

    def list_users(self, page: int = 1, page_size: Optional[int] = None) -> UserPage:
        page = max(page, 1)
        size = page_size or self.settings.default_page_size
        size = max(1, min(size, self.settings.max_page_size))
        accounts = self.store.list_accounts(offset=(page - 1) * size, limit=size)
        items = []
        for account in accounts:
            organizations, departments = self._load_memberships(account.id)
            items.append(summarize_user(account, organizations, departments))
        return UserPage(
            items=items, page=page, page_size=size, total=self.store.count_accounts()
        )

    def unlock_account(self, account_id: int) -> Account:
        account = self.store.clear_lockout(account_id)
        if not account:
            raise UserNotFound()
        self.logger.info("account_unlocked", user_id=account_id)
        return account
