"""Tenant provisioning: organizations, departments, memberships and bootstrap.

Every operation here is idempotent or fails before writing, so bootstrap can
be rerun after a partial failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Protocol

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    ConflictError,
    DepartmentNotFound,
    NotFoundError,
    OrganizationNotFound,
    UserNotFound,
    ValidationError,
)
from tenantauth.service.passwords import PasswordManager
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    SYSTEM_ADMIN_ROLE,
    Account,
    Department,
    DepartmentKind,
    DepartmentMembership,
    Organization,
    OrganizationMembership,
)

logger = get_logger(__name__)


class MembershipStore(Protocol):
    def create_organization(
        self,
        name: str,
        description: str = "",
        domain: Optional[str] = None,
        *,
        parent_id: Optional[int] = None,
        is_active: bool = True,
    ) -> Organization: ...

    def get_organization(self, org_id: int) -> Optional[Organization]: ...

    def get_organization_by_domain(self, domain: str) -> Optional[Organization]: ...

    def get_organization_by_name(self, name: str) -> Optional[Organization]: ...

    def update_organization(self, org_id: int, **updates: Any) -> Optional[Organization]: ...

    def list_organizations(self) -> List[Organization]: ...

    def create_department(
        self,
        organization_id: int,
        name: str,
        *,
        kind: DepartmentKind = DepartmentKind.DEPARTMENT,
        parent_id: Optional[int] = None,
        code: Optional[str] = None,
        description: str = "",
        function: str = "",
        is_active: bool = True,
    ) -> Department: ...

    def get_department(self, dept_id: int) -> Optional[Department]: ...

    def list_departments(self, organization_id: int) -> List[Department]: ...

    def upsert_organization_membership(
        self, user_id: int, org_id: int, role: str = "", is_primary: bool = False
    ) -> OrganizationMembership: ...

    def upsert_department_membership(
        self, user_id: int, dept_id: int, role: str = "", is_primary: bool = False
    ) -> DepartmentMembership: ...

    def assign_primary_organization(
        self, user_id: int, org_id: int, role: str = ""
    ) -> OrganizationMembership: ...

    def assign_primary_department(
        self, user_id: int, dept_id: int, role: str = ""
    ) -> DepartmentMembership: ...

    def list_user_organizations(self, user_id: int) -> List[OrganizationMembership]: ...

    def list_user_departments(self, user_id: int) -> List[DepartmentMembership]: ...

    def remove_organization_membership(self, user_id: int, org_id: int) -> bool: ...

    def remove_department_membership(self, user_id: int, dept_id: int) -> bool: ...

    # account access used by bootstrap and assignment checks
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def create_account(self, email: str, username: str, password_hash: str, **kwargs: Any) -> Account: ...

    def update_account(self, account_id: int, **updates: Any) -> Optional[Account]: ...


@dataclass
class BootstrapInput:
    organization_name: str
    organization_description: str
    organization_domain: str
    admin_email: str
    admin_username: str
    admin_password: str
    admin_first_name: str = ""
    admin_last_name: str = ""
    force_password_reset: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "BootstrapInput":
        return cls(
            organization_name=settings.bootstrap_org_name,
            organization_description=settings.bootstrap_org_description,
            organization_domain=settings.bootstrap_org_domain,
            admin_email=settings.bootstrap_admin_email,
            admin_username=settings.bootstrap_admin_username,
            admin_password=settings.bootstrap_admin_password,
            admin_first_name=settings.bootstrap_admin_first_name,
            admin_last_name=settings.bootstrap_admin_last_name,
            force_password_reset=settings.bootstrap_force_password,
        )


@dataclass
class BootstrapResult:
    organization: Organization
    account: Account
    created: bool
    password_updated: bool


class ProvisioningService:
    def __init__(
        self,
        store: MembershipStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordManager] = None,
    ) -> None:
        self.store: MembershipStore = store
        self.settings = settings
        self.passwords = passwords or PasswordManager(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.logger = logger

    # organizations
    def ensure_organization(
        self, name: str, description: str = "", domain: str = ""
    ) -> Organization:
        """Find by domain (when given) then by name, healing fields; else create.

        A match is reactivated, and its description/domain are replaced only
        by non-empty values that differ from what is stored.
        """
        name = (name or "").strip()
        description = (description or "").strip()
        domain = (domain or "").strip()
        if not name:
            raise ValidationError("organization name is required")

        existing = None
        if domain:
            existing = self.store.get_organization_by_domain(domain)
        if existing is None:
            existing = self.store.get_organization_by_name(name)

        if existing is None:
            org = self._create_organization_row(name, description, domain or None, None)
            self.logger.info("organization_created", organization_id=org.id, name=name)
            return org

        updates: dict[str, Any] = {}
        if not existing.is_active:
            updates["is_active"] = True
        if description and description != existing.description:
            updates["description"] = description
        if domain and domain != existing.domain:
            updates["domain"] = domain
        if not updates:
            return existing
        try:
            org = self.store.update_organization(existing.id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        self.logger.info(
            "organization_healed", organization_id=existing.id, fields=sorted(updates)
        )
        return org

    def _create_organization_row(
        self,
        name: str,
        description: str,
        domain: Optional[str],
        parent_id: Optional[int],
        is_active: bool = True,
    ) -> Organization:
        try:
            return self.store.create_organization(
                name, description, domain, parent_id=parent_id, is_active=is_active
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    def create_organization(
        self,
        name: str,
        description: str = "",
        domain: str = "",
        *,
        parent_id: Optional[int] = None,
        is_active: bool = True,
    ) -> Organization:
        name = (name or "").strip()
        if not name:
            raise ValidationError("organization name is required")
        if parent_id is not None and self.store.get_organization(parent_id) is None:
            raise OrganizationNotFound("parent organization not found")
        normalized_domain = (domain or "").strip().lower() or None
        org = self._create_organization_row(
            name, (description or "").strip(), normalized_domain, parent_id, is_active
        )
        self.logger.info("organization_created", organization_id=org.id, parent_id=parent_id)
        return org

    def get_organization(self, org_id: int) -> Organization:
        org = self.store.get_organization(org_id)
        if org is None:
            raise OrganizationNotFound()
        return org

    def list_organizations(self) -> List[Organization]:
        return self.store.list_organizations()

    # departments
    def create_department(
        self,
        organization_id: int,
        name: str,
        *,
        kind: Optional[DepartmentKind] = None,
        parent_id: Optional[int] = None,
        code: Optional[str] = None,
        description: str = "",
        function: str = "",
        is_active: bool = True,
    ) -> Department:
        name = (name or "").strip()
        if not name:
            raise ValidationError("department name is required")
        if self.store.get_organization(organization_id) is None:
            raise OrganizationNotFound()
        if parent_id is not None:
            parent = self.store.get_department(parent_id)
            if parent is None:
                raise DepartmentNotFound("parent department not found")
            if parent.organization_id != organization_id:
                raise ValidationError(
                    "parent department belongs to a different organization",
                    detail={"parent_id": parent_id, "organization_id": organization_id},
                )
        normalized_code = (code or "").strip() or None
        dept = self.store.create_department(
            organization_id,
            name,
            kind=kind or DepartmentKind.DEPARTMENT,
            parent_id=parent_id,
            code=normalized_code,
            description=(description or "").strip(),
            function=(function or "").strip(),
            is_active=is_active,
        )
        self.logger.info(
            "department_created",
            department_id=dept.id,
            organization_id=organization_id,
            kind=dept.kind.value,
        )
        return dept

    def list_departments(self, organization_id: int) -> List[Department]:
        if self.store.get_organization(organization_id) is None:
            raise OrganizationNotFound()
        return self.store.list_departments(organization_id)

    # memberships
    def _require_account(self, user_id: int) -> Account:
        account = self.store.get_account(user_id)
        if account is None:
            raise UserNotFound()
        return account

    def assign_user_to_organization(
        self, user_id: int, organization_id: int, role: str = "", is_primary: bool = False
    ) -> OrganizationMembership:
        self._require_account(user_id)
        if self.store.get_organization(organization_id) is None:
            raise OrganizationNotFound()
        role = (role or "").strip()
        if is_primary:
            membership = self.store.assign_primary_organization(user_id, organization_id, role)
        else:
            membership = self.store.upsert_organization_membership(
                user_id, organization_id, role, is_primary=False
            )
        self.logger.info(
            "organization_membership_assigned",
            user_id=user_id,
            organization_id=organization_id,
            role=role,
            is_primary=is_primary,
        )
        return membership

    def assign_user_to_department(
        self, user_id: int, department_id: int, role: str = "", is_primary: bool = False
    ) -> DepartmentMembership:
        self._require_account(user_id)
        if self.store.get_department(department_id) is None:
            raise DepartmentNotFound()
        role = (role or "").strip()
        if is_primary:
            membership = self.store.assign_primary_department(user_id, department_id, role)
        else:
            membership = self.store.upsert_department_membership(
                user_id, department_id, role, is_primary=False
            )
        self.logger.info(
            "department_membership_assigned",
            user_id=user_id,
            department_id=department_id,
            role=role,
            is_primary=is_primary,
        )
        return membership

    def list_user_organizations(self, user_id: int) -> List[OrganizationMembership]:
        self._require_account(user_id)
        return self.store.list_user_organizations(user_id)

    def list_user_departments(self, user_id: int) -> List[DepartmentMembership]:
        self._require_account(user_id)
        return self.store.list_user_departments(user_id)

    def remove_user_from_organization(self, user_id: int, organization_id: int) -> None:
        if not self.store.remove_organization_membership(user_id, organization_id):
            raise NotFoundError("organization membership not found")
        self.logger.info(
            "organization_membership_removed", user_id=user_id, organization_id=organization_id
        )

    def remove_user_from_department(self, user_id: int, department_id: int) -> None:
        if not self.store.remove_department_membership(user_id, department_id):
            raise NotFoundError("department membership not found")
        self.logger.info(
            "department_membership_removed", user_id=user_id, department_id=department_id
        )

    # bootstrap
    def bootstrap_admin(self, data: BootstrapInput) -> BootstrapResult:
        """Ensure the root organization and its administrator account.

        Safe to run on every start: repeated identical input creates nothing
        new and does not rehash the password.
        """
        email = (data.admin_email or "").strip()
        if not email:
            raise ValidationError("admin email is required")
        username = (data.admin_username or "").strip() or email
        password = data.admin_password or ""
        if len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"admin password must be at least {self.settings.password_min_length} characters"
            )

        org = self.ensure_organization(
            data.organization_name,
            data.organization_description,
            data.organization_domain,
        )
        first_name = (data.admin_first_name or "").strip()
        last_name = (data.admin_last_name or "").strip()

        account = self.store.get_account_by_email(email)
        created = False
        password_updated = False
        if account is None:
            try:
                account = self.store.create_account(
                    email,
                    username,
                    self.passwords.hash(password),
                    first_name=first_name or "System",
                    last_name=last_name or "Administrator",
                    is_active=True,
                    is_verified=True,
                    is_super_admin=True,
                    primary_organization_id=org.id,
                )
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            created = True
            password_updated = True
        else:
            updates: dict[str, Any] = {
                "username": username or account.username,
                "first_name": first_name or account.first_name,
                "last_name": last_name or account.last_name,
                "is_active": True,
                "is_verified": True,
                "is_super_admin": True,
                "primary_organization_id": org.id,
            }
            if data.force_password_reset or not self.passwords.verify(
                account.password_hash, password
            ):
                updates["password_hash"] = self.passwords.hash(password)
                password_updated = True
            try:
                account = self.store.update_account(account.id, **updates)
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc

        self.store.assign_primary_organization(account.id, org.id, SYSTEM_ADMIN_ROLE)
        account = self.store.get_account(account.id)
        self.logger.info(
            "bootstrap_admin_ensured",
            user_id=account.id,
            organization_id=org.id,
            created=created,
            password_updated=password_updated,
        )
        return BootstrapResult(
            organization=org,
            account=account,
            created=created,
            password_updated=password_updated,
        )
