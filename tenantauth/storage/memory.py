from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    Account,
    Department,
    DepartmentKind,
    DepartmentMembership,
    Organization,
    OrganizationMembership,
    utcnow,
)


class MemoryStore:
    """In-process credential and membership store persisted to a JSON file."""

    def __init__(self, fs_root: str = "/tmp/tenantauth") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.organizations: Dict[int, Organization] = {}
        self.departments: Dict[int, Department] = {}
        self.org_memberships: Dict[Tuple[int, int], OrganizationMembership] = {}
        self.dept_memberships: Dict[Tuple[int, int], DepartmentMembership] = {}
        self._account_seq = 1
        self._organization_seq = 1
        self._department_seq = 1
        # RLock so compound commands can reuse the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # accounts
    def _live_accounts(self) -> List[Account]:
        return [a for a in self.accounts.values() if a.deleted_at is None]

    def _check_account_unique(
        self, email: str, username: str, *, exclude_id: Optional[int] = None
    ) -> None:
        for existing in self._live_accounts():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.username == username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )

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
    ) -> Account:
        with self._data_lock:
            self._check_account_unique(email, username)
            account = Account(
                id=self._account_seq,
                email=email,
                username=username,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                is_active=is_active,
                is_verified=is_verified,
                is_super_admin=is_super_admin,
                primary_organization_id=primary_organization_id,
            )
            self._account_seq += 1
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.deleted_at is not None:
                return None
            return account

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self._live_accounts() if a.email == email), None)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self._live_accounts() if a.username == username), None
            )

    def get_account_by_login(self, identifier: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (
                    a
                    for a in self._live_accounts()
                    if a.email == identifier or a.username == identifier
                ),
                None,
            )

    def update_account(self, account_id: int, **updates: Any) -> Optional[Account]:
        with self._data_lock:
            account = self.get_account(account_id)
            if not account:
                return None
            if "email" in updates or "username" in updates:
                self._check_account_unique(
                    updates.get("email", account.email),
                    updates.get("username", account.username),
                    exclude_id=account_id,
                )
            for name, value in updates.items():
                setattr(account, name, value)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def increment_login_attempts(self, account_id: int) -> int:
        with self._data_lock:
            account = self.get_account(account_id)
            if not account:
                return 0
            account.login_attempts += 1
            account.updated_at = utcnow()
            self._persist_state()
            return account.login_attempts

    def set_locked_until(self, account_id: int, until: Optional[datetime]) -> None:
        self.update_account(account_id, locked_until=until)

    def record_successful_login(self, account_id: int, at: datetime) -> None:
        self.update_account(
            account_id, last_login=at, login_attempts=0, locked_until=None
        )

    def clear_lockout(self, account_id: int) -> Optional[Account]:
        return self.update_account(account_id, login_attempts=0, locked_until=None)

    def list_accounts(self, offset: int = 0, limit: int = 20) -> List[Account]:
        with self._data_lock:
            ordered = sorted(
                self._live_accounts(), key=lambda a: (a.created_at, a.id), reverse=True
            )
            return ordered[offset : offset + limit]

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self._live_accounts())

    # organizations
    def _check_domain_unique(
        self, domain: Optional[str], *, exclude_id: Optional[int] = None
    ) -> None:
        if not domain:
            return
        for org in self.organizations.values():
            if org.id != exclude_id and org.deleted_at is None and org.domain == domain:
                raise ConstraintViolation(
                    "organization domain already exists", {"field": "domain"}
                )

    def create_organization(
        self,
        name: str,
        description: str = "",
        domain: Optional[str] = None,
        *,
        parent_id: Optional[int] = None,
        is_active: bool = True,
    ) -> Organization:
        with self._data_lock:
            self._check_domain_unique(domain)
            org = Organization(
                id=self._organization_seq,
                name=name,
                description=description,
                domain=domain or None,
                parent_id=parent_id,
                is_active=is_active,
            )
            self._organization_seq += 1
            self.organizations[org.id] = org
            self._persist_state()
            return org

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self._data_lock:
            org = self.organizations.get(org_id)
            if org is None or org.deleted_at is not None:
                return None
            return org

    def get_organization_by_domain(self, domain: str) -> Optional[Organization]:
        with self._data_lock:
            return next(
                (
                    o
                    for o in self.organizations.values()
                    if o.deleted_at is None and o.domain == domain
                ),
                None,
            )

    def get_organization_by_name(self, name: str) -> Optional[Organization]:
        with self._data_lock:
            matches = [
                o
                for o in self.organizations.values()
                if o.deleted_at is None and o.name == name
            ]
            return min(matches, key=lambda o: o.id) if matches else None

    def update_organization(self, org_id: int, **updates: Any) -> Optional[Organization]:
        with self._data_lock:
            org = self.get_organization(org_id)
            if not org:
                return None
            if updates.get("domain"):
                self._check_domain_unique(updates["domain"], exclude_id=org_id)
            for name, value in updates.items():
                setattr(org, name, value)
            org.updated_at = utcnow()
            self._persist_state()
            return org

    def list_organizations(self) -> List[Organization]:
        with self._data_lock:
            live = [o for o in self.organizations.values() if o.deleted_at is None]
            return sorted(live, key=lambda o: (o.name, o.id))

    def list_child_organizations(self, parent_id: int) -> List[Organization]:
        return [o for o in self.list_organizations() if o.parent_id == parent_id]

    # departments
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
    ) -> Department:
        with self._data_lock:
            dept = Department(
                id=self._department_seq,
                organization_id=organization_id,
                name=name,
                kind=kind,
                parent_id=parent_id,
                code=code,
                description=description,
                function=function,
                is_active=is_active,
            )
            self._department_seq += 1
            self.departments[dept.id] = dept
            self._persist_state()
            return dept

    def get_department(self, dept_id: int) -> Optional[Department]:
        with self._data_lock:
            dept = self.departments.get(dept_id)
            if dept is None or dept.deleted_at is not None:
                return None
            return dept

    def list_departments(self, organization_id: int) -> List[Department]:
        with self._data_lock:
            live = [
                d
                for d in self.departments.values()
                if d.deleted_at is None and d.organization_id == organization_id
            ]
            return sorted(live, key=lambda d: (d.name, d.id))

    def list_child_departments(self, parent_id: int) -> List[Department]:
        with self._data_lock:
            return sorted(
                (
                    d
                    for d in self.departments.values()
                    if d.deleted_at is None and d.parent_id == parent_id
                ),
                key=lambda d: (d.name, d.id),
            )

    # memberships
    def upsert_organization_membership(
        self, user_id: int, org_id: int, role: str = "", is_primary: bool = False
    ) -> OrganizationMembership:
        with self._data_lock:
            now = utcnow()
            key = (user_id, org_id)
            membership = self.org_memberships.get(key)
            if membership:
                membership.role = role
                membership.is_primary = is_primary
                membership.updated_at = now
            else:
                membership = OrganizationMembership(
                    user_id=user_id,
                    organization_id=org_id,
                    role=role,
                    is_primary=is_primary,
                    created_at=now,
                    updated_at=now,
                )
                self.org_memberships[key] = membership
            account = self.accounts.get(user_id)
            if not is_primary and account and account.primary_organization_id == org_id:
                account.primary_organization_id = None
                account.updated_at = now
            self._persist_state()
            return replace(membership, organization=self.get_organization(org_id))

    def upsert_department_membership(
        self, user_id: int, dept_id: int, role: str = "", is_primary: bool = False
    ) -> DepartmentMembership:
        with self._data_lock:
            now = utcnow()
            key = (user_id, dept_id)
            membership = self.dept_memberships.get(key)
            if membership:
                membership.role = role
                membership.is_primary = is_primary
                membership.updated_at = now
            else:
                membership = DepartmentMembership(
                    user_id=user_id,
                    department_id=dept_id,
                    role=role,
                    is_primary=is_primary,
                    created_at=now,
                    updated_at=now,
                )
                self.dept_memberships[key] = membership
            account = self.accounts.get(user_id)
            if not is_primary and account and account.primary_department_id == dept_id:
                account.primary_department_id = None
                account.updated_at = now
            self._persist_state()
            return replace(membership, department=self.get_department(dept_id))

    def get_organization_membership(
        self, user_id: int, org_id: int
    ) -> Optional[OrganizationMembership]:
        with self._data_lock:
            membership = self.org_memberships.get((user_id, org_id))
            if not membership:
                return None
            return replace(membership, organization=self.get_organization(org_id))

    def get_department_membership(
        self, user_id: int, dept_id: int
    ) -> Optional[DepartmentMembership]:
        with self._data_lock:
            membership = self.dept_memberships.get((user_id, dept_id))
            if not membership:
                return None
            return replace(membership, department=self.get_department(dept_id))

    def list_user_organizations(self, user_id: int) -> List[OrganizationMembership]:
        with self._data_lock:
            rows = [
                replace(m, organization=self.get_organization(m.organization_id))
                for m in self.org_memberships.values()
                if m.user_id == user_id
            ]
        rows = [m for m in rows if m.organization is not None]
        # primary first, then most recently updated
        rows.sort(key=lambda m: m.updated_at, reverse=True)
        rows.sort(key=lambda m: m.is_primary, reverse=True)
        return rows

    def list_user_departments(self, user_id: int) -> List[DepartmentMembership]:
        with self._data_lock:
            rows = [
                replace(m, department=self.get_department(m.department_id))
                for m in self.dept_memberships.values()
                if m.user_id == user_id
            ]
        rows = [m for m in rows if m.department is not None]
        rows.sort(key=lambda m: m.updated_at, reverse=True)
        rows.sort(key=lambda m: m.is_primary, reverse=True)
        return rows

    def remove_organization_membership(self, user_id: int, org_id: int) -> bool:
        with self._data_lock:
            removed = self.org_memberships.pop((user_id, org_id), None)
            if not removed:
                return False
            account = self.accounts.get(user_id)
            if account and account.primary_organization_id == org_id:
                account.primary_organization_id = None
                account.updated_at = utcnow()
            self._persist_state()
            return True

    def remove_department_membership(self, user_id: int, dept_id: int) -> bool:
        with self._data_lock:
            removed = self.dept_memberships.pop((user_id, dept_id), None)
            if not removed:
                return False
            account = self.accounts.get(user_id)
            if account and account.primary_department_id == dept_id:
                account.primary_department_id = None
                account.updated_at = utcnow()
            self._persist_state()
            return True

    def clear_primary_organizations(self, user_id: int) -> None:
        with self._data_lock:
            for membership in self.org_memberships.values():
                if membership.user_id == user_id and membership.is_primary:
                    membership.is_primary = False
                    membership.updated_at = utcnow()
            self._persist_state()

    def clear_primary_departments(self, user_id: int) -> None:
        with self._data_lock:
            for membership in self.dept_memberships.values():
                if membership.user_id == user_id and membership.is_primary:
                    membership.is_primary = False
                    membership.updated_at = utcnow()
            self._persist_state()

    def assign_primary_organization(
        self, user_id: int, org_id: int, role: str = ""
    ) -> OrganizationMembership:
        """Make ``org_id`` the user's only primary organization.

        Clearing old primaries, upserting the membership and republishing
        ``Account.primary_organization_id`` happen under one lock acquisition.
        """
        with self._data_lock:
            self.clear_primary_organizations(user_id)
            membership = self.upsert_organization_membership(
                user_id, org_id, role, is_primary=True
            )
            self.update_account(user_id, primary_organization_id=org_id)
            return membership

    def assign_primary_department(
        self, user_id: int, dept_id: int, role: str = ""
    ) -> DepartmentMembership:
        with self._data_lock:
            self.clear_primary_departments(user_id)
            membership = self.upsert_department_membership(
                user_id, dept_id, role, is_primary=True
            )
            self.update_account(user_id, primary_department_id=dept_id)
            return membership

    # persistence
    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "organizations": [
                self._serialize_organization(o) for o in self.organizations.values()
            ],
            "departments": [
                self._serialize_department(d) for d in self.departments.values()
            ],
            "org_memberships": [
                self._serialize_org_membership(m) for m in self.org_memberships.values()
            ],
            "dept_memberships": [
                self._serialize_dept_membership(m)
                for m in self.dept_memberships.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.organizations = {
            o["id"]: self._deserialize_organization(o)
            for o in data.get("organizations", [])
        }
        self.departments = {
            d["id"]: self._deserialize_department(d)
            for d in data.get("departments", [])
        }
        self.org_memberships = {}
        for raw in data.get("org_memberships", []):
            membership = self._deserialize_org_membership(raw)
            self.org_memberships[(membership.user_id, membership.organization_id)] = (
                membership
            )
        self.dept_memberships = {}
        for raw in data.get("dept_memberships", []):
            membership = self._deserialize_dept_membership(raw)
            self.dept_memberships[(membership.user_id, membership.department_id)] = (
                membership
            )
        self._account_seq = max(self.accounts, default=0) + 1
        self._organization_seq = max(self.organizations, default=0) + 1
        self._department_seq = max(self.departments, default=0) + 1
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            organizations=len(self.organizations),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "username": account.username,
            "password_hash": account.password_hash,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "is_active": account.is_active,
            "is_verified": account.is_verified,
            "is_super_admin": account.is_super_admin,
            "mfa_enabled": account.mfa_enabled,
            "primary_organization_id": account.primary_organization_id,
            "primary_department_id": account.primary_department_id,
            "login_attempts": account.login_attempts,
            "locked_until": self._serialize_datetime(account.locked_until),
            "last_login": self._serialize_datetime(account.last_login),
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
            "deleted_at": self._serialize_datetime(account.deleted_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=int(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            is_super_admin=data.get("is_super_admin", False),
            mfa_enabled=data.get("mfa_enabled", False),
            primary_organization_id=data.get("primary_organization_id"),
            primary_department_id=data.get("primary_department_id"),
            login_attempts=data.get("login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_organization(self, org: Organization) -> dict:
        return {
            "id": org.id,
            "name": org.name,
            "description": org.description,
            "domain": org.domain,
            "is_active": org.is_active,
            "parent_id": org.parent_id,
            "created_at": self._serialize_datetime(org.created_at),
            "updated_at": self._serialize_datetime(org.updated_at),
            "deleted_at": self._serialize_datetime(org.deleted_at),
        }

    def _deserialize_organization(self, data: dict) -> Organization:
        return Organization(
            id=int(data["id"]),
            name=data["name"],
            description=data.get("description", ""),
            domain=data.get("domain"),
            is_active=data.get("is_active", True),
            parent_id=data.get("parent_id"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_department(self, dept: Department) -> dict:
        return {
            "id": dept.id,
            "organization_id": dept.organization_id,
            "name": dept.name,
            "kind": dept.kind.value,
            "parent_id": dept.parent_id,
            "code": dept.code,
            "description": dept.description,
            "function": dept.function,
            "is_active": dept.is_active,
            "created_at": self._serialize_datetime(dept.created_at),
            "updated_at": self._serialize_datetime(dept.updated_at),
            "deleted_at": self._serialize_datetime(dept.deleted_at),
        }

    def _deserialize_department(self, data: dict) -> Department:
        return Department(
            id=int(data["id"]),
            organization_id=int(data["organization_id"]),
            name=data["name"],
            kind=DepartmentKind(data.get("kind", DepartmentKind.DEPARTMENT.value)),
            parent_id=data.get("parent_id"),
            code=data.get("code"),
            description=data.get("description", ""),
            function=data.get("function", ""),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )

    def _serialize_org_membership(self, membership: OrganizationMembership) -> dict:
        return {
            "user_id": membership.user_id,
            "organization_id": membership.organization_id,
            "role": membership.role,
            "is_primary": membership.is_primary,
            "created_at": self._serialize_datetime(membership.created_at),
            "updated_at": self._serialize_datetime(membership.updated_at),
        }

    def _deserialize_org_membership(self, data: dict) -> OrganizationMembership:
        return OrganizationMembership(
            user_id=int(data["user_id"]),
            organization_id=int(data["organization_id"]),
            role=data.get("role", ""),
            is_primary=data.get("is_primary", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_dept_membership(self, membership: DepartmentMembership) -> dict:
        return {
            "user_id": membership.user_id,
            "department_id": membership.department_id,
            "role": membership.role,
            "is_primary": membership.is_primary,
            "created_at": self._serialize_datetime(membership.created_at),
            "updated_at": self._serialize_datetime(membership.updated_at),
        }

    def _deserialize_dept_membership(self, data: dict) -> DepartmentMembership:
        return DepartmentMembership(
            user_id=int(data["user_id"]),
            department_id=int(data["department_id"]),
            role=data.get("role", ""),
            is_primary=data.get("is_primary", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
