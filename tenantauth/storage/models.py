from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

# Reserved membership role granting platform administration.
SYSTEM_ADMIN_ROLE = "SYSTEM_ADMIN"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DepartmentKind(str, Enum):
    DEPARTMENT = "DEPARTMENT"
    DIVISION = "DIVISION"
    TEAM = "TEAM"


@dataclass
class Account:
    id: int
    email: str
    username: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    is_verified: bool = False
    is_super_admin: bool = False
    mfa_enabled: bool = False
    primary_organization_id: Optional[int] = None
    primary_department_id: Optional[int] = None
    login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Organization:
    id: int
    name: str
    description: str = ""
    domain: Optional[str] = None
    is_active: bool = True
    parent_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class Department:
    id: int
    organization_id: int
    name: str
    kind: DepartmentKind = DepartmentKind.DEPARTMENT
    parent_id: Optional[int] = None
    code: Optional[str] = None
    description: str = ""
    function: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class OrganizationMembership:
    user_id: int
    organization_id: int
    role: str = ""
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Resolved by list/get operations; not persisted
    organization: Optional[Organization] = None


@dataclass
class DepartmentMembership:
    user_id: int
    department_id: int
    role: str = ""
    is_primary: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    department: Optional[Department] = None
