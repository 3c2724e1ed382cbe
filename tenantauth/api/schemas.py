from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tenantauth.storage.models import DepartmentKind

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope for administrative responses and all errors."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.@+-]+$")


def _validate_username(value: str) -> str:
    """Usernames are 1-255 chars of letters, digits and ``_.@+-``."""
    normalized = _normalize_unicode(value.strip())
    if not normalized:
        raise ValueError("username is required")
    if len(normalized) > 255:
        raise ValueError("username must be at most 255 characters")
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username may contain only letters, digits, and the characters _ . @ + -"
        )
    return normalized


# auth


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255, description="Email or username")
    password: str = Field(..., min_length=1, max_length=128)
    organization_id: int = Field(..., ge=1)
    department_id: Optional[int] = Field(default=None, ge=0)
    role_id: Optional[int] = Field(default=None, ge=0)

    @field_validator("username")
    @classmethod
    def _strip_identifier(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username is required")
        return stripped

    @field_validator("department_id", "role_id")
    @classmethod
    def _zero_means_unset(cls, value: Optional[int]) -> Optional[int]:
        # Clients send 0 for "no selection"
        return value or None


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class IntrospectRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str = Field(..., max_length=128)
    first_name: str = Field(default="", max_length=255)
    last_name: str = Field(default="", max_length=255)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)


class OrganizationMembershipInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    organization_id: int
    organization_name: Optional[str] = None
    role: Optional[str] = None
    is_primary: bool

    @field_validator("organization_name", "role")
    @classmethod
    def _empty_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class DepartmentMembershipInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    department_id: int
    department_name: Optional[str] = None
    role: Optional[str] = None
    is_primary: bool

    @field_validator("department_name", "role")
    @classmethod
    def _empty_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class UserInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    username: str
    first_name: str
    last_name: str
    primary_organization_id: Optional[int] = None
    primary_department_id: Optional[int] = None
    is_super_admin: bool
    mfa_enabled: bool
    organizations: Optional[List[OrganizationMembershipInfo]] = None
    departments: Optional[List[DepartmentMembershipInfo]] = None

    @field_validator("organizations", "departments")
    @classmethod
    def _empty_list_to_none(cls, value: Optional[list]) -> Optional[list]:
        return value or None


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str = ""
    domain: Optional[str] = None
    is_active: bool
    parent_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class DepartmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    name: str
    kind: DepartmentKind
    code: Optional[str] = None
    description: str = ""
    function: str = ""
    is_active: bool
    parent_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class LoginResponse(BaseModel):
    """Token pair returned by login and refresh as the bare response body."""

    model_config = ConfigDict(from_attributes=True)

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str
    user: UserInfoResponse
    logged_organization: Optional[OrganizationResponse] = None
    logged_department: Optional[DepartmentResponse] = None


# administration


class CreateOrganizationRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = Field(default="", max_length=1024)
    domain: str = Field(default="", max_length=255)
    parent_id: Optional[int] = Field(default=None, ge=1)
    is_active: bool = True


class CreateDepartmentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: DepartmentKind = DepartmentKind.DEPARTMENT
    parent_id: Optional[int] = Field(default=None, ge=1)
    code: Optional[str] = Field(default=None, max_length=64)
    description: str = Field(default="", max_length=1024)
    function: str = Field(default="", max_length=1024)
    is_active: bool = True


class AssignMembershipRequest(BaseModel):
    user_id: int = Field(..., ge=1)
    role: str = Field(default="", max_length=64)
    is_primary: bool = False


class OrganizationMembershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    organization_id: int
    role: str
    is_primary: bool
    organization: Optional[OrganizationResponse] = None


class DepartmentMembershipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    department_id: int
    role: str
    is_primary: bool
    department: Optional[DepartmentResponse] = None


class PaginationResponse(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class UserListResponse(BaseModel):
    items: List[UserInfoResponse]
    pagination: PaginationResponse


class UnlockResponse(BaseModel):
    user_id: int
    login_attempts: int
    locked_until: Optional[datetime] = None
