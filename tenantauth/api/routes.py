from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from tenantauth.api.schemas import (
    AssignMembershipRequest,
    CreateDepartmentRequest,
    CreateOrganizationRequest,
    DepartmentMembershipResponse,
    DepartmentResponse,
    Envelope,
    IntrospectRequest,
    LoginRequest,
    LoginResponse,
    OrganizationMembershipResponse,
    OrganizationResponse,
    PaginationResponse,
    RefreshRequest,
    RegisterRequest,
    UnlockResponse,
    UserInfoResponse,
    UserListResponse,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthContext
from tenantauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return ctx


# auth


@router.post(
    "/login", response_model=LoginResponse, response_model_exclude_none=True, tags=["auth"]
)
@router.post(
    "/auth/login",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def login(body: LoginRequest):
    """Authenticate by email or username into one organization.

    Raises:
        401: Unknown identifier or wrong password
        403: Account locked or inactive, not a member, or role not permitted
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.username,
        body.password,
        body.organization_id,
        department_id=body.department_id,
        role_id=body.role_id,
    )
    return LoginResponse.model_validate(result)


@router.post(
    "/refresh", response_model=LoginResponse, response_model_exclude_none=True, tags=["auth"]
)
@router.post(
    "/auth/refresh",
    response_model=LoginResponse,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = runtime.auth.refresh_token(body.refresh_token)
    return LoginResponse.model_validate(result)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = await runtime.auth.register(
        body.email,
        body.username,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=UserInfoResponse.model_validate(user))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user_info(principal.user_id)
    return Envelope(status="ok", data=UserInfoResponse.model_validate(user))


@router.post("/token/introspect", tags=["auth"])
async def introspect(body: IntrospectRequest):
    """Describe a token; any failure reports ``{"active": false}`` with 200."""
    runtime = get_runtime()
    return runtime.auth.introspect(body.token)


@router.get("/health", tags=["system"])
async def health():
    runtime = get_runtime()
    return {"status": "healthy", "service": runtime.settings.service_name}


# administration


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1, description="Users per page"),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    result = runtime.auth.list_users(page, page_size)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserInfoResponse.model_validate(u) for u in result.items],
            pagination=PaginationResponse(
                page=result.page,
                page_size=result.page_size,
                total=result.total,
                total_pages=result.total_pages,
            ),
        ),
    )


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_user(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    account = runtime.auth.unlock_account(user_id)
    logger.info("admin_unlock", actor_id=principal.user_id, user_id=user_id)
    return Envelope(
        status="ok",
        data=UnlockResponse(
            user_id=account.id,
            login_attempts=account.login_attempts,
            locked_until=account.locked_until,
        ),
    )


@router.get("/organizations", response_model=Envelope, tags=["organizations"])
async def list_organizations(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    orgs = runtime.provisioning.list_organizations()
    return Envelope(
        status="ok", data=[OrganizationResponse.model_validate(o) for o in orgs]
    )


@router.post(
    "/organizations", response_model=Envelope, status_code=201, tags=["organizations"]
)
async def create_organization(
    body: CreateOrganizationRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    org = runtime.provisioning.create_organization(
        body.name,
        body.description,
        body.domain,
        parent_id=body.parent_id,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=OrganizationResponse.model_validate(org))


@router.get(
    "/organizations/{org_id}/departments", response_model=Envelope, tags=["organizations"]
)
async def list_departments(
    org_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    departments = runtime.provisioning.list_departments(org_id)
    return Envelope(
        status="ok", data=[DepartmentResponse.model_validate(d) for d in departments]
    )


@router.post(
    "/organizations/{org_id}/departments",
    response_model=Envelope,
    status_code=201,
    tags=["organizations"],
)
async def create_department(
    body: CreateDepartmentRequest,
    org_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    dept = runtime.provisioning.create_department(
        org_id,
        body.name,
        kind=body.kind,
        parent_id=body.parent_id,
        code=body.code,
        description=body.description,
        function=body.function,
        is_active=body.is_active,
    )
    return Envelope(status="ok", data=DepartmentResponse.model_validate(dept))


@router.post("/organizations/{org_id}/users", response_model=Envelope, tags=["memberships"])
async def assign_user_to_organization(
    body: AssignMembershipRequest,
    org_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    membership = runtime.provisioning.assign_user_to_organization(
        body.user_id, org_id, body.role, is_primary=body.is_primary
    )
    return Envelope(
        status="ok", data=OrganizationMembershipResponse.model_validate(membership)
    )


@router.delete(
    "/organizations/{org_id}/users/{user_id}", response_model=Envelope, tags=["memberships"]
)
async def remove_user_from_organization(
    org_id: int = Path(..., ge=1),
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    runtime.provisioning.remove_user_from_organization(user_id, org_id)
    return Envelope(
        status="ok", data={"removed": True, "user_id": user_id, "organization_id": org_id}
    )


@router.post("/departments/{dept_id}/users", response_model=Envelope, tags=["memberships"])
async def assign_user_to_department(
    body: AssignMembershipRequest,
    dept_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    membership = runtime.provisioning.assign_user_to_department(
        body.user_id, dept_id, body.role, is_primary=body.is_primary
    )
    return Envelope(
        status="ok", data=DepartmentMembershipResponse.model_validate(membership)
    )


@router.delete(
    "/departments/{dept_id}/users/{user_id}", response_model=Envelope, tags=["memberships"]
)
async def remove_user_from_department(
    dept_id: int = Path(..., ge=1),
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    runtime.provisioning.remove_user_from_department(user_id, dept_id)
    return Envelope(
        status="ok", data={"removed": True, "user_id": user_id, "department_id": dept_id}
    )


@router.get("/users/{user_id}/organizations", response_model=Envelope, tags=["memberships"])
async def list_user_organizations(
    user_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    memberships = runtime.provisioning.list_user_organizations(user_id)
    return Envelope(
        status="ok",
        data=[OrganizationMembershipResponse.model_validate(m) for m in memberships],
    )


@router.get("/users/{user_id}/departments", response_model=Envelope, tags=["memberships"])
async def list_user_departments(
    user_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    memberships = runtime.provisioning.list_user_departments(user_id)
    return Envelope(
        status="ok",
        data=[DepartmentMembershipResponse.model_validate(m) for m in memberships],
    )
