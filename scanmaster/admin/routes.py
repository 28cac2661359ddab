"""
ScanMaster - Admin API Routes

Management endpoints for:
- Principals (CRUD, activation, password reset, role assignment)
- Roles (CRUD, activation, permission assignment)
- Permissions (CRUD)
- Sessions (inspection and revocation)

Every route requires the admin role or the matching resource:action
permission (e.g. user:update).
"""

from fastapi import APIRouter, Depends, Path, Query, status

from scanmaster.auth.dependencies import (
    get_identity_service,
    get_permission_service,
    get_role_service,
    get_session_service,
    require_permission,
)
from scanmaster.auth.identity import IdentityService
from scanmaster.auth.roles import PermissionService, RoleService
from scanmaster.auth.schemas import (
    CreatePermissionRequest,
    CreatePrincipalRequest,
    CreateRoleRequest,
    PermissionAssignment,
    PermissionPatch,
    PrincipalPatch,
    ResetPasswordRequest,
    ResetPasswordResponse,
    RoleAssignment,
    RolePatch,
)
from scanmaster.auth.service import SessionService
from scanmaster.gateway.responses import success


router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# Principals
# =============================================================================

@router.get("/users", dependencies=[Depends(require_permission("user", "read"))])
async def list_users(
    offset: int = Query(0),
    limit: int = Query(20),
    identity: IdentityService = Depends(get_identity_service),
):
    """List non-deleted principals ordered by id."""
    page = await identity.list_principals(offset, limit)
    return success(page)


@router.post("/users", dependencies=[Depends(require_permission("user", "create"))])
async def create_user(
    body: CreatePrincipalRequest,
    identity: IdentityService = Depends(get_identity_service),
):
    info = await identity.create_principal(body)
    return success(info, "user created", code=status.HTTP_201_CREATED)


@router.get("/users/{principal_id}", dependencies=[Depends(require_permission("user", "read"))])
async def get_user(
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    info = await identity.get_principal_info(principal_id)
    return success(info)


@router.put("/users/{principal_id}", dependencies=[Depends(require_permission("user", "update"))])
async def update_user(
    body: PrincipalPatch,
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    """
    Partial update. A password, status or role change invalidates every
    outstanding credential of the principal.
    """
    info = await identity.update_principal(principal_id, body)
    return success(info, "user updated")


@router.delete("/users/{principal_id}", dependencies=[Depends(require_permission("user", "delete"))])
async def delete_user(
    principal_id: int = Path(...),
    identity: IdentityService = Depends(get_identity_service),
):
    """
    Soft-delete a principal.

    Raises:
        400: principal_id is 0
        403: principal_id is the bootstrap administrator
    """
    await identity.delete_principal(principal_id)
    return success(message="user deleted")


@router.post("/users/{principal_id}/activate", dependencies=[Depends(require_permission("user", "update"))])
async def activate_user(
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    info = await identity.activate_user(principal_id)
    return success(info, "user activated")


@router.post("/users/{principal_id}/deactivate", dependencies=[Depends(require_permission("user", "update"))])
async def deactivate_user(
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    info = await identity.deactivate_user(principal_id)
    return success(info, "user deactivated")


@router.post(
    "/users/{principal_id}/reset-password",
    dependencies=[Depends(require_permission("user", "update"))],
)
async def reset_user_password(
    body: ResetPasswordRequest,
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    """Returns the new plaintext password once so it can be handed over."""
    password = await identity.reset_password(principal_id, body.new_password)
    return success(ResetPasswordResponse(password=password), "password reset")


@router.post("/users/{principal_id}/roles", dependencies=[Depends(require_permission("user", "update"))])
async def assign_user_role(
    body: RoleAssignment,
    principal_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    await identity.assign_role(principal_id, body.role_id)
    return success(message="role assigned")


@router.delete(
    "/users/{principal_id}/roles/{role_id}",
    dependencies=[Depends(require_permission("user", "update"))],
)
async def remove_user_role(
    principal_id: int = Path(..., ge=1),
    role_id: int = Path(..., ge=1),
    identity: IdentityService = Depends(get_identity_service),
):
    await identity.remove_role(principal_id, role_id)
    return success(message="role removed")


# =============================================================================
# Roles
# =============================================================================

@router.get("/roles", dependencies=[Depends(require_permission("role", "read"))])
async def list_roles(
    offset: int = Query(0),
    limit: int = Query(20),
    roles: RoleService = Depends(get_role_service),
):
    page = await roles.list_roles(offset, limit)
    return success(page)


@router.post("/roles", dependencies=[Depends(require_permission("role", "create"))])
async def create_role(
    body: CreateRoleRequest,
    roles: RoleService = Depends(get_role_service),
):
    info = await roles.create_role(body)
    return success(info, "role created", code=status.HTTP_201_CREATED)


@router.get("/roles/{role_id}", dependencies=[Depends(require_permission("role", "read"))])
async def get_role(
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    info = await roles.get_role(role_id)
    return success(info)


@router.put("/roles/{role_id}", dependencies=[Depends(require_permission("role", "update"))])
async def update_role(
    body: RolePatch,
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    info = await roles.update_role(role_id, body)
    return success(info, "role updated")


@router.delete("/roles/{role_id}", dependencies=[Depends(require_permission("role", "delete"))])
async def delete_role(
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    await roles.delete_role(role_id)
    return success(message="role deleted")


@router.post("/roles/{role_id}/activate", dependencies=[Depends(require_permission("role", "update"))])
async def activate_role(
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    info = await roles.activate_role(role_id)
    return success(info, "role activated")


@router.post("/roles/{role_id}/deactivate", dependencies=[Depends(require_permission("role", "update"))])
async def deactivate_role(
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    info = await roles.deactivate_role(role_id)
    return success(info, "role deactivated")


@router.get("/roles/{role_id}/permissions", dependencies=[Depends(require_permission("role", "read"))])
async def get_role_permissions(
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    permissions = await roles.get_role_permissions(role_id)
    return success(permissions)


@router.post("/roles/{role_id}/permissions", dependencies=[Depends(require_permission("role", "update"))])
async def assign_role_permission(
    body: PermissionAssignment,
    role_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    await roles.assign_permission(role_id, body.permission_id)
    return success(message="permission assigned")


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}",
    dependencies=[Depends(require_permission("role", "update"))],
)
async def remove_role_permission(
    role_id: int = Path(..., ge=1),
    permission_id: int = Path(..., ge=1),
    roles: RoleService = Depends(get_role_service),
):
    await roles.remove_permission(role_id, permission_id)
    return success(message="permission removed")


# =============================================================================
# Permissions
# =============================================================================

@router.get("/permissions", dependencies=[Depends(require_permission("permission", "read"))])
async def list_permissions(
    offset: int = Query(0),
    limit: int = Query(20),
    permissions: PermissionService = Depends(get_permission_service),
):
    page = await permissions.list_permissions(offset, limit)
    return success(page)


@router.post("/permissions", dependencies=[Depends(require_permission("permission", "create"))])
async def create_permission(
    body: CreatePermissionRequest,
    permissions: PermissionService = Depends(get_permission_service),
):
    info = await permissions.create_permission(body)
    return success(info, "permission created", code=status.HTTP_201_CREATED)


@router.get("/permissions/{permission_id}", dependencies=[Depends(require_permission("permission", "read"))])
async def get_permission(
    permission_id: int = Path(..., ge=1),
    permissions: PermissionService = Depends(get_permission_service),
):
    info = await permissions.get_permission(permission_id)
    return success(info)


@router.put("/permissions/{permission_id}", dependencies=[Depends(require_permission("permission", "update"))])
async def update_permission(
    body: PermissionPatch,
    permission_id: int = Path(..., ge=1),
    permissions: PermissionService = Depends(get_permission_service),
):
    info = await permissions.update_permission(permission_id, body)
    return success(info, "permission updated")


@router.delete(
    "/permissions/{permission_id}",
    dependencies=[Depends(require_permission("permission", "delete"))],
)
async def delete_permission(
    permission_id: int = Path(..., ge=1),
    permissions: PermissionService = Depends(get_permission_service),
):
    await permissions.delete_permission(permission_id)
    return success(message="permission deleted")


@router.get(
    "/permissions/{permission_id}/roles",
    dependencies=[Depends(require_permission("permission", "read"))],
)
async def get_permission_roles(
    permission_id: int = Path(..., ge=1),
    permissions: PermissionService = Depends(get_permission_service),
):
    roles = await permissions.get_permission_roles(permission_id)
    return success(roles)


# =============================================================================
# Sessions
# =============================================================================

@router.get("/sessions/{principal_id}", dependencies=[Depends(require_permission("session", "read"))])
async def list_sessions(
    principal_id: int = Path(..., ge=1),
    sessions: SessionService = Depends(get_session_service),
):
    records = await sessions.list_sessions(principal_id)
    return success(records)


@router.post(
    "/sessions/{principal_id}/revoke",
    dependencies=[Depends(require_permission("session", "revoke"))],
)
async def revoke_session(
    principal_id: int = Path(..., ge=1),
    sessions: SessionService = Depends(get_session_service),
):
    """Delete the session record; outstanding access credentials then fail with SessionExpired."""
    removed = await sessions.revoke_session(principal_id)
    return success({"revoked": removed}, "session revoked")


@router.post(
    "/sessions/{principal_id}/revoke-all",
    dependencies=[Depends(require_permission("session", "revoke"))],
)
async def revoke_all_sessions(
    principal_id: int = Path(..., ge=1),
    sessions: SessionService = Depends(get_session_service),
):
    """Same effect as revoke while sessions are single per principal."""
    removed = await sessions.revoke_all_sessions(principal_id)
    return success({"revoked": removed}, "all sessions revoked")
