"""
ScanMaster - Role and Permission Administration

CRUD over roles and permissions plus their join maintenance.

Role and permission changes never bump password versions. Credentials
keep their denormalized role/permission claims until the next refresh;
authorization decisions read the store, so every mutation here drops the
authorization cache.
"""

from typing import List

from loguru import logger

from scanmaster.auth.models import BOOTSTRAP_ROLE_ID, Permission, Role, Status
from scanmaster.auth.repository import PrincipalStore, clamp_page
from scanmaster.auth.schemas import (
    CreatePermissionRequest,
    CreateRoleRequest,
    Page,
    PermissionInfo,
    PermissionPatch,
    RoleInfo,
    RolePatch,
)
from scanmaster.concurrency import run_blocking
from scanmaster.errors import ProtectedEntity, ValidationFailure


def _require_name(value: str, what: str) -> str:
    if not value or not value.strip():
        raise ValidationFailure(f"{what} cannot be empty")
    return value.strip()


def _require_status(fields: dict) -> None:
    if "status" in fields and fields["status"] not in (Status.ENABLED, Status.DISABLED):
        raise ValidationFailure("status must be 0 (disabled) or 1 (enabled)")


class RoleService:
    """Role lifecycle and role-permission joins."""

    def __init__(self, store: PrincipalStore, authz=None):
        self.store = store
        self.authz = authz

    async def create_role(self, request: CreateRoleRequest) -> RoleInfo:
        """
        Raises:
            ValidationFailure: Empty name
            AlreadyExists: Name taken
            NotFound: Any permission id does not exist
        """
        role = await run_blocking(
            self.store.create_role,
            Role(
                name=_require_name(request.name, "role name"),
                display_name=request.display_name,
                description=request.description,
            ),
            request.permission_ids,
        )
        logger.bind(event="role.created").info("Role {} created (id={})", role.name, role.id)
        return await self.get_role(role.id)

    async def get_role(self, role_id: int) -> RoleInfo:
        """Role with its permissions."""
        role = await run_blocking(self.store.get_role, role_id)
        permissions = await run_blocking(self.store.get_role_permissions, role_id)
        return RoleInfo.build(role, permissions)

    async def get_role_by_name(self, name: str) -> RoleInfo:
        role = await run_blocking(self.store.get_role_by_name, name)
        return await self.get_role(role.id)

    async def list_roles(self, offset: int = 0, limit: int = 20) -> Page[RoleInfo]:
        offset, limit = clamp_page(offset, limit)
        roles, total = await run_blocking(self.store.list_roles, offset, limit)
        return Page[RoleInfo](
            items=[RoleInfo.build(r) for r in roles],
            total=total,
            offset=offset,
            limit=limit,
        )

    async def update_role(self, role_id: int, patch: RolePatch) -> RoleInfo:
        """
        Raises:
            ValidationFailure: Bad id, empty name or unknown status
            ProtectedEntity: Disabling the bootstrap role
            AlreadyExists: New name taken
        """
        if not role_id:
            raise ValidationFailure("role id cannot be 0")
        fields = patch.model_dump(exclude_none=True, exclude={"permission_ids"})
        if "name" in fields:
            fields["name"] = _require_name(fields["name"], "role name")
        _require_status(fields)
        if role_id == BOOTSTRAP_ROLE_ID and fields.get("status") == Status.DISABLED:
            raise ProtectedEntity("the bootstrap role cannot be disabled")

        await run_blocking(self.store.update_role, role_id, fields, patch.permission_ids)
        self._invalidate()
        logger.bind(event="role.updated").info("Role {} updated (fields={})", role_id, sorted(fields))
        return await self.get_role(role_id)

    async def delete_role(self, role_id: int) -> None:
        """Hard delete; principal and permission joins go with it."""
        if role_id == BOOTSTRAP_ROLE_ID:
            raise ProtectedEntity("the bootstrap role cannot be deleted")
        await run_blocking(self.store.delete_role, role_id)
        self._invalidate()
        logger.bind(event="role.deleted").info("Role {} deleted", role_id)

    async def activate_role(self, role_id: int) -> RoleInfo:
        return await self.update_role(role_id, RolePatch(status=Status.ENABLED))

    async def deactivate_role(self, role_id: int) -> RoleInfo:
        return await self.update_role(role_id, RolePatch(status=Status.DISABLED))

    async def assign_permission(self, role_id: int, permission_id: int) -> None:
        await run_blocking(self.store.assign_permission, role_id, permission_id)
        self._invalidate()

    async def remove_permission(self, role_id: int, permission_id: int) -> None:
        await run_blocking(self.store.remove_permission, role_id, permission_id)
        self._invalidate()

    async def get_role_permissions(self, role_id: int) -> List[PermissionInfo]:
        permissions = await run_blocking(self.store.get_role_permissions, role_id)
        return [PermissionInfo.build(p) for p in permissions]

    def _invalidate(self) -> None:
        if self.authz is not None:
            self.authz.clear()


class PermissionService:
    """Permission lifecycle."""

    def __init__(self, store: PrincipalStore, authz=None):
        self.store = store
        self.authz = authz

    async def create_permission(self, request: CreatePermissionRequest) -> PermissionInfo:
        permission = await run_blocking(
            self.store.create_permission,
            Permission(
                name=_require_name(request.name, "permission name"),
                resource=_require_name(request.resource, "resource"),
                action=_require_name(request.action, "action"),
                display_name=request.display_name,
                description=request.description,
            ),
        )
        logger.bind(event="permission.created").info(
            "Permission {} created ({})", permission.name, permission.key,
        )
        return PermissionInfo.build(permission)

    async def get_permission(self, permission_id: int) -> PermissionInfo:
        return PermissionInfo.build(await run_blocking(self.store.get_permission, permission_id))

    async def get_permission_by_name(self, name: str) -> PermissionInfo:
        return PermissionInfo.build(await run_blocking(self.store.get_permission_by_name, name))

    async def list_permissions(self, offset: int = 0, limit: int = 20) -> Page[PermissionInfo]:
        offset, limit = clamp_page(offset, limit)
        permissions, total = await run_blocking(self.store.list_permissions, offset, limit)
        return Page[PermissionInfo](
            items=[PermissionInfo.build(p) for p in permissions],
            total=total,
            offset=offset,
            limit=limit,
        )

    async def update_permission(self, permission_id: int, patch: PermissionPatch) -> PermissionInfo:
        """Raises ProtectedEntity for the reserved permission."""
        if not permission_id:
            raise ValidationFailure("permission id cannot be 0")
        fields = patch.model_dump(exclude_none=True)
        for key, what in (("name", "permission name"), ("resource", "resource"), ("action", "action")):
            if key in fields:
                fields[key] = _require_name(fields[key], what)
        _require_status(fields)

        permission = await run_blocking(self.store.update_permission, permission_id, fields)
        self._invalidate()
        logger.bind(event="permission.updated").info(
            "Permission {} updated (fields={})", permission_id, sorted(fields),
        )
        return PermissionInfo.build(permission)

    async def delete_permission(self, permission_id: int) -> None:
        await run_blocking(self.store.delete_permission, permission_id)
        self._invalidate()
        logger.bind(event="permission.deleted").info("Permission {} deleted", permission_id)

    async def get_permission_roles(self, permission_id: int) -> List[RoleInfo]:
        roles = await run_blocking(self.store.get_permission_roles, permission_id)
        return [RoleInfo.build(r) for r in roles]

    def _invalidate(self) -> None:
        if self.authz is not None:
            self.authz.clear()
