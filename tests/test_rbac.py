"""
ScanMaster - RBAC Tests

Deny-by-default authorization, role checks, the version-checked decision
cache, and role/permission administration.

Run with: pytest tests/test_rbac.py -v
"""

import pytest

from scanmaster.auth.dependencies import require_permission, require_role
from scanmaster.auth.models import Principal, Role, Status
from scanmaster.auth.rbac import AuthorizationService, parse_permission_key
from scanmaster.auth.schemas import (
    CreatePermissionRequest,
    CreateRoleRequest,
    PermissionPatch,
    RolePatch,
)
from scanmaster.auth.service import AuthenticatedPrincipal
from scanmaster.errors import AlreadyExists, PermissionDenied, ProtectedEntity, ValidationFailure
from tests.conftest import PASSWORD, FakeClock


USER_READ = 3
SESSION_READ = 14


def create_viewer(store, hasher, username="bob"):
    """Principal holding a single 'viewer' role with user:read."""
    role = store.create_role(Role(name="viewer"), permission_ids=[USER_READ])
    principal = store.create_principal(
        Principal(username=username, email=f"{username}@example.com", password_hash=hasher.hash(PASSWORD)),
        role_ids=[role.id],
    )
    return principal, role


# =============================================================================
# PERMISSION KEYS
# =============================================================================

class TestPermissionKeys:

    def test_parse(self):
        assert parse_permission_key("user:read") == ("user", "read")

    def test_splits_at_first_colon(self):
        assert parse_permission_key("report:export:pdf") == ("report", "export:pdf")

    @pytest.mark.parametrize("key", ["", "nocolon", ":read", "user:"])
    def test_invalid(self, key):
        with pytest.raises(ValidationFailure):
            parse_permission_key(key)


# =============================================================================
# DECISIONS
# =============================================================================

class TestRBACPolicy:
    """Deny-by-default decisions over the Principal Store."""

    @pytest.mark.asyncio
    async def test_admin_has_admin_permissions(self, authz):
        assert await authz.check_permission(1, "user", "delete") is True
        assert await authz.check_role(1, "admin") is True

    @pytest.mark.asyncio
    async def test_viewer_limited_permissions(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)

        assert await authz.check_permission(bob.id, "user", "read") is True
        assert await authz.check_permission(bob.id, "user", "delete") is False

    @pytest.mark.asyncio
    async def test_no_roles_denied(self, authz, store, hasher):
        principal = store.create_principal(
            Principal(username="carol", email="carol@example.com", password_hash=hasher.hash(PASSWORD)),
        )

        assert await authz.effective_permissions(principal.id) == frozenset()
        with pytest.raises(PermissionDenied):
            await authz.require_permission(principal.id, "user", "read")

    @pytest.mark.asyncio
    async def test_unknown_principal_denied(self, authz):
        assert await authz.check_permission(999, "user", "read") is False
        assert await authz.is_principal_active(999) is False

    @pytest.mark.asyncio
    async def test_matching_is_exact(self, authz):
        """The reserved '*:*' permission is a literal key, not a wildcard."""
        assert await authz.check_permission(1, "*", "*") is True
        assert await authz.check_permission(1, "scan", "read") is False

    @pytest.mark.asyncio
    async def test_disabled_principal_denied(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)
        store.update_principal(bob.id, {"status": Status.DISABLED})
        authz.invalidate(bob.id)

        assert await authz.check_permission(bob.id, "user", "read") is False
        assert await authz.is_principal_active(bob.id) is False

    @pytest.mark.asyncio
    async def test_deleted_principal_denied(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)
        store.soft_delete_principal(bob.id)
        authz.invalidate(bob.id)

        assert await authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_disabled_role_grants_nothing(self, authz, store, hasher):
        bob, role = create_viewer(store, hasher)
        store.update_role(role.id, {"status": Status.DISABLED})
        authz.clear()

        assert await authz.check_role(bob.id, "viewer") is False
        assert await authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_disabled_permission_grants_nothing(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)
        store.update_permission(USER_READ, {"status": Status.DISABLED})
        authz.clear()

        assert await authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_repeated_checks_agree(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)
        results = [await authz.check_permission(bob.id, "user", "read") for _ in range(5)]

        assert results == [True] * 5


class TestRoleChecks:

    @pytest.mark.asyncio
    async def test_any_role(self, authz):
        assert await authz.check_any_role(1, ["viewer", "admin"]) is True
        assert await authz.check_any_role(1, ["viewer"]) is False
        assert await authz.check_any_role(1, []) is False

    @pytest.mark.asyncio
    async def test_all_roles(self, authz, store):
        assert await authz.check_all_roles(1, ["admin"]) is True
        assert await authz.check_all_roles(1, ["admin", "user"]) is False
        assert await authz.check_all_roles(1, []) is False

        store.assign_role(1, 2)
        authz.invalidate(1)
        assert await authz.check_all_roles(1, ["admin", "user"]) is True


# =============================================================================
# DECISION CACHE
# =============================================================================

class TestDecisionCache:
    """Grants are reused only while the cached password version matches."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def cached_authz(self, store, session_store, clock):
        return AuthorizationService(store, session_store, cache_ttl=30, clock=clock)

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, cached_authz, store, session_store, hasher, clock):
        bob, role = create_viewer(store, hasher)
        await session_store.store_password_version(bob.id, 1, 60)
        assert await cached_authz.check_permission(bob.id, "user", "read") is True

        store.remove_role(bob.id, role.id)
        assert await cached_authz.check_permission(bob.id, "user", "read") is True

        clock.advance(31)
        assert await cached_authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_missing_cached_version_bypasses_cache(self, cached_authz, store, hasher):
        bob, role = create_viewer(store, hasher)
        assert await cached_authz.check_permission(bob.id, "user", "read") is True

        store.remove_role(bob.id, role.id)
        assert await cached_authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_version_bump_bypasses_cache(self, cached_authz, store, session_store, hasher):
        bob, role = create_viewer(store, hasher)
        await session_store.store_password_version(bob.id, 1, 60)
        assert await cached_authz.check_permission(bob.id, "user", "read") is True

        store.remove_role(bob.id, role.id)
        version = store.increment_password_version(bob.id)
        await session_store.store_password_version(bob.id, version, 60)

        assert await cached_authz.check_permission(bob.id, "user", "read") is False

    @pytest.mark.asyncio
    async def test_zero_ttl_disables_cache(self, store, session_store, hasher):
        authz = AuthorizationService(store, session_store, cache_ttl=0)
        bob, role = create_viewer(store, hasher)
        await session_store.store_password_version(bob.id, 1, 60)
        assert await authz.check_permission(bob.id, "user", "read") is True

        store.remove_role(bob.id, role.id)
        assert await authz.check_permission(bob.id, "user", "read") is False


# =============================================================================
# ROLE AND PERMISSION ADMINISTRATION
# =============================================================================

class TestRoleService:

    @pytest.mark.asyncio
    async def test_create_and_get(self, role_service):
        info = await role_service.create_role(CreateRoleRequest(name="viewer", permission_ids=[USER_READ]))

        assert info.name == "viewer"
        assert [p.name for p in info.permissions] == ["user:read"]
        assert (await role_service.get_role_by_name("viewer")).id == info.id

    @pytest.mark.asyncio
    async def test_empty_name(self, role_service):
        with pytest.raises(ValidationFailure):
            await role_service.create_role(CreateRoleRequest(name="  "))

    @pytest.mark.asyncio
    async def test_duplicate_name(self, role_service):
        with pytest.raises(AlreadyExists):
            await role_service.create_role(CreateRoleRequest(name="admin"))

    @pytest.mark.asyncio
    async def test_update_replaces_permissions(self, role_service):
        info = await role_service.create_role(CreateRoleRequest(name="viewer", permission_ids=[USER_READ]))
        updated = await role_service.update_role(
            info.id, RolePatch(description="read-only", permission_ids=[SESSION_READ]),
        )

        assert updated.description == "read-only"
        assert [p.name for p in updated.permissions] == ["session:read"]

    @pytest.mark.asyncio
    async def test_role_mutation_clears_decisions(self, role_service, authz, store, hasher):
        bob, role = create_viewer(store, hasher)
        assert await authz.check_permission(bob.id, "user", "read") is True

        await role_service.remove_permission(role.id, USER_READ)
        assert await authz.check_permission(bob.id, "user", "read") is False

        await role_service.assign_permission(role.id, USER_READ)
        assert await authz.check_permission(bob.id, "user", "read") is True

    @pytest.mark.asyncio
    async def test_deactivate_and_activate(self, role_service):
        info = await role_service.create_role(CreateRoleRequest(name="viewer"))

        assert (await role_service.deactivate_role(info.id)).status == Status.DISABLED
        assert (await role_service.activate_role(info.id)).status == Status.ENABLED

    @pytest.mark.asyncio
    async def test_bootstrap_role_protected(self, role_service):
        with pytest.raises(ProtectedEntity):
            await role_service.deactivate_role(1)
        with pytest.raises(ProtectedEntity):
            await role_service.delete_role(1)

    @pytest.mark.asyncio
    async def test_list_roles(self, role_service):
        page = await role_service.list_roles()

        assert page.total == 2
        assert [r.name for r in page.items] == ["admin", "user"]


class TestPermissionService:

    @pytest.mark.asyncio
    async def test_create_update_delete(self, permission_service):
        info = await permission_service.create_permission(
            CreatePermissionRequest(name="scan:run", resource="scan", action="run"),
        )
        updated = await permission_service.update_permission(info.id, PermissionPatch(display_name="Run scans"))
        assert updated.display_name == "Run scans"

        await permission_service.delete_permission(info.id)
        page = await permission_service.list_permissions(limit=100)
        assert info.id not in [p.id for p in page.items]

    @pytest.mark.asyncio
    async def test_permission_roles(self, permission_service):
        roles = await permission_service.get_permission_roles(USER_READ)

        assert [r.name for r in roles] == ["admin"]

    @pytest.mark.asyncio
    async def test_reserved_permission_protected(self, permission_service):
        with pytest.raises(ProtectedEntity):
            await permission_service.update_permission(1, PermissionPatch(status=Status.DISABLED))
        with pytest.raises(ProtectedEntity):
            await permission_service.delete_permission(1)

    @pytest.mark.asyncio
    async def test_lookup_by_name(self, permission_service):
        info = await permission_service.get_permission_by_name("session:revoke")

        assert (info.resource, info.action) == ("session", "revoke")


# =============================================================================
# ROUTE DEPENDENCIES
# =============================================================================

def authenticated(principal_id: int, username: str) -> AuthenticatedPrincipal:
    return AuthenticatedPrincipal(
        principal_id=principal_id, username=username, password_version=1, token_id="jti",
    )


class TestRouteDependencies:
    """require_permission / require_role decide against the store, not the claims."""

    @pytest.mark.asyncio
    async def test_require_role_admits_holder(self, authz):
        check = require_role("viewer", "admin")

        principal = await check(principal=authenticated(1, "admin"), authz=authz)

        assert principal.principal_id == 1

    @pytest.mark.asyncio
    async def test_require_role_denies_others(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)
        check = require_role("admin")

        with pytest.raises(PermissionDenied):
            await check(principal=authenticated(bob.id, "bob"), authz=authz)

    @pytest.mark.asyncio
    async def test_require_permission_admits_grant(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)

        principal = await require_permission("user", "read")(principal=authenticated(bob.id, "bob"), authz=authz)

        assert principal.username == "bob"

    @pytest.mark.asyncio
    async def test_require_permission_admin_bypass(self, authz):
        check = require_permission("scan", "run")

        assert (await check(principal=authenticated(1, "admin"), authz=authz)).principal_id == 1

    @pytest.mark.asyncio
    async def test_require_permission_denies(self, authz, store, hasher):
        bob, _ = create_viewer(store, hasher)

        with pytest.raises(PermissionDenied):
            await require_permission("user", "delete")(principal=authenticated(bob.id, "bob"), authz=authz)
