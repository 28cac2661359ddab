"""
ScanMaster - Principal Store Tests

Transactional CRUD, cascade deletion, compare-and-swap password updates
and bootstrap protection against in-memory SQLite.

Run with: pytest tests/test_repository.py -v
"""

import pytest

from scanmaster.auth.database import init_db
from scanmaster.auth.models import Permission, Principal, Role, Status
from scanmaster.auth.repository import clamp_page
from scanmaster.errors import (
    AlreadyExists,
    NotFound,
    ProtectedEntity,
    RoleNotFound,
    Stale,
    ValidationFailure,
)
from tests.conftest import PASSWORD


def make_principal(hasher, username="alice", email="alice@example.com") -> Principal:
    return Principal(username=username, email=email, password_hash=hasher.hash(PASSWORD))


# =============================================================================
# BOOTSTRAP
# =============================================================================

class TestBootstrapSeed:
    """init_db seeds the protected id=1 rows."""

    def test_bootstrap_rows_exist(self, store):
        assert store.get_principal(1).username == "admin"
        assert store.get_role(1).name == "admin"
        assert store.get_permission(1).resource == "*"

    def test_bootstrap_admin_holds_admin_role(self, store):
        access = store.get_principal_with_access(1)

        assert access.role_names() == ["admin"]
        assert "user:delete" in access.permission_keys()

    def test_seed_is_idempotent(self, engine, store, hasher):
        init_db(engine, hasher=hasher)

        _, role_total = store.list_roles()
        _, principal_total = store.list_principals()
        assert role_total == 2
        assert principal_total == 1

    def test_ping(self, store):
        assert store.ping() is True


# =============================================================================
# PRINCIPALS
# =============================================================================

class TestPrincipals:
    """Principal CRUD."""

    def test_create_with_roles(self, store, hasher):
        principal = store.create_principal(make_principal(hasher), role_ids=[2])

        assert principal.id is not None
        assert principal.password_version == 1
        assert principal.status == Status.ENABLED
        assert [r.name for r in store.get_principal_roles(principal.id)] == ["user"]

    def test_email_is_lowercased(self, store, hasher):
        store.create_principal(make_principal(hasher, email="Alice@Example.COM"))

        assert store.get_principal_by_email("ALICE@example.com").username == "alice"

    def test_duplicate_username(self, store, hasher):
        store.create_principal(make_principal(hasher))

        with pytest.raises(AlreadyExists):
            store.create_principal(make_principal(hasher, email="other@example.com"))

    def test_duplicate_email_case_insensitive(self, store, hasher):
        store.create_principal(make_principal(hasher))

        with pytest.raises(AlreadyExists):
            store.create_principal(make_principal(hasher, username="alice2", email="ALICE@example.com"))

    def test_missing_role_creates_nothing(self, store, hasher):
        with pytest.raises(RoleNotFound):
            store.create_principal(make_principal(hasher), role_ids=[999])

        with pytest.raises(NotFound):
            store.get_principal_by_username("alice")

    def test_update_fields(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        updated = store.update_principal(principal.id, {"nickname": "Al", "email": "NEW@example.com"})

        assert updated.nickname == "Al"
        assert updated.email == "new@example.com"

    def test_update_rejects_unknown_fields(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))

        with pytest.raises(ValidationFailure):
            store.update_principal(principal.id, {"password_version": 99})

    def test_update_replaces_role_set(self, store, hasher):
        principal = store.create_principal(make_principal(hasher), role_ids=[2])
        store.update_principal(principal.id, {}, role_ids=[1])

        assert [r.id for r in store.get_principal_roles(principal.id)] == [1]

    def test_list_principals_paginates(self, store, hasher):
        for i in range(3):
            store.create_principal(make_principal(hasher, f"user{i}", f"user{i}@example.com"))

        page, total = store.list_principals(offset=0, limit=2)

        assert total == 4
        assert len(page) == 2
        assert page[0].id == 1

    def test_clamp_page(self):
        assert clamp_page(-5, 0) == (0, 20)
        assert clamp_page(10, 500) == (10, 100)
        assert clamp_page(None, None) == (0, 20)


# =============================================================================
# PASSWORD VERSIONS
# =============================================================================

class TestPasswordVersion:
    """Durable, monotonic password versions."""

    def test_compare_and_swap_success(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        version = store.update_password_with_version(principal.id, hasher.hash("N3wPassword"), 1)

        assert version == 2
        assert hasher.verify("N3wPassword", store.get_principal(principal.id).password_hash)

    def test_compare_and_swap_conflict(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        store.update_password_with_version(principal.id, hasher.hash("N3wPassword"), 1)

        with pytest.raises(Stale):
            store.update_password_with_version(principal.id, hasher.hash("0therPassword"), 1)
        assert store.get_password_version(principal.id) == 2

    def test_unconditional_update(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))

        assert store.update_password_with_version(principal.id, hasher.hash("N3wPassword")) == 2

    def test_missing_principal(self, store, hasher):
        with pytest.raises(NotFound):
            store.update_password_with_version(999, hasher.hash("N3wPassword"), 1)

    def test_increment_is_monotonic(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        observed = [store.get_password_version(principal.id)]
        for _ in range(3):
            observed.append(store.increment_password_version(principal.id))

        assert observed == [1, 2, 3, 4]

    def test_rehash_keeps_version(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        store.update_password_hash(principal.id, hasher.hash(PASSWORD))

        assert store.get_password_version(principal.id) == 1


# =============================================================================
# CASCADES
# =============================================================================

class TestCascadeDeletion:
    """No join rows survive a deletion."""

    def test_soft_delete_principal(self, store, hasher):
        principal = store.create_principal(make_principal(hasher), role_ids=[2])
        store.soft_delete_principal(principal.id)

        with pytest.raises(NotFound):
            store.get_principal(principal.id)
        access = store.get_principal_with_access(principal.id)
        assert access.deleted is True
        assert access.roles == []

    def test_soft_deleted_names_stay_reserved(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        store.soft_delete_principal(principal.id)

        assert store.exists_by_username_or_email("alice", "x@example.com") is True
        with pytest.raises(AlreadyExists):
            store.create_principal(make_principal(hasher))

    def test_delete_twice(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        store.soft_delete_principal(principal.id)

        with pytest.raises(NotFound):
            store.soft_delete_principal(principal.id)

    def test_delete_role(self, store, hasher):
        role = store.create_role(Role(name="viewer"), permission_ids=[3])
        principal = store.create_principal(make_principal(hasher), role_ids=[role.id])
        store.delete_role(role.id)

        with pytest.raises(RoleNotFound):
            store.get_role(role.id)
        assert store.get_principal_roles(principal.id) == []
        assert role.id not in [r.id for r in store.get_permission_roles(3)]

    def test_delete_permission(self, store):
        permission = store.create_permission(Permission(name="scan:run", resource="scan", action="run"))
        store.assign_permission(2, permission.id)
        store.delete_permission(permission.id)

        with pytest.raises(NotFound):
            store.get_permission(permission.id)
        assert permission.id not in [p.id for p in store.get_role_permissions(2)]


# =============================================================================
# ROLES AND PERMISSIONS
# =============================================================================

class TestRolesAndPermissions:
    """Role/permission CRUD and joins."""

    def test_duplicate_role_name(self, store):
        with pytest.raises(AlreadyExists):
            store.create_role(Role(name="admin"))

    def test_duplicate_permission_key(self, store):
        with pytest.raises(AlreadyExists):
            store.create_permission(Permission(name="user:read:again", resource="user", action="read"))

    def test_assign_role_is_idempotent(self, store, hasher):
        principal = store.create_principal(make_principal(hasher))
        store.assign_role(principal.id, 2)
        store.assign_role(principal.id, 2)

        assert [r.id for r in store.get_principal_roles(principal.id)] == [2]

    def test_effective_permissions_are_distinct(self, store, hasher):
        reader = store.create_role(Role(name="reader"), permission_ids=[3])
        auditor = store.create_role(Role(name="auditor"), permission_ids=[3, 14])
        principal = store.create_principal(make_principal(hasher), role_ids=[reader.id, auditor.id])

        keys = [p.key for p in store.get_principal_permissions(principal.id)]
        assert keys == ["user:read", "session:read"]

    def test_disabled_role_contributes_nothing(self, store, hasher):
        role = store.create_role(Role(name="viewer"), permission_ids=[3])
        principal = store.create_principal(make_principal(hasher), role_ids=[role.id])
        store.update_role(role.id, {"status": Status.DISABLED})

        access = store.get_principal_with_access(principal.id)
        assert access.role_names() == []
        assert access.permission_keys() == []

    def test_missing_permission_in_role(self, store):
        with pytest.raises(NotFound):
            store.create_role(Role(name="viewer"), permission_ids=[999])


# =============================================================================
# BOOTSTRAP PROTECTION
# =============================================================================

class TestBootstrapProtection:
    """Mutations that would delete or disable id=1 rows are refused."""

    def test_principal_cannot_be_deleted(self, store):
        with pytest.raises(ProtectedEntity):
            store.soft_delete_principal(1)

    def test_principal_cannot_be_disabled(self, store):
        with pytest.raises(ProtectedEntity):
            store.update_principal(1, {"status": Status.DISABLED})
        assert store.get_principal(1).status == Status.ENABLED

    def test_principal_keeps_admin_role(self, store):
        with pytest.raises(ProtectedEntity):
            store.remove_role(1, 1)
        with pytest.raises(ProtectedEntity):
            store.update_principal(1, {}, role_ids=[2])

    def test_role_cannot_be_deleted_or_disabled(self, store):
        with pytest.raises(ProtectedEntity):
            store.delete_role(1)
        with pytest.raises(ProtectedEntity):
            store.update_role(1, {"status": Status.DISABLED})

    def test_role_keeps_reserved_permission(self, store):
        with pytest.raises(ProtectedEntity):
            store.remove_permission(1, 1)
        with pytest.raises(ProtectedEntity):
            store.update_role(1, {}, permission_ids=[2])

    def test_permission_is_immutable(self, store):
        with pytest.raises(ProtectedEntity):
            store.delete_permission(1)
        with pytest.raises(ProtectedEntity):
            store.update_permission(1, {"status": Status.DISABLED})
