"""
ScanMaster - Principal Store

Durable storage for principals, roles, permissions and their joins.

Every public method runs in its own transaction:
- Any exception rolls the transaction back
- IntegrityError surfaces as AlreadyExists
- Other SQLAlchemy errors surface as Unavailable
- Anything unexpected surfaces as Internal

Methods are synchronous; async services call them through the threadpool.
SQLite engines share a single connection, so transactions are serialized
with a re-entrant lock.
"""

import threading
import time
from contextlib import contextmanager, nullcontext
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import delete, func, or_, text, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session, select

from scanmaster.auth.models import (
    BOOTSTRAP_PERMISSION_ID,
    BOOTSTRAP_PRINCIPAL_ID,
    BOOTSTRAP_ROLE_ID,
    Permission,
    PermissionKey,
    Principal,
    PrincipalAccess,
    PrincipalRole,
    Role,
    RoleAccess,
    RolePermission,
    Status,
)
from scanmaster.errors import (
    AlreadyExists,
    AuthError,
    Internal,
    NotFound,
    ProtectedEntity,
    RoleNotFound,
    Stale,
    Unavailable,
    ValidationFailure,
)


DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Optimistic retries for cascade deletes that lose a lock race
DEADLOCK_RETRIES = 3

PRINCIPAL_FIELDS = {"username", "email", "nickname", "avatar", "phone", "remark", "status"}
ROLE_FIELDS = {"name", "display_name", "description", "status"}
PERMISSION_FIELDS = {"name", "display_name", "description", "resource", "action", "status"}


def clamp_page(offset: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
    """
    Normalize pagination input.

    Returns:
        (offset >= 0, 1 <= limit <= MAX_PAGE_SIZE); a missing or
        non-positive limit falls back to DEFAULT_PAGE_SIZE
    """
    offset = max(0, offset or 0)
    if not limit or limit < 1:
        limit = DEFAULT_PAGE_SIZE
    return offset, min(limit, MAX_PAGE_SIZE)


class PrincipalStore:
    """
    Transactional CRUD over the identity tables.

    Returned model instances are detached: their columns stay readable
    after the transaction closes, relationships are never lazy-loaded.
    """

    def __init__(self, engine):
        self.engine = engine
        if engine.dialect.name == "sqlite":
            self._lock = threading.RLock()
        else:
            self._lock = nullcontext()

    # =========================================================================
    # Transaction plumbing
    # =========================================================================

    @contextmanager
    def _transaction(self):
        with self._lock:
            db = Session(self.engine, expire_on_commit=False)
            try:
                yield db
                db.commit()
            except AuthError:
                db.rollback()
                raise
            except IntegrityError as exc:
                db.rollback()
                raise AlreadyExists(f"principal store: constraint violated: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                db.rollback()
                raise Unavailable(f"principal store: {exc}") from exc
            except Exception as exc:
                db.rollback()
                raise Internal(f"principal store: {exc}") from exc
            finally:
                db.close()

    def _retrying(self, operation, *args):
        """Run a write operation, retrying when the database reports a lock conflict."""
        for attempt in range(1, DEADLOCK_RETRIES + 1):
            try:
                return operation(*args)
            except Unavailable as exc:
                if not isinstance(exc.__cause__, OperationalError) or attempt == DEADLOCK_RETRIES:
                    raise
                logger.warning(
                    "Principal store conflict on attempt {}/{}: {}",
                    attempt, DEADLOCK_RETRIES, exc.message,
                )
                time.sleep(0.05 * attempt)

    def ping(self) -> bool:
        """Round-trip a trivial query; raises Unavailable when the database is down."""
        with self._transaction() as db:
            db.connection().execute(text("SELECT 1"))
        return True

    # =========================================================================
    # Principals
    # =========================================================================

    def create_principal(self, principal: Principal, role_ids: Iterable[int] = ()) -> Principal:
        """
        Insert a principal and, in the same transaction, its role joins.

        Raises:
            AlreadyExists: Username or email already taken
            RoleNotFound: Any of role_ids does not exist
        """
        role_ids = list(dict.fromkeys(role_ids))
        principal.email = principal.email.lower()
        with self._transaction() as db:
            if self._principal_taken(db, principal.username, principal.email):
                raise AlreadyExists("username or email already exists")
            self._require_roles(db, role_ids)

            db.add(principal)
            db.flush()
            for role_id in role_ids:
                db.add(PrincipalRole(principal_id=principal.id, role_id=role_id))
            db.flush()
            db.refresh(principal)
            return principal

    def get_principal(self, principal_id: int) -> Principal:
        """Raises NotFound for missing and soft-deleted principals."""
        with self._transaction() as db:
            return self._load_principal(db, principal_id)

    def get_principal_by_username(self, username: str) -> Principal:
        with self._transaction() as db:
            principal = db.exec(
                select(Principal).where(
                    Principal.username == username,
                    Principal.deleted_at.is_(None),
                )
            ).first()
            if principal is None:
                raise NotFound(f"principal {username!r} not found")
            return principal

    def get_principal_by_email(self, email: str) -> Principal:
        with self._transaction() as db:
            principal = db.exec(
                select(Principal).where(
                    Principal.email == (email or "").lower(),
                    Principal.deleted_at.is_(None),
                )
            ).first()
            if principal is None:
                raise NotFound(f"principal with email {email!r} not found")
            return principal

    def list_principals(self, offset: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Principal], int]:
        """
        Page through non-deleted principals ordered by id.

        Returns:
            (page, total)
        """
        offset, limit = clamp_page(offset, limit)
        with self._transaction() as db:
            total = db.exec(
                select(func.count()).select_from(Principal).where(Principal.deleted_at.is_(None))
            ).one()
            page = db.exec(
                select(Principal)
                .where(Principal.deleted_at.is_(None))
                .order_by(Principal.id)
                .offset(offset)
                .limit(limit)
            ).all()
            return list(page), total

    def update_principal(
        self,
        principal_id: int,
        fields: Dict[str, object],
        role_ids: Optional[Iterable[int]] = None,
        password_hash: Optional[str] = None,
    ) -> Principal:
        """
        Apply a partial update in one transaction.

        Args:
            principal_id: Target principal
            fields: Column patch (subset of PRINCIPAL_FIELDS)
            role_ids: When not None, replaces the principal's role set
            password_hash: When given, stored and the password version bumped

        Raises:
            NotFound: Principal missing or deleted
            ProtectedEntity: Disabling the bootstrap principal or stripping its admin role
            AlreadyExists: New username/email collides with another principal
            RoleNotFound: Any of role_ids does not exist
        """
        unknown = set(fields) - PRINCIPAL_FIELDS
        if unknown:
            raise ValidationFailure(f"unknown principal fields: {', '.join(sorted(unknown))}")

        with self._transaction() as db:
            principal = self._load_principal(db, principal_id)

            if principal_id == BOOTSTRAP_PRINCIPAL_ID and "status" in fields \
                    and fields["status"] != Status.ENABLED:
                raise ProtectedEntity("the bootstrap principal cannot be disabled")

            username = fields.get("username", principal.username)
            email = str(fields.get("email", principal.email)).lower()
            if (username != principal.username or email != principal.email) and \
                    self._principal_taken(db, username, email, exclude_id=principal_id):
                raise AlreadyExists("username or email already exists")

            for name, value in fields.items():
                setattr(principal, name, email if name == "email" else value)
            principal.updated_at = datetime.utcnow()
            db.add(principal)

            if role_ids is not None:
                role_ids = list(dict.fromkeys(role_ids))
                if principal_id == BOOTSTRAP_PRINCIPAL_ID and BOOTSTRAP_ROLE_ID not in role_ids:
                    raise ProtectedEntity("the bootstrap principal must keep the admin role")
                self._require_roles(db, role_ids)
                db.connection().execute(
                    delete(PrincipalRole).where(PrincipalRole.principal_id == principal_id)
                )
                for role_id in role_ids:
                    db.add(PrincipalRole(principal_id=principal_id, role_id=role_id))

            db.flush()
            if password_hash is not None:
                self._bump_password(db, principal_id, password_hash)

            db.refresh(principal)
            return principal

    def soft_delete_principal(self, principal_id: int) -> None:
        """
        Remove the principal's role joins, then mark it deleted.

        Raises:
            ProtectedEntity: principal_id is the bootstrap principal
            NotFound: Principal missing or already deleted
        """
        if principal_id == BOOTSTRAP_PRINCIPAL_ID:
            raise ProtectedEntity("the bootstrap principal cannot be deleted")
        self._retrying(self._soft_delete_principal, principal_id)

    def _soft_delete_principal(self, principal_id: int) -> None:
        with self._transaction() as db:
            principal = self._load_principal(db, principal_id)
            db.connection().execute(
                delete(PrincipalRole).where(PrincipalRole.principal_id == principal_id)
            )
            principal.deleted_at = datetime.utcnow()
            principal.updated_at = principal.deleted_at
            db.add(principal)

    def update_password_with_version(
        self,
        principal_id: int,
        password_hash: str,
        expected_version: Optional[int] = None,
    ) -> int:
        """
        Store a new password hash and bump the version in a single UPDATE.

        Args:
            expected_version: When given, the update only applies if the
                stored version still equals it (compare-and-swap)

        Returns:
            The new password version

        Raises:
            NotFound: Principal missing or deleted
            Stale: expected_version no longer matches
        """
        with self._transaction() as db:
            return self._bump_password(db, principal_id, password_hash, expected_version)

    def increment_password_version(self, principal_id: int) -> int:
        """Atomically bump the password version; returns the new value."""
        with self._transaction() as db:
            result = db.connection().execute(
                update(Principal)
                .where(Principal.id == principal_id, Principal.deleted_at.is_(None))
                .values(password_version=Principal.password_version + 1)
            )
            if result.rowcount == 0:
                raise NotFound(f"principal {principal_id} not found")
            return self._read_version(db, principal_id)

    def get_password_version(self, principal_id: int) -> int:
        with self._transaction() as db:
            return self._load_principal(db, principal_id).password_version

    def update_last_login(self, principal_id: int, client_ip: str) -> None:
        now = datetime.utcnow()
        with self._transaction() as db:
            db.connection().execute(
                update(Principal)
                .where(Principal.id == principal_id)
                .values(last_login_at=now, last_login_ip=(client_ip or "")[:45])
            )

    def update_password_hash(self, principal_id: int, password_hash: str) -> None:
        """Replace the stored hash without touching the version (work-factor upgrade)."""
        with self._transaction() as db:
            db.connection().execute(
                update(Principal)
                .where(Principal.id == principal_id)
                .values(password_hash=password_hash)
            )

    def exists_by_username_or_email(
        self,
        username: str,
        email: str,
        exclude_id: Optional[int] = None,
    ) -> bool:
        """
        True when another principal holds username or email.

        Soft-deleted principals count: their identifiers stay reserved.
        """
        with self._transaction() as db:
            return self._principal_taken(db, username, email, exclude_id)

    # =========================================================================
    # Roles
    # =========================================================================

    def create_role(self, role: Role, permission_ids: Iterable[int] = ()) -> Role:
        """
        Raises:
            AlreadyExists: Role name taken
            NotFound: Any of permission_ids does not exist
        """
        permission_ids = list(dict.fromkeys(permission_ids))
        with self._transaction() as db:
            if db.exec(select(Role).where(Role.name == role.name)).first() is not None:
                raise AlreadyExists(f"role {role.name!r} already exists")
            self._require_permissions(db, permission_ids)
            db.add(role)
            db.flush()
            for permission_id in permission_ids:
                db.add(RolePermission(role_id=role.id, permission_id=permission_id))
            db.flush()
            db.refresh(role)
            return role

    def get_role(self, role_id: int) -> Role:
        with self._transaction() as db:
            return self._load_role(db, role_id)

    def get_role_by_name(self, name: str) -> Role:
        with self._transaction() as db:
            role = db.exec(select(Role).where(Role.name == name)).first()
            if role is None:
                raise RoleNotFound(f"role {name!r} not found")
            return role

    def list_roles(self, offset: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Role], int]:
        offset, limit = clamp_page(offset, limit)
        with self._transaction() as db:
            total = db.exec(select(func.count()).select_from(Role)).one()
            page = db.exec(select(Role).order_by(Role.id).offset(offset).limit(limit)).all()
            return list(page), total

    def update_role(
        self,
        role_id: int,
        fields: Dict[str, object],
        permission_ids: Optional[Iterable[int]] = None,
    ) -> Role:
        """
        Raises:
            RoleNotFound: Role missing
            ProtectedEntity: Disabling the bootstrap role or stripping its reserved permission
            AlreadyExists: New name collides with another role
        """
        unknown = set(fields) - ROLE_FIELDS
        if unknown:
            raise ValidationFailure(f"unknown role fields: {', '.join(sorted(unknown))}")

        with self._transaction() as db:
            role = self._load_role(db, role_id)

            if role_id == BOOTSTRAP_ROLE_ID and "status" in fields and fields["status"] != Status.ENABLED:
                raise ProtectedEntity("the bootstrap role cannot be disabled")

            name = fields.get("name", role.name)
            if name != role.name and db.exec(
                select(Role).where(Role.name == name, Role.id != role_id)
            ).first() is not None:
                raise AlreadyExists(f"role {name!r} already exists")

            for key, value in fields.items():
                setattr(role, key, value)
            role.updated_at = datetime.utcnow()
            db.add(role)

            if permission_ids is not None:
                permission_ids = list(dict.fromkeys(permission_ids))
                if role_id == BOOTSTRAP_ROLE_ID and BOOTSTRAP_PERMISSION_ID not in permission_ids:
                    raise ProtectedEntity("the bootstrap role must keep the reserved permission")
                self._require_permissions(db, permission_ids)
                db.connection().execute(
                    delete(RolePermission).where(RolePermission.role_id == role_id)
                )
                for permission_id in permission_ids:
                    db.add(RolePermission(role_id=role_id, permission_id=permission_id))

            db.flush()
            db.refresh(role)
            return role

    def delete_role(self, role_id: int) -> None:
        """
        Hard-delete a role together with its principal and permission joins.

        Raises:
            ProtectedEntity: role_id is the bootstrap role
            RoleNotFound: Role missing
        """
        if role_id == BOOTSTRAP_ROLE_ID:
            raise ProtectedEntity("the bootstrap role cannot be deleted")
        self._retrying(self._delete_role, role_id)

    def _delete_role(self, role_id: int) -> None:
        with self._transaction() as db:
            role = self._load_role(db, role_id)
            conn = db.connection()
            conn.execute(delete(PrincipalRole).where(PrincipalRole.role_id == role_id))
            conn.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
            db.delete(role)

    def get_role_permissions(self, role_id: int) -> List[Permission]:
        with self._transaction() as db:
            self._load_role(db, role_id)
            return list(db.exec(
                select(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .where(RolePermission.role_id == role_id)
                .order_by(Permission.id)
            ).all())

    # =========================================================================
    # Permissions
    # =========================================================================

    def create_permission(self, permission: Permission) -> Permission:
        """
        Raises:
            AlreadyExists: Name or (resource, action) pair taken
        """
        with self._transaction() as db:
            if self._permission_taken(db, permission.name, permission.resource, permission.action):
                raise AlreadyExists(
                    f"permission {permission.name!r} or {permission.key!r} already exists"
                )
            db.add(permission)
            db.flush()
            db.refresh(permission)
            return permission

    def get_permission(self, permission_id: int) -> Permission:
        with self._transaction() as db:
            return self._load_permission(db, permission_id)

    def get_permission_by_name(self, name: str) -> Permission:
        with self._transaction() as db:
            permission = db.exec(select(Permission).where(Permission.name == name)).first()
            if permission is None:
                raise NotFound(f"permission {name!r} not found")
            return permission

    def list_permissions(self, offset: int = 0, limit: int = DEFAULT_PAGE_SIZE) -> Tuple[List[Permission], int]:
        offset, limit = clamp_page(offset, limit)
        with self._transaction() as db:
            total = db.exec(select(func.count()).select_from(Permission)).one()
            page = db.exec(
                select(Permission).order_by(Permission.id).offset(offset).limit(limit)
            ).all()
            return list(page), total

    def update_permission(self, permission_id: int, fields: Dict[str, object]) -> Permission:
        """
        Raises:
            ProtectedEntity: permission_id is the reserved permission
            NotFound: Permission missing
            AlreadyExists: New name or (resource, action) collides
        """
        if permission_id == BOOTSTRAP_PERMISSION_ID:
            raise ProtectedEntity("the reserved permission cannot be modified")
        unknown = set(fields) - PERMISSION_FIELDS
        if unknown:
            raise ValidationFailure(f"unknown permission fields: {', '.join(sorted(unknown))}")

        with self._transaction() as db:
            permission = self._load_permission(db, permission_id)
            name = fields.get("name", permission.name)
            resource = fields.get("resource", permission.resource)
            action = fields.get("action", permission.action)
            if self._permission_taken(db, name, resource, action, exclude_id=permission_id):
                raise AlreadyExists(f"permission {name!r} or {resource}:{action} already exists")

            for key, value in fields.items():
                setattr(permission, key, value)
            permission.updated_at = datetime.utcnow()
            db.add(permission)
            db.flush()
            db.refresh(permission)
            return permission

    def delete_permission(self, permission_id: int) -> None:
        """Hard-delete a permission and its role joins."""
        if permission_id == BOOTSTRAP_PERMISSION_ID:
            raise ProtectedEntity("the reserved permission cannot be deleted")
        self._retrying(self._delete_permission, permission_id)

    def _delete_permission(self, permission_id: int) -> None:
        with self._transaction() as db:
            permission = self._load_permission(db, permission_id)
            db.connection().execute(
                delete(RolePermission).where(RolePermission.permission_id == permission_id)
            )
            db.delete(permission)

    def get_permission_roles(self, permission_id: int) -> List[Role]:
        with self._transaction() as db:
            self._load_permission(db, permission_id)
            return list(db.exec(
                select(Role)
                .join(RolePermission, RolePermission.role_id == Role.id)
                .where(RolePermission.permission_id == permission_id)
                .order_by(Role.id)
            ).all())

    # =========================================================================
    # Joins
    # =========================================================================

    def assign_role(self, principal_id: int, role_id: int) -> None:
        """Idempotent: assigning a role twice leaves one join row."""
        with self._transaction() as db:
            self._load_principal(db, principal_id)
            self._load_role(db, role_id)
            if db.get(PrincipalRole, (principal_id, role_id)) is None:
                db.add(PrincipalRole(principal_id=principal_id, role_id=role_id))

    def remove_role(self, principal_id: int, role_id: int) -> None:
        if principal_id == BOOTSTRAP_PRINCIPAL_ID and role_id == BOOTSTRAP_ROLE_ID:
            raise ProtectedEntity("the bootstrap principal must keep the admin role")
        with self._transaction() as db:
            self._load_principal(db, principal_id)
            self._load_role(db, role_id)
            db.connection().execute(
                delete(PrincipalRole).where(
                    PrincipalRole.principal_id == principal_id,
                    PrincipalRole.role_id == role_id,
                )
            )

    def assign_permission(self, role_id: int, permission_id: int) -> None:
        with self._transaction() as db:
            self._load_role(db, role_id)
            self._load_permission(db, permission_id)
            if db.get(RolePermission, (role_id, permission_id)) is None:
                db.add(RolePermission(role_id=role_id, permission_id=permission_id))

    def remove_permission(self, role_id: int, permission_id: int) -> None:
        if role_id == BOOTSTRAP_ROLE_ID and permission_id == BOOTSTRAP_PERMISSION_ID:
            raise ProtectedEntity("the bootstrap role must keep the reserved permission")
        with self._transaction() as db:
            self._load_role(db, role_id)
            self._load_permission(db, permission_id)
            db.connection().execute(
                delete(RolePermission).where(
                    RolePermission.role_id == role_id,
                    RolePermission.permission_id == permission_id,
                )
            )

    def get_principal_roles(self, principal_id: int) -> List[Role]:
        with self._transaction() as db:
            self._load_principal(db, principal_id)
            return self._roles_of(db, principal_id)

    def get_principal_permissions(self, principal_id: int) -> List[Permission]:
        """Distinct permissions reachable through any of the principal's roles."""
        with self._transaction() as db:
            self._load_principal(db, principal_id)
            return list(db.exec(
                select(Permission)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(PrincipalRole, PrincipalRole.role_id == RolePermission.role_id)
                .where(PrincipalRole.principal_id == principal_id)
                .distinct()
                .order_by(Permission.id)
            ).all())

    def get_principal_with_access(self, principal_id: int) -> PrincipalAccess:
        """
        Snapshot a principal with its roles and each role's permissions.

        Soft-deleted principals are returned with deleted=True so callers
        can deny them explicitly.

        Raises:
            NotFound: No principal row with this id
        """
        with self._transaction() as db:
            principal = db.get(Principal, principal_id)
            if principal is None:
                raise NotFound(f"principal {principal_id} not found")

            roles = self._roles_of(db, principal_id)
            grants: Dict[int, List[PermissionKey]] = {role.id: [] for role in roles}
            if roles:
                rows = db.exec(
                    select(RolePermission.role_id, Permission)
                    .join(Permission, Permission.id == RolePermission.permission_id)
                    .where(RolePermission.role_id.in_(list(grants)))
                    .order_by(Permission.id)
                ).all()
                for role_id, permission in rows:
                    grants[role_id].append(PermissionKey(
                        id=permission.id,
                        resource=permission.resource,
                        action=permission.action,
                        status=permission.status,
                    ))

            return PrincipalAccess(
                id=principal.id,
                username=principal.username,
                email=principal.email,
                status=principal.status,
                password_version=principal.password_version,
                deleted=principal.deleted_at is not None,
                roles=[
                    RoleAccess(id=role.id, name=role.name, status=role.status, permissions=grants[role.id])
                    for role in roles
                ],
            )

    # =========================================================================
    # Helpers (caller holds the transaction)
    # =========================================================================

    def _load_principal(self, db: Session, principal_id: int) -> Principal:
        principal = db.get(Principal, principal_id)
        if principal is None or principal.deleted_at is not None:
            raise NotFound(f"principal {principal_id} not found")
        return principal

    def _load_role(self, db: Session, role_id: int) -> Role:
        role = db.get(Role, role_id)
        if role is None:
            raise RoleNotFound(f"role {role_id} not found")
        return role

    def _load_permission(self, db: Session, permission_id: int) -> Permission:
        permission = db.get(Permission, permission_id)
        if permission is None:
            raise NotFound(f"permission {permission_id} not found")
        return permission

    def _roles_of(self, db: Session, principal_id: int) -> List[Role]:
        return list(db.exec(
            select(Role)
            .join(PrincipalRole, PrincipalRole.role_id == Role.id)
            .where(PrincipalRole.principal_id == principal_id)
            .order_by(Role.id)
        ).all())

    def _require_roles(self, db: Session, role_ids: List[int]) -> None:
        if not role_ids:
            return
        found = set(db.exec(select(Role.id).where(Role.id.in_(role_ids))).all())
        missing = [str(rid) for rid in role_ids if rid not in found]
        if missing:
            raise RoleNotFound(f"roles not found: {', '.join(missing)}")

    def _require_permissions(self, db: Session, permission_ids: List[int]) -> None:
        if not permission_ids:
            return
        found = set(db.exec(select(Permission.id).where(Permission.id.in_(permission_ids))).all())
        missing = [str(pid) for pid in permission_ids if pid not in found]
        if missing:
            raise NotFound(f"permissions not found: {', '.join(missing)}")

    def _principal_taken(
        self,
        db: Session,
        username: str,
        email: str,
        exclude_id: Optional[int] = None,
    ) -> bool:
        statement = select(Principal.id).where(
            or_(Principal.username == username, Principal.email == (email or "").lower())
        )
        if exclude_id is not None:
            statement = statement.where(Principal.id != exclude_id)
        return db.exec(statement).first() is not None

    def _permission_taken(
        self,
        db: Session,
        name: str,
        resource: str,
        action: str,
        exclude_id: Optional[int] = None,
    ) -> bool:
        statement = select(Permission.id).where(
            or_(
                Permission.name == name,
                (Permission.resource == resource) & (Permission.action == action),
            )
        )
        if exclude_id is not None:
            statement = statement.where(Permission.id != exclude_id)
        return db.exec(statement).first() is not None

    def _bump_password(
        self,
        db: Session,
        principal_id: int,
        password_hash: str,
        expected_version: Optional[int] = None,
    ) -> int:
        statement = (
            update(Principal)
            .where(Principal.id == principal_id, Principal.deleted_at.is_(None))
            .values(
                password_hash=password_hash,
                password_version=Principal.password_version + 1,
            )
        )
        if expected_version is not None:
            statement = statement.where(Principal.password_version == expected_version)

        result = db.connection().execute(statement)
        if result.rowcount == 0:
            # Distinguish a lost compare-and-swap from a missing row
            self._load_principal(db, principal_id)
            raise Stale(f"password version of principal {principal_id} changed concurrently")
        return self._read_version(db, principal_id)

    def _read_version(self, db: Session, principal_id: int) -> int:
        return db.exec(
            select(Principal.password_version).where(Principal.id == principal_id)
        ).one()
