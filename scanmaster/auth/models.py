"""
ScanMaster - Identity Database Models

SQLModel-based tables for principals, roles, permissions and their joins.
Uses PostgreSQL/MySQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- password_version is bumped on every password change and logout-all;
  credentials carrying an older version are rejected
- All timestamps in UTC
"""

from datetime import datetime
from enum import IntEnum
from typing import List, Optional

from pydantic import BaseModel
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint


# Bootstrap rows: never deleted, never disabled
BOOTSTRAP_PRINCIPAL_ID = 1
BOOTSTRAP_ROLE_ID = 1
BOOTSTRAP_PERMISSION_ID = 1


class Status(IntEnum):
    """Lifecycle status shared by principals, roles and permissions."""
    DISABLED = 0
    ENABLED = 1


class Principal(SQLModel, table=True):
    """
    Authenticatable identity (human user or service account).

    Attributes:
        id: Unique identifier (autoincrement)
        username: Login identifier (unique)
        email: Alternate login identifier (unique, lowercase)
        password_hash: bcrypt hash (never store plaintext)
        password_version: Monotonic counter embedded in credentials
        status: Enabled principals may authenticate
        last_login_at: Timestamp of last successful login
        last_login_ip: Client IP of last successful login
        deleted_at: Soft-delete marker; deleted principals are invisible
    """
    __tablename__ = "principals"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(
        sa_column=Column(String(50), unique=True, index=True, nullable=False),
    )
    email: str = Field(
        sa_column=Column(String(100), unique=True, index=True, nullable=False),
    )
    password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    password_version: int = Field(
        default=1,
        sa_column=Column(Integer, nullable=False, default=1),
    )
    status: int = Field(
        default=Status.ENABLED,
        sa_column=Column(Integer, nullable=False, default=int(Status.ENABLED)),
    )
    nickname: str = Field(default="", sa_column=Column(String(50), nullable=False, default=""))
    avatar: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))
    phone: str = Field(default="", sa_column=Column(String(20), nullable=False, default=""))
    remark: str = Field(default="", sa_column=Column(String(500), nullable=False, default=""))
    last_login_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    last_login_ip: str = Field(default="", sa_column=Column(String(45), nullable=False, default=""))
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True, index=True),
    )

    @property
    def is_active(self) -> bool:
        return self.status == Status.ENABLED and self.deleted_at is None


class Role(SQLModel, table=True):
    """Named collection of permissions assignable to principals."""
    __tablename__ = "roles"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(50), unique=True, index=True, nullable=False))
    display_name: str = Field(default="", sa_column=Column(String(100), nullable=False, default=""))
    description: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))
    status: int = Field(
        default=Status.ENABLED,
        sa_column=Column(Integer, nullable=False, default=int(Status.ENABLED)),
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    )


class Permission(SQLModel, table=True):
    """
    Atomic authorization key.

    (resource, action) is the canonical key matched by the authorization
    service; name is a unique human-readable label.
    """
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("resource", "action", name="uq_permissions_resource_action"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(sa_column=Column(String(100), unique=True, index=True, nullable=False))
    display_name: str = Field(default="", sa_column=Column(String(100), nullable=False, default=""))
    description: str = Field(default="", sa_column=Column(String(255), nullable=False, default=""))
    resource: str = Field(sa_column=Column(String(100), nullable=False))
    action: str = Field(sa_column=Column(String(50), nullable=False))
    status: int = Field(
        default=Status.ENABLED,
        sa_column=Column(Integer, nullable=False, default=int(Status.ENABLED)),
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow),
    )

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.action}"


class PrincipalRole(SQLModel, table=True):
    """Principal <-> Role join."""
    __tablename__ = "principal_roles"

    principal_id: int = Field(foreign_key="principals.id", primary_key=True)
    role_id: int = Field(foreign_key="roles.id", primary_key=True, index=True)
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )


class RolePermission(SQLModel, table=True):
    """Role <-> Permission join."""
    __tablename__ = "role_permissions"

    role_id: int = Field(foreign_key="roles.id", primary_key=True)
    permission_id: int = Field(foreign_key="permissions.id", primary_key=True, index=True)
    created_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column=Column(DateTime, nullable=False, default=datetime.utcnow),
    )


class RoleAccess(BaseModel):
    """A role together with the permissions it grants (detached snapshot)."""
    id: int
    name: str
    status: int
    permissions: List["PermissionKey"] = []


class PermissionKey(BaseModel):
    id: int
    resource: str
    action: str
    status: int

    @property
    def key(self) -> str:
        return f"{self.resource}:{self.action}"


class PrincipalAccess(BaseModel):
    """
    Detached snapshot of a principal and everything it can do.

    Produced by the Principal Store in one read transaction so services
    never touch lazy relationships outside a database session.
    """
    id: int
    username: str
    email: str
    status: int
    password_version: int
    deleted: bool = False
    roles: List[RoleAccess] = []

    @property
    def is_active(self) -> bool:
        return self.status == Status.ENABLED and not self.deleted

    def enabled_roles(self) -> List[RoleAccess]:
        return [r for r in self.roles if r.status == Status.ENABLED]

    def role_names(self) -> List[str]:
        """Names of enabled roles."""
        return [r.name for r in self.enabled_roles()]

    def permission_keys(self) -> List[str]:
        """Distinct "resource:action" keys granted by enabled roles, in grant order."""
        seen = []
        for role in self.enabled_roles():
            for perm in role.permissions:
                if perm.status == Status.ENABLED and perm.key not in seen:
                    seen.append(perm.key)
        return seen


RoleAccess.model_rebuild()
