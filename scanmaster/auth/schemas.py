"""
ScanMaster - Identity Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.

Business validation (email format, password strength, protected ids)
lives in the services so it applies to every caller, not only HTTP.
"""

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from scanmaster.auth.models import Permission, Principal, Role


T = TypeVar("T")


# =============================================================================
# Authentication
# =============================================================================

class RegisterRequest(BaseModel):
    """Request body for POST /auth/register."""
    username: str = Field(..., description="Login name (3-50 characters)")
    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password (8-128 chars, letters and digits)")


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    username: str = Field(..., description="Username or email address")
    password: str = Field(..., description="Password")


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., description="Refresh credential")


class TokenResponse(BaseModel):
    """Credential pair returned by refresh."""
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int = Field(..., description="Seconds until the access credential expires")


class ExpiryInfo(BaseModel):
    """Response body for GET /auth/check-expiry."""
    remaining_seconds: int
    is_expiring_soon: bool


# =============================================================================
# Principals
# =============================================================================

class PrincipalInfo(BaseModel):
    """Public view of a principal (never includes the password hash)."""
    id: int
    username: str
    email: str
    nickname: str = ""
    avatar: str = ""
    phone: str = ""
    remark: str = ""
    status: int
    last_login_at: Optional[datetime] = None
    last_login_ip: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def build(cls, principal: Principal, roles: List[str] = (), permissions: List[str] = ()) -> "PrincipalInfo":
        return cls(
            id=principal.id,
            username=principal.username,
            email=principal.email,
            nickname=principal.nickname,
            avatar=principal.avatar,
            phone=principal.phone,
            remark=principal.remark,
            status=principal.status,
            last_login_at=principal.last_login_at,
            last_login_ip=principal.last_login_ip,
            created_at=principal.created_at,
            updated_at=principal.updated_at,
            roles=list(roles),
            permissions=list(permissions),
        )


class LoginResponse(TokenResponse):
    """Response body for successful login."""
    user: PrincipalInfo


class CreatePrincipalRequest(BaseModel):
    """Request body for POST /admin/users."""
    username: str
    email: str
    password: str
    nickname: str = ""
    phone: str = ""
    remark: str = ""
    role_ids: List[int] = Field(default_factory=list)


class PrincipalPatch(BaseModel):
    """
    Partial update of a principal.

    Omitted (None) fields are left unchanged. role_ids, when present,
    replaces the whole role set.
    """
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    nickname: Optional[str] = None
    avatar: Optional[str] = None
    phone: Optional[str] = None
    remark: Optional[str] = None
    status: Optional[int] = None
    role_ids: Optional[List[int]] = None


class ChangePasswordRequest(BaseModel):
    """Request body for PUT /users/me/password."""
    old_password: str
    new_password: str


class ResetPasswordRequest(BaseModel):
    """Request body for POST /admin/users/{id}/reset-password."""
    new_password: Optional[str] = Field(
        default=None,
        description="Falls back to the configured default reset password",
    )


class ResetPasswordResponse(BaseModel):
    password: str


class RoleAssignment(BaseModel):
    role_id: int


# =============================================================================
# Roles and permissions
# =============================================================================

class PermissionInfo(BaseModel):
    id: int
    name: str
    display_name: str = ""
    description: str = ""
    resource: str
    action: str
    status: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def build(cls, permission: Permission) -> "PermissionInfo":
        return cls.model_validate(permission, from_attributes=True)


class RoleInfo(BaseModel):
    id: int
    name: str
    display_name: str = ""
    description: str = ""
    status: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    permissions: List[PermissionInfo] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    @classmethod
    def build(cls, role: Role, permissions: List[Permission] = ()) -> "RoleInfo":
        return cls(
            id=role.id,
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            status=role.status,
            created_at=role.created_at,
            updated_at=role.updated_at,
            permissions=[PermissionInfo.build(p) for p in permissions],
        )


class CreateRoleRequest(BaseModel):
    name: str
    display_name: str = ""
    description: str = ""
    permission_ids: List[int] = Field(default_factory=list)


class RolePatch(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[int] = None
    permission_ids: Optional[List[int]] = None


class PermissionAssignment(BaseModel):
    permission_id: int


class CreatePermissionRequest(BaseModel):
    name: str
    resource: str
    action: str
    display_name: str = ""
    description: str = ""


class PermissionPatch(BaseModel):
    name: Optional[str] = None
    resource: Optional[str] = None
    action: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[int] = None


# =============================================================================
# Pagination
# =============================================================================

class Page(BaseModel, Generic[T]):
    """One page of a listing."""
    items: List[T]
    total: int
    offset: int
    limit: int
