"""
ScanMaster - Security Dependencies

FastAPI dependencies for authentication and authorization.

Usage:
    @router.get("/protected")
    async def protected_route(principal: AuthenticatedPrincipal = Depends(get_current_principal)):
        ...

    @router.delete("/users/{principal_id}")
    async def admin_route(principal: AuthenticatedPrincipal = Depends(require_permission("user", "delete"))):
        ...

Security:
- Every protected request validates the credential AND the session record
- RBAC is deny-by-default; the admin role passes every admin check
"""

from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from scanmaster.auth.identity import IdentityService
from scanmaster.auth.rbac import AuthorizationService
from scanmaster.auth.roles import PermissionService, RoleService
from scanmaster.auth.service import AuthenticatedPrincipal, SessionService
from scanmaster.auth.tokens import extract_bearer_token
from scanmaster.errors import PermissionDenied
from scanmaster.gateway.middleware import get_client_ip, get_user_agent


# HTTP Bearer scheme; missing credentials are reported through the envelope
security = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_role_service(request: Request) -> RoleService:
    return request.app.state.role_service


def get_permission_service(request: Request) -> PermissionService:
    return request.app.state.permission_service


def get_authorization_service(request: Request) -> AuthorizationService:
    return request.app.state.authz_service


def client_ip(request: Request) -> str:
    return getattr(request.state, "client_ip", None) or get_client_ip(request)


def user_agent(request: Request) -> str:
    return get_user_agent(request)


async def get_bearer_token(
    request: Request,
    _: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Raises:
        InvalidCredential: Missing or non-bearer Authorization header
    """
    return extract_bearer_token(request.headers.get("Authorization"))


async def get_current_principal(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
) -> AuthenticatedPrincipal:
    """
    Validate request authentication and return the current principal.

    Performs the full session validation: signature and expiry, revocation
    marker, password version, session record.
    """
    return await sessions.validate_session(token)


def require_permission(resource: str, action: str):
    """
    Build a dependency that admits the admin role or holders of resource:action.

    Decisions are made against the Principal Store (through the
    authorization cache), not the claims embedded in the credential.
    """
    async def dependency(
        principal: AuthenticatedPrincipal = Depends(get_current_principal),
        authz: AuthorizationService = Depends(get_authorization_service),
    ) -> AuthenticatedPrincipal:
        if await authz.check_role(principal.principal_id, ADMIN_ROLE):
            return principal
        await authz.require_permission(principal.principal_id, resource, action)
        return principal

    return dependency


def require_role(*role_names: str):
    """Build a dependency that admits principals holding any of role_names."""
    async def dependency(
        principal: AuthenticatedPrincipal = Depends(get_current_principal),
        authz: AuthorizationService = Depends(get_authorization_service),
    ) -> AuthenticatedPrincipal:
        if not await authz.check_any_role(principal.principal_id, role_names):
            raise PermissionDenied(f"one of roles {', '.join(role_names)} required")
        return principal

    return dependency
