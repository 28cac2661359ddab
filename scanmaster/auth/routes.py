"""
ScanMaster - Authentication Routes

API endpoints for authentication:
- POST /auth/register      - Self-service registration
- POST /auth/login         - Authenticate and create session
- POST /auth/logout        - Revoke the presented credential
- POST /auth/logout-all    - Invalidate every credential of the caller
- POST /auth/refresh       - Rotate a refresh credential
- GET  /auth/check-expiry  - Remaining lifetime of the access credential

Self-service endpoints:
- GET /users/me            - Current principal with roles and permissions
- PUT /users/me            - Update own profile
- PUT /users/me/password   - Change own password

All responses use the uniform envelope (see scanmaster.gateway.responses).
"""

from fastapi import APIRouter, Depends, Request, status

from scanmaster.auth.dependencies import (
    client_ip,
    get_bearer_token,
    get_current_principal,
    get_identity_service,
    get_session_service,
    user_agent,
)
from scanmaster.auth.identity import IdentityService
from scanmaster.auth.schemas import (
    ChangePasswordRequest,
    LoginRequest,
    PrincipalPatch,
    RefreshRequest,
    RegisterRequest,
)
from scanmaster.auth.service import AuthenticatedPrincipal, SessionService
from scanmaster.gateway.responses import success


router = APIRouter(prefix="/auth", tags=["authentication"])
users_router = APIRouter(prefix="/users", tags=["users"])


@router.post("/register", summary="Register a new principal")
async def register(
    request: Request,
    body: RegisterRequest,
    identity: IdentityService = Depends(get_identity_service),
):
    """
    Create an Enabled principal with password version 1.

    Raises:
        400: Invalid input or weak password
        409: Username or email already exists
    """
    info = await identity.register(body, client_ip=client_ip(request))
    return success(info, "registration successful", code=status.HTTP_201_CREATED)


@router.post("/login", summary="Authenticate and create session")
async def login(
    request: Request,
    body: LoginRequest,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Authenticate with username (or email) and password.

    On success:
    1. Verifies the password against the bcrypt hash
    2. Issues an access/refresh credential pair
    3. Stores the server-side session record

    Raises:
        401: Invalid credentials or disabled account
    """
    result = await sessions.login(
        body.username,
        body.password,
        client_ip=client_ip(request),
        user_agent=user_agent(request),
    )
    return success(result, "login successful")


@router.post("/logout", summary="Revoke the current credential")
async def logout(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
):
    """Idempotent: logging out twice with the same credential succeeds."""
    await sessions.logout(token)
    return success(message="logout successful")


@router.post("/logout-all", summary="Invalidate every credential of the caller")
async def logout_all(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
):
    await sessions.logout_all(token)
    return success(message="logged out from all sessions")


@router.post("/refresh", summary="Rotate a refresh credential")
async def refresh(
    body: RefreshRequest,
    sessions: SessionService = Depends(get_session_service),
):
    """
    Exchange a refresh credential for a new pair.

    The old refresh credential is revoked; reusing it fails with Revoked.
    """
    pair = await sessions.refresh(body.refresh_token)
    return success(pair, "token refreshed")


@router.get("/check-expiry", summary="Remaining lifetime of the access credential")
async def check_expiry(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
):
    info = await sessions.check_expiry(token)
    return success(info, "check token expiry successful")


@users_router.get("/me", summary="Current principal")
async def get_me(
    token: str = Depends(get_bearer_token),
    sessions: SessionService = Depends(get_session_service),
):
    info = await sessions.get_current_principal(token)
    return success(info)


@users_router.put("/me", summary="Update own profile")
async def update_me(
    body: PrincipalPatch,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    identity: IdentityService = Depends(get_identity_service),
):
    """Roles, status and password cannot be changed here."""
    info = await identity.update_self(principal.principal_id, body)
    return success(info, "profile updated")


@users_router.put("/me/password", summary="Change own password")
async def change_my_password(
    body: ChangePasswordRequest,
    principal: AuthenticatedPrincipal = Depends(get_current_principal),
    identity: IdentityService = Depends(get_identity_service),
):
    """
    Change the caller's password; every outstanding credential becomes Stale.

    Raises:
        400: New password too weak or identical to the old one
        401: Old password is incorrect
    """
    await identity.change_password(principal.principal_id, body.old_password, body.new_password)
    return success(message="password changed, please log in again")
