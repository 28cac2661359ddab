"""
ScanMaster - Session Service

Orchestrates login, logout, refresh and per-request validation on top of
the Credential Manager, the Principal Store and the Session Store.

Credential states: Issued -> Valid -> (Expired | Revoked | Stale)
- Expired: signed expiry has passed
- Revoked: a revocation marker exists for the credential's jti
- Stale: the embedded password version differs from the current one

Two revocation mechanisms coexist:
- jti markers (logout, refresh rotation, admin revoke)
- password-version bumps (password change, logout-all)
"""

from datetime import datetime, timedelta
from typing import List

from loguru import logger
from pydantic import BaseModel, Field

from scanmaster.auth.models import Status
from scanmaster.auth.password import PasswordHasher
from scanmaster.auth.repository import PrincipalStore
from scanmaster.auth.schemas import ExpiryInfo, LoginResponse, PrincipalInfo, TokenResponse
from scanmaster.auth.sessions import SessionData, SessionStore
from scanmaster.auth.tokens import CredentialManager
from scanmaster.concurrency import best_effort, bounded, run_blocking
from scanmaster.errors import (
    AccountDisabled,
    AuthError,
    InvalidCredential,
    InvalidCredentials,
    NotFound,
    Revoked,
    SessionExpired,
    Stale,
    ValidationFailure,
)
from scanmaster.logger import token_prefix


# Access credentials closer than this to expiry are reported as expiring soon
EXPIRY_WARNING_THRESHOLD = timedelta(minutes=5)


class AuthenticatedPrincipal(BaseModel):
    """
    Represents a validated, authenticated principal.

    Built from the session record of a credential that passed validation.
    """
    principal_id: int
    username: str
    email: str = ""
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    password_version: int
    token_id: str  # jti for log correlation


class SessionService:
    """
    Session lifecycle for interactive principals.

    Sessions are single per principal: a new login replaces the previous
    session record (last writer wins).
    """

    def __init__(
        self,
        store: PrincipalStore,
        sessions: SessionStore,
        credentials: CredentialManager,
        hasher: PasswordHasher,
        authz=None,
    ):
        self.store = store
        self.sessions = sessions
        self.credentials = credentials
        self.hasher = hasher
        self.authz = authz
        self.session_ttl = credentials.access_ttl_seconds
        self.version_ttl = credentials.refresh_ttl_seconds

    # =========================================================================
    # Login / logout
    # =========================================================================

    async def login(
        self,
        username: str,
        password: str,
        client_ip: str = "",
        user_agent: str = "",
    ) -> LoginResponse:
        """
        Authenticate by username (or email) and password.

        Raises:
            ValidationFailure: Empty username or password
            InvalidCredentials: Unknown principal or wrong password
            AccountDisabled: Principal exists but is disabled
        """
        if not username or not password:
            raise ValidationFailure("username and password are required")

        principal = await self._locate(username)
        if principal is None:
            logger.bind(event="login.failure").info("Login failed for {!r}: no such principal", username)
            raise InvalidCredentials()

        if principal.status != Status.ENABLED:
            logger.bind(event="login.failure").info("Login refused for {}: account disabled", principal.id)
            raise AccountDisabled()

        if not await run_blocking(self.hasher.verify, password, principal.password_hash):
            logger.bind(event="login.failure").info("Login failed for {}: bad password", principal.id)
            raise InvalidCredentials()

        # Work factor upgrade
        if self.hasher.needs_rehash(principal.password_hash):
            await best_effort(self._rehash(principal.id, password), "password rehash")

        access = await run_blocking(self.store.get_principal_with_access, principal.id)
        roles = access.role_names()
        permissions = access.permission_keys()
        pair = self.credentials.issue_pair(
            principal_id=principal.id,
            username=principal.username,
            roles=roles,
            permissions=permissions,
            password_version=access.password_version,
            email=principal.email,
        )

        await best_effort(
            run_blocking(self.store.update_last_login, principal.id, client_ip),
            "last login update",
        )

        now = datetime.utcnow()
        await bounded(
            self.sessions.store_session(
                principal.id,
                SessionData(
                    principal_id=principal.id,
                    username=principal.username,
                    email=principal.email,
                    roles=roles,
                    permissions=permissions,
                    login_time=now,
                    last_active=now,
                    client_ip=client_ip or "",
                    user_agent=user_agent or "",
                    access_jti=pair.access_jti,
                    refresh_jti=pair.refresh_jti,
                ),
                self.session_ttl,
            ),
            "store session",
        )
        await best_effort(
            self.sessions.store_password_version(principal.id, access.password_version, self.version_ttl),
            "password version cache write",
        )

        principal.last_login_at = now
        principal.last_login_ip = client_ip or ""
        logger.bind(event="login.success").info(
            "Principal {} logged in (token {})", principal.id, token_prefix(pair.access_token),
        )
        return LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            user=PrincipalInfo.build(principal, roles, permissions),
        )

    async def logout(self, access_token: str) -> None:
        """
        Revoke the presented access credential and the session's refresh
        credential, then drop the session.

        Idempotent: an unparseable credential is logged and still succeeds.
        An already-expired credential is accepted (its signature is checked).
        """
        try:
            claims = self.credentials.parse_access_ignoring_expiry(access_token)
        except AuthError as exc:
            logger.bind(event="logout.ignored").warning(
                "Logout with unusable credential {}: {}", token_prefix(access_token), exc.message,
            )
            return

        remaining = self.credentials.remaining_lifetime(access_token)
        await bounded(self.sessions.mark_revoked(claims.jti, remaining), "mark revoked")
        try:
            session = await bounded(self.sessions.get_session(claims.uid), "get session")
        except NotFound:
            session = None
        if session is not None and session.refresh_jti:
            await bounded(self.sessions.mark_revoked(session.refresh_jti, self.version_ttl), "mark revoked")
        await best_effort(self.sessions.delete_session(claims.uid), "session delete")
        logger.bind(event="logout").info("Principal {} logged out", claims.uid)

    async def logout_all(self, access_token: str) -> int:
        """
        Invalidate every credential of the presenting principal.

        Returns:
            The new password version

        Raises:
            InvalidCredential, Expired: The presented credential does not parse
        """
        claims = self.credentials.parse_access(access_token)

        try:
            version = await run_blocking(self.store.increment_password_version, claims.uid)
        except NotFound as exc:
            raise InvalidCredential("principal no longer exists") from exc

        await best_effort(
            self.sessions.store_password_version(claims.uid, version, self.version_ttl),
            "password version cache write",
        )
        await best_effort(self.sessions.delete_all_sessions_for(claims.uid), "session delete")
        await best_effort(
            self.sessions.mark_revoked(claims.jti, self.credentials.remaining_lifetime(access_token)),
            "mark revoked",
        )
        self._invalidate(claims.uid)
        logger.bind(event="logout.all").info(
            "Principal {} logged out everywhere (version {})", claims.uid, version,
        )
        return version

    # =========================================================================
    # Refresh / validation
    # =========================================================================

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Rotate a refresh credential into a new pair.

        Raises:
            InvalidCredential, Expired: Credential does not parse
            Revoked: Credential was already rotated or revoked
            Stale: Password version changed since issuance
            AccountDisabled: Principal is disabled
            InvalidCredentials: Principal no longer exists
            SessionExpired: Session record is gone (logout, admin revoke, idle TTL)
        """
        claims = self.credentials.parse_refresh(refresh_token)
        if await bounded(self.sessions.is_revoked(claims.jti), "check revoked"):
            raise Revoked("refresh credential has been revoked")

        current = await self._current_version(claims.uid)
        if claims.pv != current:
            raise Stale()

        try:
            access = await run_blocking(self.store.get_principal_with_access, claims.uid)
        except NotFound as exc:
            raise InvalidCredentials("principal no longer exists") from exc
        if access.deleted:
            raise InvalidCredentials("principal no longer exists")
        if access.status != Status.ENABLED:
            raise AccountDisabled()

        try:
            session = await bounded(self.sessions.get_session(access.id), "get session")
        except NotFound as exc:
            raise SessionExpired() from exc

        roles = access.role_names()
        permissions = access.permission_keys()
        pair = self.credentials.issue_pair(
            principal_id=access.id,
            username=access.username,
            roles=roles,
            permissions=permissions,
            password_version=current,
            email=access.email,
        )

        await bounded(
            self.sessions.mark_revoked(claims.jti, self.credentials.remaining_lifetime(refresh_token)),
            "mark revoked",
        )

        session.username = access.username
        session.email = access.email
        session.roles = roles
        session.permissions = permissions
        session.last_active = datetime.utcnow()
        session.access_jti = pair.access_jti
        session.refresh_jti = pair.refresh_jti
        await bounded(self.sessions.store_session(access.id, session, self.session_ttl), "store session")

        logger.bind(event="token.refreshed").info(
            "Credentials refreshed for principal {} (token {})", access.id, token_prefix(pair.access_token),
        )
        return TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )

    async def validate_session(self, access_token: str) -> AuthenticatedPrincipal:
        """
        Hot path for every protected request.

        Raises:
            InvalidCredential, Expired: Credential does not parse
            Revoked: Revocation marker present
            Stale: Embedded password version differs from the current one
            SessionExpired: No session record for the principal
        """
        claims = self.credentials.parse_access(access_token)

        if await bounded(self.sessions.is_revoked(claims.jti), "check revoked"):
            raise Revoked()

        current = await self._current_version(claims.uid)
        if claims.pv != current:
            raise Stale()

        try:
            session = await bounded(
                self.sessions.touch_session(claims.uid, self.session_ttl),
                "touch session",
            )
        except NotFound as exc:
            raise SessionExpired() from exc

        return AuthenticatedPrincipal(
            principal_id=claims.uid,
            username=session.username,
            email=session.email,
            roles=session.roles,
            permissions=session.permissions,
            password_version=claims.pv,
            token_id=claims.jti,
        )

    async def check_expiry(self, access_token: str, threshold: timedelta = EXPIRY_WARNING_THRESHOLD) -> ExpiryInfo:
        """Remaining lifetime of a valid access credential."""
        expiring_soon = self.credentials.is_expiring_soon(access_token, threshold)
        remaining = self.credentials.remaining_lifetime(access_token)
        return ExpiryInfo(
            remaining_seconds=int(remaining.total_seconds()),
            is_expiring_soon=expiring_soon,
        )

    async def get_current_principal(self, access_token: str) -> PrincipalInfo:
        """Validate the credential and return the principal's fresh public view."""
        current = await self.validate_session(access_token)
        try:
            principal = await run_blocking(self.store.get_principal, current.principal_id)
            access = await run_blocking(self.store.get_principal_with_access, current.principal_id)
        except NotFound as exc:
            raise InvalidCredential("principal no longer exists") from exc
        return PrincipalInfo.build(principal, access.role_names(), access.permission_keys())

    # =========================================================================
    # Administration
    # =========================================================================

    async def revoke_session(self, principal_id: int) -> bool:
        """
        Drop the principal's session and revoke its last-known credential pair.

        Returns:
            True when a session existed
        """
        try:
            session = await bounded(self.sessions.get_session(principal_id), "get session")
        except NotFound:
            return False

        if session.access_jti:
            await bounded(self.sessions.mark_revoked(session.access_jti, self.session_ttl), "mark revoked")
        if session.refresh_jti:
            await bounded(self.sessions.mark_revoked(session.refresh_jti, self.version_ttl), "mark revoked")
        await bounded(self.sessions.delete_session(principal_id), "delete session")
        logger.bind(event="session.revoked").warning("Session of principal {} revoked", principal_id)
        return True

    async def revoke_all_sessions(self, principal_id: int) -> bool:
        return await self.revoke_session(principal_id)

    async def list_sessions(self, principal_id: int) -> List[SessionData]:
        return await bounded(self.sessions.list_sessions(principal_id), "list sessions")

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _locate(self, identifier: str):
        try:
            return await run_blocking(self.store.get_principal_by_username, identifier)
        except NotFound:
            pass
        try:
            return await run_blocking(self.store.get_principal_by_email, identifier)
        except NotFound:
            return None

    async def _rehash(self, principal_id: int, password: str) -> None:
        password_hash = await run_blocking(self.hasher.hash, password)
        await run_blocking(self.store.update_password_hash, principal_id, password_hash)
        logger.info("Upgraded password hash work factor for principal {}", principal_id)

    async def _current_version(self, principal_id: int) -> int:
        """Cached password version, falling back to (and repopulating from) the store."""
        try:
            return await bounded(self.sessions.get_password_version(principal_id), "get password version")
        except NotFound:
            pass

        try:
            version = await run_blocking(self.store.get_password_version, principal_id)
        except NotFound as exc:
            raise InvalidCredential("principal no longer exists") from exc
        await best_effort(
            self.sessions.store_password_version(principal_id, version, self.version_ttl),
            "password version cache write",
        )
        return version

    def _invalidate(self, principal_id: int) -> None:
        if self.authz is not None:
            self.authz.invalidate(principal_id)
