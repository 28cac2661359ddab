"""
ScanMaster - Identity Service

Principal-centric workflows composed from the Principal Store, the
Password Hasher and the Session Store:
- Registration and admin creation
- Profile and admin updates (layered: parameters, business rules, execution)
- Soft deletion
- Password change / reset with password-version bump
- Role assignment, activation and deactivation

Security:
- Every password change durably increments password_version, which
  invalidates all outstanding credentials on their next validation
- Cache refresh and session deletion after a change are best-effort;
  the durable increment alone is enough for eventual revocation
"""

import re
from typing import Optional

from loguru import logger

from scanmaster.auth.models import BOOTSTRAP_PRINCIPAL_ID, Principal, Status
from scanmaster.auth.password import (
    PasswordHasher,
    generate_random_password,
    validate_password_strength,
)
from scanmaster.auth.repository import PrincipalStore, clamp_page
from scanmaster.auth.schemas import (
    CreatePrincipalRequest,
    Page,
    PrincipalInfo,
    PrincipalPatch,
    RegisterRequest,
)
from scanmaster.auth.sessions import SessionStore
from scanmaster.concurrency import best_effort, bounded, run_blocking
from scanmaster.config import settings
from scanmaster.errors import (
    AlreadyExists,
    InvalidCredentials,
    NotFound,
    PermissionDenied,
    ProtectedEntity,
    Stale,
    ValidationFailure,
)


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")
USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50

# Compare-and-swap attempts for a password change racing other changes
PASSWORD_CAS_ATTEMPTS = 3


def validate_email(email: str) -> str:
    """Return the lowercase email or raise ValidationFailure."""
    if not email or not EMAIL_PATTERN.match(email):
        raise ValidationFailure("invalid email format")
    return email.lower()


def validate_username(username: str) -> str:
    if not username or not username.strip():
        raise ValidationFailure("username cannot be empty")
    if not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
        raise ValidationFailure(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters long"
        )
    return username


class IdentityService:
    """
    Principal lifecycle operations.

    Args:
        store: Principal Store (durable)
        sessions: Session Store (ephemeral)
        hasher: Password Hasher
        authz: Optional AuthorizationService whose cache is invalidated on
            role and status changes
    """

    def __init__(
        self,
        store: PrincipalStore,
        sessions: SessionStore,
        hasher: PasswordHasher,
        authz=None,
    ):
        self.store = store
        self.sessions = sessions
        self.hasher = hasher
        self.authz = authz
        self.version_ttl = settings.refresh_token_ttl_seconds

    # =========================================================================
    # Creation
    # =========================================================================

    async def register(self, request: RegisterRequest, client_ip: str = "") -> PrincipalInfo:
        """
        Self-service registration.

        Creates an Enabled principal with password_version=1. When
        DEFAULT_ROLE_NAME names an existing role it is assigned.

        Raises:
            ValidationFailure: Empty fields, bad email, weak password
            AlreadyExists: Username or email taken
        """
        username, email = self._validate_new_principal(
            request.username, request.email, request.password,
        )
        await self._ensure_available(username, email)

        role_ids = []
        if settings.DEFAULT_ROLE_NAME:
            try:
                role = await run_blocking(self.store.get_role_by_name, settings.DEFAULT_ROLE_NAME)
                role_ids.append(role.id)
            except NotFound:
                logger.warning("Default role {!r} does not exist; registering without it",
                               settings.DEFAULT_ROLE_NAME)

        password_hash = await run_blocking(self.hasher.hash, request.password)
        principal = await run_blocking(
            self.store.create_principal,
            Principal(
                username=username,
                email=email,
                password_hash=password_hash,
                password_version=1,
                status=Status.ENABLED,
                last_login_ip=client_ip or "",
            ),
            role_ids,
        )
        logger.bind(event="principal.registered").info(
            "Principal {} registered (id={})", principal.username, principal.id,
        )
        return await self.get_principal_info(principal.id)

    async def create_principal(self, request: CreatePrincipalRequest) -> PrincipalInfo:
        """
        Admin-facing creation with initial roles.

        Raises:
            RoleNotFound: Any role id does not exist (nothing is created)
        """
        username, email = self._validate_new_principal(
            request.username, request.email, request.password,
        )
        await self._ensure_available(username, email)

        password_hash = await run_blocking(self.hasher.hash, request.password)
        principal = await run_blocking(
            self.store.create_principal,
            Principal(
                username=username,
                email=email,
                password_hash=password_hash,
                nickname=request.nickname,
                phone=request.phone,
                remark=request.remark,
            ),
            request.role_ids,
        )
        logger.bind(event="principal.created").info(
            "Principal {} created with roles {}", principal.username, request.role_ids,
        )
        return await self.get_principal_info(principal.id)

    # =========================================================================
    # Updates
    # =========================================================================

    async def update_principal(self, principal_id: int, patch: PrincipalPatch) -> PrincipalInfo:
        """
        Admin update.

        Layers:
            1. Parameters: id, email format, password strength, status value
            2. Business rules (in the store transaction): existence,
               bootstrap protection, uniqueness, role existence
            3. Execution: one transaction applying fields, password
               (hash + version bump) and role set replacement

        Raises:
            ValidationFailure, NotFound, ProtectedEntity, AlreadyExists, RoleNotFound
        """
        fields = self._validate_patch(principal_id, patch)

        password_hash = None
        if patch.password is not None:
            password_hash = await run_blocking(self.hasher.hash, patch.password)

        principal = await run_blocking(
            self.store.update_principal,
            principal_id,
            fields,
            patch.role_ids,
            password_hash,
        )

        disabled = fields.get("status") == Status.DISABLED
        if password_hash is not None or disabled:
            await self._revoke_everywhere(principal.id, principal.password_version)
        if patch.role_ids is not None or "status" in fields:
            self._invalidate(principal.id)

        logger.bind(event="principal.updated").info(
            "Principal {} updated (fields={}, roles={}, password={})",
            principal.id, sorted(fields), patch.role_ids is not None, password_hash is not None,
        )
        return await self.get_principal_info(principal.id)

    async def update_self(self, principal_id: int, patch: PrincipalPatch) -> PrincipalInfo:
        """
        Self-service profile update.

        Raises:
            PermissionDenied: Patch touches roles or status
            ValidationFailure: Patch carries a password (use change_password)
        """
        if patch.role_ids is not None or patch.status is not None:
            raise PermissionDenied("cannot change your own roles or status")
        if patch.password is not None:
            raise ValidationFailure("use the change-password operation to update your password")
        return await self.update_principal(principal_id, patch)

    async def activate_user(self, principal_id: int) -> PrincipalInfo:
        return await self.update_principal(principal_id, PrincipalPatch(status=Status.ENABLED))

    async def deactivate_user(self, principal_id: int) -> PrincipalInfo:
        """Raises ProtectedEntity for the bootstrap principal."""
        return await self.update_principal(principal_id, PrincipalPatch(status=Status.DISABLED))

    async def delete_principal(self, principal_id: int) -> None:
        """
        Soft-delete a principal after removing its role joins.

        Raises:
            ValidationFailure: principal_id is 0
            ProtectedEntity: principal_id is the bootstrap principal
            NotFound: Missing or already deleted
        """
        if not principal_id:
            raise ValidationFailure("principal id cannot be 0")
        if principal_id == BOOTSTRAP_PRINCIPAL_ID:
            raise ProtectedEntity("the bootstrap principal cannot be deleted")

        await run_blocking(self.store.soft_delete_principal, principal_id)
        await best_effort(self.sessions.delete_all_sessions_for(principal_id), "session delete")
        await best_effort(self.sessions.delete_password_version(principal_id), "version cache delete")
        self._invalidate(principal_id)
        logger.bind(event="principal.deleted").info("Principal {} deleted", principal_id)

    # =========================================================================
    # Passwords
    # =========================================================================

    async def change_password(self, principal_id: int, old_password: str, new_password: str) -> int:
        """
        Change a principal's own password.

        The version observed when the old password was verified is the
        expected version of the update. If another change wins the race,
        the principal is reloaded and the old password re-verified against
        the new state, which normally fails.

        Returns:
            The new password version

        Raises:
            ValidationFailure: Empty input or new == old
            WeakPassword: New password below the strength floor
            InvalidCredentials: Old password is incorrect
        """
        if not old_password or not new_password:
            raise ValidationFailure("old and new password are required")
        validate_password_strength(new_password)
        if old_password == new_password:
            raise ValidationFailure("new password must differ from the old password")

        new_hash = None
        conflict = None
        for _ in range(PASSWORD_CAS_ATTEMPTS):
            principal = await run_blocking(self.store.get_principal, principal_id)
            verified = await run_blocking(self.hasher.verify, old_password, principal.password_hash)
            if not verified:
                logger.bind(event="password.change.rejected").info(
                    "Old password mismatch for principal {}", principal_id,
                )
                raise InvalidCredentials("old password is incorrect")

            if new_hash is None:
                new_hash = await run_blocking(self.hasher.hash, new_password)
            try:
                version = await run_blocking(
                    self.store.update_password_with_version,
                    principal_id,
                    new_hash,
                    principal.password_version,
                )
                break
            except Stale as exc:
                conflict = exc
                logger.info("Concurrent password change for principal {}; re-verifying", principal_id)
        else:
            raise conflict

        await self._revoke_everywhere(principal_id, version)
        logger.bind(event="password.changed").info(
            "Password changed for principal {} (version {})", principal_id, version,
        )
        return version

    async def reset_password(self, principal_id: int, new_password: Optional[str] = None) -> str:
        """
        Admin reset without the old password.

        Falls back to DEFAULT_RESET_PASSWORD, or a generated password when
        that is unset.

        Returns:
            The plaintext that was applied
        """
        password = new_password or settings.DEFAULT_RESET_PASSWORD or generate_random_password()
        validate_password_strength(password)

        password_hash = await run_blocking(self.hasher.hash, password)
        version = await run_blocking(self.store.update_password_with_version, principal_id, password_hash)
        await self._revoke_everywhere(principal_id, version)
        logger.bind(event="password.reset").warning(
            "Password reset for principal {} (version {})", principal_id, version,
        )
        return password

    async def get_password_version(self, principal_id: int) -> int:
        return await run_blocking(self.store.get_password_version, principal_id)

    async def sync_password_version_to_cache(self, principal_id: int) -> int:
        """Copy the durable password version into the Session Store cache."""
        version = await run_blocking(self.store.get_password_version, principal_id)
        return await bounded(
            self.sessions.store_password_version(principal_id, version, self.version_ttl),
            "store password version",
        )

    # =========================================================================
    # Roles
    # =========================================================================

    async def assign_role(self, principal_id: int, role_id: int) -> None:
        await run_blocking(self.store.assign_role, principal_id, role_id)
        self._invalidate(principal_id)
        logger.bind(event="principal.role.assigned").info(
            "Role {} assigned to principal {}", role_id, principal_id,
        )

    async def remove_role(self, principal_id: int, role_id: int) -> None:
        await run_blocking(self.store.remove_role, principal_id, role_id)
        self._invalidate(principal_id)
        logger.bind(event="principal.role.removed").info(
            "Role {} removed from principal {}", role_id, principal_id,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_principal(self, principal_id: int) -> Principal:
        return await run_blocking(self.store.get_principal, principal_id)

    async def get_principal_info(self, principal_id: int) -> PrincipalInfo:
        """Public view including enabled role names and permission keys."""
        principal = await run_blocking(self.store.get_principal, principal_id)
        access = await run_blocking(self.store.get_principal_with_access, principal_id)
        return PrincipalInfo.build(principal, access.role_names(), access.permission_keys())

    async def list_principals(self, offset: int = 0, limit: int = 20) -> Page[PrincipalInfo]:
        offset, limit = clamp_page(offset, limit)
        principals, total = await run_blocking(self.store.list_principals, offset, limit)
        return Page[PrincipalInfo](
            items=[PrincipalInfo.build(p) for p in principals],
            total=total,
            offset=offset,
            limit=limit,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _validate_new_principal(self, username: str, email: str, password: str):
        if not username or not email or not password:
            raise ValidationFailure("username, email and password are required")
        username = validate_username(username)
        email = validate_email(email)
        validate_password_strength(password)
        return username, email

    async def _ensure_available(self, username: str, email: str) -> None:
        if await run_blocking(self.store.exists_by_username_or_email, username, email):
            raise AlreadyExists("username or email already exists")

    def _validate_patch(self, principal_id: int, patch: PrincipalPatch) -> dict:
        if not principal_id:
            raise ValidationFailure("principal id cannot be 0")

        fields = patch.model_dump(exclude_none=True, exclude={"password", "role_ids"})
        if "username" in fields:
            fields["username"] = validate_username(fields["username"])
        if "email" in fields:
            fields["email"] = validate_email(fields["email"])
        if patch.password is not None:
            validate_password_strength(patch.password)
        if "status" in fields:
            if fields["status"] not in (Status.ENABLED, Status.DISABLED):
                raise ValidationFailure("status must be 0 (disabled) or 1 (enabled)")
            if principal_id == BOOTSTRAP_PRINCIPAL_ID and fields["status"] == Status.DISABLED:
                raise ProtectedEntity("the bootstrap principal cannot be disabled")
        return fields

    async def _revoke_everywhere(self, principal_id: int, version: int) -> None:
        """Best-effort: publish the new version and drop the principal's sessions."""
        await best_effort(
            self.sessions.store_password_version(principal_id, version, self.version_ttl),
            "password version cache write",
        )
        await best_effort(self.sessions.delete_all_sessions_for(principal_id), "session delete")
        self._invalidate(principal_id)

    def _invalidate(self, principal_id: int) -> None:
        if self.authz is not None:
            self.authz.invalidate(principal_id)
