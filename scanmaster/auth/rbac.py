"""
ScanMaster - Role-Based Access Control

Allow/deny decisions for (principal, resource, action) and role checks.

Resolution:
1. The principal must exist, not be soft-deleted, and be Enabled
2. Disabled roles contribute nothing (and never satisfy a role check)
3. The effective set is the union of Enabled permissions of Enabled roles
4. Matching is exact on (resource, action); there are no wildcards

Effective sets are cached per principal for AUTHZ_CACHE_TTL_SECONDS and
tagged with the password version they were computed under. A cached entry
is only used while the Session Store reports the same version.
"""

import time
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from loguru import logger

from scanmaster.auth.models import Status
from scanmaster.auth.repository import PrincipalStore
from scanmaster.auth.sessions import SessionStore
from scanmaster.concurrency import bounded, run_blocking
from scanmaster.config import settings
from scanmaster.errors import AuthError, NotFound, PermissionDenied, ValidationFailure


PermissionPair = Tuple[str, str]


def parse_permission_key(key: str) -> PermissionPair:
    """
    Split "resource:action" at the first colon.

    Raises:
        ValidationFailure: Missing colon or empty half
    """
    resource, sep, action = (key or "").partition(":")
    if not sep or not resource or not action:
        raise ValidationFailure(f"invalid permission {key!r}, expected 'resource:action'")
    return resource, action


@dataclass(frozen=True)
class Grant:
    """Effective authorization state of one principal."""
    active: bool
    password_version: int
    roles: FrozenSet[str]
    permissions: FrozenSet[PermissionPair]
    computed_at: float


DENY_ALL = Grant(active=False, password_version=0, roles=frozenset(), permissions=frozenset(), computed_at=0.0)


class AuthorizationService:
    """
    RBAC evaluation over the Principal Store with a version-checked cache.

    Args:
        store: Principal Store
        sessions: Session Store (source of the current password version)
        cache_ttl: Seconds a computed grant stays usable (0 disables caching)
        clock: Monotonic time source
    """

    def __init__(
        self,
        store: PrincipalStore,
        sessions: SessionStore,
        cache_ttl: Optional[float] = None,
        clock=time.monotonic,
    ):
        self.store = store
        self.sessions = sessions
        self.cache_ttl = settings.AUTHZ_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self._clock = clock
        self._cache: Dict[int, Grant] = {}

    async def check_permission(self, principal_id: int, resource: str, action: str) -> bool:
        grant = await self._grant(principal_id)
        return grant.active and (resource, action) in grant.permissions

    async def require_permission(self, principal_id: int, resource: str, action: str) -> None:
        """Raises PermissionDenied unless the principal holds resource:action."""
        if not await self.check_permission(principal_id, resource, action):
            logger.bind(event="authz.denied").info(
                "Principal {} denied {}:{}", principal_id, resource, action,
            )
            raise PermissionDenied(f"permission {resource}:{action} required")

    async def check_role(self, principal_id: int, role_name: str) -> bool:
        grant = await self._grant(principal_id)
        return grant.active and role_name in grant.roles

    async def check_any_role(self, principal_id: int, role_names: Iterable[str]) -> bool:
        """False for an empty list of roles."""
        grant = await self._grant(principal_id)
        return grant.active and any(name in grant.roles for name in role_names)

    async def check_all_roles(self, principal_id: int, role_names: Iterable[str]) -> bool:
        """False for an empty list of roles."""
        role_names = list(role_names)
        grant = await self._grant(principal_id)
        return grant.active and bool(role_names) and all(name in grant.roles for name in role_names)

    async def effective_permissions(self, principal_id: int) -> FrozenSet[PermissionPair]:
        """(resource, action) pairs the principal currently holds; empty when inactive."""
        grant = await self._grant(principal_id)
        return grant.permissions if grant.active else frozenset()

    async def is_principal_active(self, principal_id: int) -> bool:
        return (await self._grant(principal_id)).active

    def invalidate(self, principal_id: int) -> None:
        """Drop the cached grant of one principal."""
        self._cache.pop(principal_id, None)

    def clear(self) -> None:
        """Drop every cached grant (after role or permission changes)."""
        self._cache.clear()

    async def _grant(self, principal_id: int) -> Grant:
        cached = self._cache.get(principal_id)
        if cached is not None and await self._is_fresh(principal_id, cached):
            return cached

        try:
            access = await run_blocking(self.store.get_principal_with_access, principal_id)
        except NotFound:
            self.invalidate(principal_id)
            return DENY_ALL

        grant = Grant(
            active=access.is_active,
            password_version=access.password_version,
            roles=frozenset(access.role_names()),
            permissions=frozenset(
                (perm.resource, perm.action)
                for role in access.enabled_roles()
                for perm in role.permissions
                if perm.status == Status.ENABLED
            ),
            computed_at=self._clock(),
        )
        if self.cache_ttl > 0:
            self._cache[principal_id] = grant
        return grant

    async def _is_fresh(self, principal_id: int, grant: Grant) -> bool:
        if self.cache_ttl <= 0 or self._clock() - grant.computed_at >= self.cache_ttl:
            return False
        try:
            current = await bounded(
                self.sessions.get_password_version(principal_id),
                "get password version",
            )
        except NotFound:
            return False
        except AuthError as exc:
            logger.warning("Authorization cache bypassed for principal {}: {}", principal_id, exc.message)
            return False
        return current == grant.password_version
