"""
ScanMaster - Authentication Package

Identity, session and authorization core:
- Hybrid JWT + server-side sessions
- bcrypt password hashing with monotonic password versions
- RBAC with deny-by-default
"""

from scanmaster.auth.dependencies import get_current_principal, require_permission, require_role
from scanmaster.auth.models import Permission, Principal, Role, Status
from scanmaster.auth.service import AuthenticatedPrincipal, SessionService
from scanmaster.auth.tokens import CredentialManager

__all__ = [
    "Principal",
    "Role",
    "Permission",
    "Status",
    "AuthenticatedPrincipal",
    "SessionService",
    "CredentialManager",
    "get_current_principal",
    "require_permission",
    "require_role",
]
