"""
ScanMaster - Credential Management

Creates and validates the two JWT credential kinds:
- Access credential: short-lived, carries roles and permission keys
- Refresh credential: long-lived, identity + password version only

Every credential carries:
- Principal ID (sub / uid) and username
- Password version (pv) for global invalidation
- Unique token ID (jti) for per-credential revocation
- Type claim (typ) so one kind can never stand in for the other

Security:
- HS256 with a single process-wide signing key
- Expiry checked with a small clock-skew leeway
"""

import secrets
import time
from datetime import datetime, timedelta
from typing import List, Optional

from jose import jwt, JWTError, ExpiredSignatureError
from pydantic import BaseModel, Field

from scanmaster.config import settings
from scanmaster.errors import Expired, InvalidCredential


ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class AccessClaims(BaseModel):
    """
    Decoded access credential.

    Attributes:
        sub: Principal ID as string (JWT subject)
        uid: Principal ID
        username: Principal username at issuance
        email: Principal email at issuance
        roles: Denormalized role names
        permissions: Denormalized "resource:action" keys
        pv: Password version at issuance
        typ: Always "access"
        jti: Unique credential ID
        iat: Issued-at (unix seconds)
        exp: Expiry (unix seconds)
    """
    sub: str
    uid: int
    username: str
    email: str = ""
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)
    pv: int
    typ: str
    jti: str
    iat: int
    exp: int


class RefreshClaims(BaseModel):
    """Decoded refresh credential."""
    sub: str
    uid: int
    username: str
    pv: int
    typ: str
    jti: str
    iat: int
    exp: int


class TokenPair(BaseModel):
    """Freshly issued credential pair."""
    access_token: str
    refresh_token: str
    expires_in: int = Field(..., description="Seconds until the access credential expires")
    access_jti: str
    refresh_jti: str
    token_type: str = "Bearer"


class CredentialManager:
    """
    Mints and verifies access/refresh credentials.

    The signing key and TTLs are read-only after construction.
    """

    def __init__(
        self,
        secret_key: str = None,
        algorithm: str = None,
        access_ttl: Optional[timedelta] = None,
        refresh_ttl: Optional[timedelta] = None,
        issuer: str = None,
        leeway_seconds: int = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.SECRET_KEY
        if not self.secret_key:
            raise ValueError("SECRET_KEY must be configured to sign credentials")
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.access_ttl = access_ttl or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_ttl = refresh_ttl or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self.issuer = issuer or settings.JWT_ISSUER
        self.leeway_seconds = settings.JWT_LEEWAY_SECONDS if leeway_seconds is None else leeway_seconds

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    @property
    def refresh_ttl_seconds(self) -> int:
        return int(self.refresh_ttl.total_seconds())

    def issue_pair(
        self,
        principal_id: int,
        username: str,
        roles: List[str],
        permissions: List[str],
        password_version: int,
        email: str = "",
    ) -> TokenPair:
        """
        Create a new access/refresh credential pair.

        Args:
            principal_id: Principal's unique identifier
            username: Principal's username
            roles: Role names embedded in the access credential
            permissions: "resource:action" keys embedded in the access credential
            password_version: Current password version of the principal
            email: Principal's email (access credential only)

        Returns:
            TokenPair with both credentials, their jtis and the access TTL

        Example:
            >>> pair = manager.issue_pair(7, "alice", ["viewer"], ["scan:read"], 1)
            >>> manager.parse_access(pair.access_token).pv
            1
        """
        now = datetime.utcnow()
        access_jti = secrets.token_hex(16)
        refresh_jti = secrets.token_hex(16)

        access_payload = {
            "sub": str(principal_id),
            "uid": principal_id,
            "username": username,
            "email": email,
            "roles": list(roles),
            "permissions": list(permissions),
            "pv": password_version,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": access_jti,
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": now + self.access_ttl,
        }
        refresh_payload = {
            "sub": str(principal_id),
            "uid": principal_id,
            "username": username,
            "pv": password_version,
            "typ": REFRESH_TOKEN_TYPE,
            "jti": refresh_jti,
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": now + self.refresh_ttl,
        }

        return TokenPair(
            access_token=jwt.encode(access_payload, self.secret_key, algorithm=self.algorithm),
            refresh_token=jwt.encode(refresh_payload, self.secret_key, algorithm=self.algorithm),
            expires_in=self.access_ttl_seconds,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
        )

    def parse_access(self, token: str) -> AccessClaims:
        """
        Verify and decode an access credential.

        Raises:
            Expired: Signature valid but expiry is past (beyond leeway)
            InvalidCredential: Malformed, badly signed, or not an access credential
        """
        payload = self._decode(token)
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidCredential("not an access credential")
        try:
            return AccessClaims(**payload)
        except ValueError as exc:
            raise InvalidCredential("access credential is missing claims") from exc

    def parse_refresh(self, token: str) -> RefreshClaims:
        """
        Verify and decode a refresh credential.

        Raises:
            Expired: Signature valid but expiry is past (beyond leeway)
            InvalidCredential: Malformed, badly signed, or not a refresh credential
        """
        payload = self._decode(token)
        if payload.get("typ") != REFRESH_TOKEN_TYPE:
            raise InvalidCredential("not a refresh credential")
        try:
            return RefreshClaims(**payload)
        except ValueError as exc:
            raise InvalidCredential("refresh credential is missing claims") from exc

    def parse_access_ignoring_expiry(self, token: str) -> AccessClaims:
        """
        Verify the signature of an access credential without enforcing expiry.

        Used by logout, where revoking an already-expired credential is harmless.
        """
        payload = self._decode(token, verify_exp=False)
        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            raise InvalidCredential("not an access credential")
        try:
            return AccessClaims(**payload)
        except ValueError as exc:
            raise InvalidCredential("access credential is missing claims") from exc

    def remaining_lifetime(self, token: str) -> timedelta:
        """
        Time until the credential expires (zero if already expired).

        Accepts either credential kind; the signature is always verified.
        """
        payload = self._decode(token, verify_exp=False)
        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidCredential("credential has no expiry") from exc
        remaining = exp - time.time()
        return timedelta(seconds=max(0.0, remaining))

    def is_expiring_soon(self, token: str, threshold: timedelta) -> bool:
        """True when the access credential expires within `threshold`."""
        self.parse_access(token)
        return self.remaining_lifetime(token) <= threshold

    def _decode(self, token: str, verify_exp: bool = True) -> dict:
        if not token or not isinstance(token, str):
            raise InvalidCredential("credential is empty")
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={
                    "verify_exp": verify_exp,
                    "verify_aud": False,
                    "leeway": self.leeway_seconds,
                },
            )
        except ExpiredSignatureError as exc:
            raise Expired() from exc
        except JWTError as exc:
            raise InvalidCredential(f"credential validation failed: {exc}") from exc


def extract_bearer_token(authorization: Optional[str]) -> str:
    """
    Pull the credential out of an "Authorization: Bearer <token>" header.

    Raises:
        InvalidCredential: Header missing or not a bearer credential
    """
    if not authorization:
        raise InvalidCredential("missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredential("malformed authorization header")
    return token.strip()
