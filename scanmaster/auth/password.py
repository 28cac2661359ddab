"""
ScanMaster - Password Hashing Utilities

Production-grade password hashing using bcrypt.
Work factor is configurable but defaults to 12 (industry standard).

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- Resistant to GPU/ASIC attacks
- Supports hash upgrades on login
"""

import re
import secrets
import string

import bcrypt

from scanmaster.errors import HashingFailure, WeakPassword


# Work factor for bcrypt (2^12 = 4096 iterations)
# Increase for higher security, decrease for faster tests
BCRYPT_WORK_FACTOR = 12

# bcrypt silently truncates (or rejects) input beyond 72 bytes
BCRYPT_MAX_BYTES = 72

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class PasswordHasher:
    """
    One-way password hashing and verification.

    Hash and verify are CPU-bound (tens of milliseconds at the default
    work factor); async callers run them in the threadpool.
    """

    def __init__(self, rounds: int = BCRYPT_WORK_FACTOR):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """
        Hash a password using bcrypt.

        Args:
            password: Plaintext password

        Returns:
            bcrypt hash string (includes salt)

        Raises:
            HashingFailure: If the primitive cannot hash the input

        Example:
            >>> hashed = PasswordHasher().hash("SecureP@ss123")
            >>> hashed.startswith("$2b$")
            True
        """
        password_bytes = password.encode("utf-8")
        if len(password_bytes) > BCRYPT_MAX_BYTES:
            raise HashingFailure(f"password exceeds {BCRYPT_MAX_BYTES} bytes")
        try:
            salt = bcrypt.gensalt(rounds=self.rounds)
            hashed = bcrypt.hashpw(password_bytes, salt)
        except (ValueError, TypeError) as exc:
            raise HashingFailure(f"bcrypt failed: {exc}") from exc
        return hashed.decode("utf-8")

    def verify(self, plain_password: str, hashed_password: str) -> bool:
        """
        Verify a password against a bcrypt hash.

        Uses constant-time comparison to prevent timing attacks.

        Args:
            plain_password: Plaintext password to verify
            hashed_password: bcrypt hash to check against

        Returns:
            True if password matches, False otherwise

        Raises:
            HashingFailure: If the plaintext cannot be fed to bcrypt
        """
        password_bytes = plain_password.encode("utf-8")
        if len(password_bytes) > BCRYPT_MAX_BYTES:
            # Cannot match anything we ever stored
            return False
        if not is_valid_bcrypt_hash(hashed_password):
            return False
        try:
            return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))
        except ValueError:
            # Invalid salt inside an otherwise well-formed hash
            return False
        except TypeError as exc:
            raise HashingFailure(f"bcrypt failed: {exc}") from exc

    def needs_rehash(self, hashed_password: str) -> bool:
        return needs_rehash(hashed_password, self.rounds)


def needs_rehash(hashed_password: str, target_work_factor: int = BCRYPT_WORK_FACTOR) -> bool:
    """
    Check if a password hash needs to be upgraded.

    Args:
        hashed_password: Existing bcrypt hash
        target_work_factor: Desired work factor

    Returns:
        True if hash should be regenerated
    """
    try:
        # bcrypt hash format: $2b$XX$...
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target_work_factor
    except (ValueError, IndexError):
        # Not a valid bcrypt hash, definitely needs rehash
        return True


def is_valid_bcrypt_hash(hash_string: str) -> bool:
    """Check if a string is a valid bcrypt hash format."""
    if not hash_string:
        return False

    # bcrypt hashes start with $2a$, $2b$, or $2y$
    if not hash_string.startswith(("$2a$", "$2b$", "$2y$")):
        return False

    # Standard bcrypt hash is 60 characters
    return len(hash_string) == 60


def validate_password_strength(password: str) -> None:
    """
    Enforce the password strength floor.

    Rules: 8 to 128 characters, at least one letter and one digit.

    Raises:
        WeakPassword: With a message naming the first failed rule
    """
    if password is None or len(password) < PASSWORD_MIN_LENGTH:
        raise WeakPassword(f"password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        raise WeakPassword(f"password must be no more than {PASSWORD_MAX_LENGTH} characters long")
    if not re.search(r"[A-Za-z]", password):
        raise WeakPassword("password must contain at least one letter")
    if not re.search(r"\d", password):
        raise WeakPassword("password must contain at least one digit")


def generate_random_password(length: int = 16) -> str:
    """Generate a random password that satisfies validate_password_strength."""
    length = min(max(length, PASSWORD_MIN_LENGTH), PASSWORD_MAX_LENGTH)
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*"
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if re.search(r"[A-Za-z]", candidate) and re.search(r"\d", candidate):
            return candidate
