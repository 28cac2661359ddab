"""
ScanMaster - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        SECRET_KEY: Symmetric signing key for access and refresh credentials
        ACCESS_TOKEN_EXPIRE_MINUTES: Access credential lifetime (also session TTL)
        REFRESH_TOKEN_EXPIRE_DAYS: Refresh credential lifetime
        BCRYPT_ROUNDS: bcrypt work factor for new hashes
        DATABASE_URL: Principal Store connection string
        SESSION_BACKEND: "redis" for fleets, "memory" for a single process
        REDIS_URL: Session Store connection string
        STORE_TIMEOUT_SECONDS: Deadline applied to every store call
    """

    # Security
    SECRET_KEY: str = ""  # Must be set via environment
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "scanmaster"
    JWT_LEEWAY_SECONDS: int = 5
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12

    # Identity
    DEFAULT_RESET_PASSWORD: str = "ChangeMe123"
    DEFAULT_ROLE_NAME: str = ""  # Assigned on self-registration when set
    BOOTSTRAP_FILE: Path = Path(__file__).parent / "auth" / "bootstrap.yaml"
    BOOTSTRAP_ADMIN_PASSWORD: str = ""  # Falls back to DEFAULT_RESET_PASSWORD

    # Database (PostgreSQL/MySQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./scanmaster.db"

    # Session store
    SESSION_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_KEY_PREFIX: str = "scanmaster:"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # Authorization decision cache (0 disables)
    AUTHZ_CACHE_TTL_SECONDS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 3600


settings = Settings()
