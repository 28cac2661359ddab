"""
ScanMaster - Database Configuration

SQLModel database setup with connection pooling.
Supports PostgreSQL/MySQL (production) and SQLite (development).

Usage:
    from scanmaster.auth.database import get_engine, init_db

    engine = get_engine()
    init_db(engine)  # Creates tables and seeds bootstrap rows
"""

from pathlib import Path
from typing import Optional

import yaml
from loguru import logger
from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from scanmaster.config import settings


def get_database_url() -> str:
    """
    Get database URL from settings.

    Returns:
        PostgreSQL, MySQL or SQLite connection string
    """
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    # Default to SQLite for local development
    return "sqlite:///./scanmaster.db"


def get_engine(database_url: str = None, echo: bool = False):
    """
    Create SQLAlchemy engine with appropriate configuration.

    Args:
        database_url: Override database URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        # SQLite configuration
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        # Server database configuration with connection pooling
        engine = create_engine(
            url,
            echo=echo,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )

    return engine


def init_db(engine, bootstrap_file: Optional[Path] = None, hasher=None) -> None:
    """
    Initialize database tables and seed bootstrap identity rows.

    Safe to call multiple times (CREATE IF NOT EXISTS, seed only missing rows).
    """
    # Import models to register them with SQLModel
    from scanmaster.auth import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    seed_bootstrap(engine, bootstrap_file or settings.BOOTSTRAP_FILE, hasher=hasher)


def seed_bootstrap(engine, bootstrap_file: Path, hasher=None) -> None:
    """
    Insert bootstrap roles, permissions, joins and principals that are missing.

    Existing rows are left untouched so operators can edit them later
    (except the protected id=1 rows, which the store refuses to weaken).
    """
    from scanmaster.auth.models import (
        Permission,
        Principal,
        PrincipalRole,
        Role,
        RolePermission,
    )
    from scanmaster.auth.password import PasswordHasher

    path = Path(bootstrap_file)
    if not path.exists():
        logger.warning("Bootstrap file {} not found; skipping seed", path)
        return

    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    hasher = hasher or PasswordHasher(rounds=settings.BCRYPT_ROUNDS)

    with Session(engine) as db:
        roles = {}
        for entry in config.get("roles", []):
            role = db.exec(select(Role).where(Role.name == entry["name"])).first()
            if role is None:
                role = Role(
                    id=entry.get("id"),
                    name=entry["name"],
                    display_name=entry.get("display_name", ""),
                    description=entry.get("description", ""),
                )
                db.add(role)
                db.flush()
                logger.info("Seeded role {}", role.name)
            roles[role.name] = role

        permissions = {}
        for entry in config.get("permissions", []):
            perm = db.exec(select(Permission).where(Permission.name == entry["name"])).first()
            if perm is None:
                perm = Permission(
                    id=entry.get("id"),
                    name=entry["name"],
                    resource=entry["resource"],
                    action=entry["action"],
                    display_name=entry.get("display_name", ""),
                    description=entry.get("description", ""),
                )
                db.add(perm)
                db.flush()
            permissions[perm.name] = perm

        for role_name, perm_names in (config.get("role_permissions") or {}).items():
            role = roles.get(role_name)
            if role is None:
                continue
            for perm_name in perm_names or []:
                perm = permissions.get(perm_name)
                if perm is None:
                    continue
                if db.get(RolePermission, (role.id, perm.id)) is None:
                    db.add(RolePermission(role_id=role.id, permission_id=perm.id))

        for entry in config.get("principals", []):
            principal = db.exec(
                select(Principal).where(Principal.username == entry["username"])
            ).first()
            if principal is None:
                password = settings.BOOTSTRAP_ADMIN_PASSWORD or settings.DEFAULT_RESET_PASSWORD
                principal = Principal(
                    id=entry.get("id"),
                    username=entry["username"],
                    email=entry["email"].lower(),
                    nickname=entry.get("nickname", ""),
                    password_hash=hasher.hash(password),
                )
                db.add(principal)
                db.flush()
                logger.warning(
                    "Seeded bootstrap principal {}; change its password after first login",
                    principal.username,
                )
            for role_name in entry.get("roles", []):
                role = roles.get(role_name)
                if role is not None and db.get(PrincipalRole, (principal.id, role.id)) is None:
                    db.add(PrincipalRole(principal_id=principal.id, role_id=role.id))

        db.commit()

        if engine.dialect.name == "postgresql":
            # Explicit ids do not advance SERIAL sequences
            for table in ("principals", "roles", "permissions"):
                db.connection().execute(text(
                    f"SELECT setval(pg_get_serial_sequence('{table}', 'id'), "
                    f"COALESCE((SELECT MAX(id) FROM {table}), 1))"
                ))
            db.commit()


