"""
ScanMaster - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Authentication, self-service and admin routes
- Principal Store and Session Store lifecycle management
- Uniform response envelope for every error

Security: Admin routes are guarded by RBAC dependencies; every protected
request validates the credential against the Session Store.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from scanmaster.admin.routes import router as admin_router
from scanmaster.auth.database import get_engine, init_db
from scanmaster.auth.identity import IdentityService
from scanmaster.auth.password import PasswordHasher
from scanmaster.auth.rbac import AuthorizationService
from scanmaster.auth.repository import PrincipalStore
from scanmaster.auth.roles import PermissionService, RoleService
from scanmaster.auth.routes import router as auth_router
from scanmaster.auth.routes import users_router
from scanmaster.auth.service import SessionService
from scanmaster.auth.sessions import create_session_store
from scanmaster.auth.tokens import CredentialManager
from scanmaster.concurrency import bounded, run_blocking
from scanmaster.config import settings
from scanmaster.errors import AuthError
from scanmaster.gateway.middleware import SecurityMiddleware
from scanmaster.gateway.responses import register_exception_handlers, success
from scanmaster.logger import configure_logging


VERSION = "0.1.0"


def create_app(engine=None, session_store=None, hasher=None, credentials=None, configure_logs=True) -> FastAPI:
    """
    Build the ScanMaster application.

    Any component left as None is built from settings at startup; tests
    pass their own engine, in-memory session store, cheap hasher and
    credential manager.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
            - Create tables and seed bootstrap identity rows
            - Connect the Session Store
            - Wire the services onto app.state

        Shutdown:
            - Close the Session Store and dispose the engine
        """
        if configure_logs:
            configure_logging()

        db_engine = engine if engine is not None else get_engine(settings.DATABASE_URL)
        password_hasher = hasher or PasswordHasher(settings.BCRYPT_ROUNDS)
        init_db(db_engine, hasher=password_hasher)

        store = PrincipalStore(db_engine)
        sessions = session_store if session_store is not None else create_session_store()
        credential_manager = credentials or CredentialManager()

        authz = AuthorizationService(store, sessions)
        app.state.db_engine = db_engine
        app.state.principal_store = store
        app.state.session_store = sessions
        app.state.authz_service = authz
        app.state.identity_service = IdentityService(store, sessions, password_hasher, authz=authz)
        app.state.role_service = RoleService(store, authz=authz)
        app.state.permission_service = PermissionService(store, authz=authz)
        app.state.session_service = SessionService(
            store, sessions, credential_manager, password_hasher, authz=authz,
        )
        logger.info("ScanMaster {} started (session backend: {})", VERSION, type(sessions).__name__)

        yield

        # Shutdown
        await sessions.close()
        if engine is None:
            db_engine.dispose()
        logger.info("ScanMaster stopped")

    app = FastAPI(
        title="ScanMaster",
        description="Identity, session and authorization service",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.add_middleware(SecurityMiddleware)
    register_exception_handlers(app)

    app.include_router(auth_router, prefix="/api/v1")
    app.include_router(users_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint.
        Returns liveness of the Principal Store and the Session Store.
        """
        principal_store = await _probe(run_blocking(app.state.principal_store.ping))
        session_store = await _probe(bounded(app.state.session_store.ping(), "ping"))
        healthy = principal_store and session_store
        return success(
            {
                "healthy": healthy,
                "version": VERSION,
                "services": {
                    "principal_store": principal_store,
                    "session_store": session_store,
                },
            },
            "healthy" if healthy else "degraded",
        )

    return app


async def _probe(awaitable) -> bool:
    try:
        return bool(await awaitable)
    except AuthError as exc:
        logger.warning("Health probe failed: {} ({})", exc.message, exc.kind)
        return False


app = create_app()
