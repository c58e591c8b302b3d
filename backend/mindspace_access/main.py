"""MindSpace access engine — FastAPI application."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mindspace_access.config import Settings, settings as default_settings
from mindspace_access.database import build_engine, build_session_factory, create_tables
from mindspace_access.errors import register_exception_handlers
from mindspace_access.middleware.auth import RoleBasedRateLimiter
from mindspace_access.middleware.guard import PermissionGuard
from mindspace_access.services.audit_service import JsonlAuditMirror, PermissionAuditor
from mindspace_access.services.permission_service import PermissionService
from mindspace_access.services.store import SqlAlchemyPermissionStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> FastAPI:
    """Build the application with its collaborators.

    Tests pass their own *session_factory* (already bound to a prepared
    database); otherwise an engine is built from ``DATABASE_URL`` and its
    tables are created on startup.
    """
    settings = settings or default_settings
    engine = None
    if session_factory is None:
        engine = build_engine(settings.DATABASE_URL)
        session_factory = build_session_factory(engine)

    mirror = JsonlAuditMirror(settings.AUDIT_MIRROR_PATH) if settings.AUDIT_MIRROR_PATH else None
    store = SqlAlchemyPermissionStore(session_factory)
    auditor = PermissionAuditor(store, mirror=mirror, audit_checks=settings.AUDIT_PERMISSION_CHECKS)
    service = PermissionService(store, auditor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting MindSpace access API...")
        if engine is not None:
            await create_tables(engine)
            logger.info("Database tables verified")
        yield

        # Shutdown
        if mirror is not None:
            await mirror.drain()
        if engine is not None:
            await engine.dispose()
        logger.info("MindSpace access API shut down")

    app = FastAPI(
        title="MindSpace Access",
        description="Role and permission engine — RBAC/ABAC decisions, grants, rules and audit",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.permission_service = service
    app.state.permission_guard = PermissionGuard(service)
    app.state.rate_limiter = RoleBasedRateLimiter.from_settings(settings)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    from mindspace_access.routes import permissions

    app.include_router(permissions.router)

    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy", "service": "MindSpace Access API", "version": "1.0.0"}

    return app
