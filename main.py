"""
Main FastAPI Application
Entry point for the leave management backend
"""
import logging
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorClient

from lms.config import settings
from lms.core.exceptions import LeaveError
from lms.core.log import setup_logging
from lms.core.rate_limit import RateLimiter, build_counter_store
from lms.core.rbac import Role
from lms.db import init_db
from lms.models.user import User
from lms.services.policy import policy_service

# Import routers
from lms.api.routes import auth, leaves, balances, policies, jobs, audit, notifications, holidays, dashboard

logger = logging.getLogger(__name__)


async def ensure_default_admin() -> None:
    """Create the first system administrator when the database has none"""
    admin_count = await User.find(User.role == Role.SYSTEM_ADMIN).count()
    if admin_count:
        return

    admin = User(
        employee_id="ADMIN001",
        name="System Admin",
        email="admin@saigo-lms.com",
        role=Role.SYSTEM_ADMIN,
        department="Administration",
        designation="Administrator",
        join_date=datetime.utcnow(),
        password_hash=auth.get_password_hash("admin123"),
    )
    await admin.insert()
    logger.warning("Default admin created (admin@saigo-lms.com / admin123), change the password")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    logger.info("Starting %s", settings.APP_NAME)

    # Initialize MongoDB
    client = AsyncIOMotorClient(settings.MONGODB_URL)
    await init_db(client[settings.MONGODB_DB_NAME])
    logger.info("Connected to MongoDB: %s", settings.MONGODB_DB_NAME)

    await policy_service.seed_defaults()
    await ensure_default_admin()

    store = build_counter_store(settings.REDIS_URL, settings.REDIS_ENABLED)
    app.state.rate_limiter = RateLimiter(
        store,
        settings.RATE_LIMIT_REQUESTS,
        settings.RATE_LIMIT_PERIOD,
        enabled=settings.RATE_LIMIT_ENABLED,
    )

    logger.info("Server running on %s:%s", settings.HOST, settings.PORT)

    yield

    # Shutdown
    logger.info("Shutting down")
    primary = getattr(store, "primary", None)
    if primary is not None:
        await primary.close()
    client.close()


async def leave_error_handler(request: Request, exc: LeaveError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(with_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Leave requests, multi-stage approvals, balances and scheduled accrual/lapse",
        lifespan=lifespan if with_lifespan else None,
        docs_url="/api/docs",
        redoc_url="/api/redoc"
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LeaveError, leave_error_handler)

    # Include routers
    app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])
    app.include_router(leaves.router, prefix="/api/leaves", tags=["Leaves"])
    app.include_router(balances.router, prefix="/api/balances", tags=["Balances"])
    app.include_router(policies.router, prefix="/api/policies", tags=["Policies"])
    app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])
    app.include_router(audit.router, prefix="/api/audit", tags=["Audit"])
    app.include_router(notifications.router, prefix="/api/notifications", tags=["Notifications"])
    app.include_router(holidays.router, prefix="/api/holidays", tags=["Holidays"])
    app.include_router(dashboard.router, prefix="/api/dashboard", tags=["Dashboard"])

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": f"{settings.APP_NAME} API",
            "version": settings.APP_VERSION,
            "docs": "/api/docs"
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat()
        }

    return app


# Create FastAPI app
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
