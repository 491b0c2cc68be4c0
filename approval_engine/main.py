from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
import structlog

from approval_engine.config import settings
from approval_engine.engine import ApprovalEngine, build_engine
from approval_engine.errors import ApprovalError
from approval_engine.logging_config import setup_logging
from approval_engine.middleware.correlation import CorrelationIdMiddleware

# Import models so they are registered with Base.metadata
import approval_engine.models  # noqa: F401

logger = structlog.get_logger()


def _build_sql_engine() -> ApprovalEngine:
    from approval_engine.database import get_session_factory
    from approval_engine.services.role_resolver import SqlAlchemyRoleResolver
    from approval_engine.store.sql import SqlAlchemyApprovalStore

    factory = get_session_factory()
    return build_engine(
        SqlAlchemyApprovalStore(factory),
        SqlAlchemyRoleResolver(factory),
        settings=settings,
    )


def create_app(engine: Optional[ApprovalEngine] = None) -> FastAPI:
    """
    Build the service app. With an injected engine (tests, embedding) no
    database is touched; otherwise the SQL-backed engine is wired at startup.
    """
    owns_database = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        logger.info("starting_approval_engine", env=settings.ENVIRONMENT)
        if owns_database:
            from approval_engine.database import close_db, init_db

            await init_db()
            app.state.engine = _build_sql_engine()
        if settings.ESCALATION_SCAN_ENABLED:
            app.state.engine.scheduler.start()
        yield
        await app.state.engine.scheduler.stop()
        if owns_database:
            await close_db()
        logger.info("stopped_approval_engine")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.engine = engine

    # -----------------------------------------------------------------------
    # Exception handlers: every error leaves as
    # {"error": {"code": "...", "message": "...", "details": {...}}}
    # -----------------------------------------------------------------------

    @app.exception_handler(ApprovalError)
    async def approval_error_handler(request: Request, exc: ApprovalError) -> JSONResponse:
        logger.info(
            "approval_error",
            code=exc.code.value,
            status=exc.http_status,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail
        if isinstance(detail, str):
            detail = {"error": {"code": "HTTP_ERROR", "message": detail}}
        elif isinstance(detail, dict) and "error" not in detail:
            detail = {"error": detail}
        return JSONResponse(status_code=exc.status_code, content=detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "details": exc.errors(),
                }
            },
        )

    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/health", tags=["System"])
    async def health(request: Request, response: Response):
        health_status = {"status": "healthy", "version": settings.APP_VERSION, "checks": {}}
        engine_ = request.app.state.engine

        if engine_ is None:
            health_status["checks"]["engine"] = "error"
            health_status["status"] = "unhealthy"
        else:
            health_status["checks"]["engine"] = "ok"
            health_status["checks"]["escalation_scheduler"] = (
                "running" if engine_.scheduler.running else "stopped"
            )

        if owns_database:
            from approval_engine.database import get_engine

            try:
                async with get_engine().connect() as conn:
                    await conn.execute(text("SELECT 1"))
                health_status["checks"]["db"] = "ok"
            except Exception as e:
                logger.error("health_check_db_failed", error=str(e))
                health_status["checks"]["db"] = "error"
                health_status["status"] = "unhealthy"

        if health_status["status"] == "unhealthy":
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

        return health_status

    from approval_engine.jobs.scheduled import router as jobs_router

    app.include_router(jobs_router, prefix="/internal/jobs", tags=["Internal Jobs"])
    return app


app = create_app()
