"""FastAPI application initialization."""

from contextlib import asynccontextmanager
from uuid import uuid4

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.admin import router as admin_router
from src.api.interventions import router as interventions_router
from src.api.middleware import CorrelationIdMiddleware
from src.api.routes import router
from src.config import get_settings
from src.services.logging_service import configure_logging, get_logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger = get_logger("main")

    try:
        from src.database import init_database, run_migrations

        await init_database()
        await run_migrations()
        logger.info("database_initialized")
    except Exception as e:
        logger.warning(
            "database_initialization_failed",
            error=str(e),
            note="Continuing without database - evaluations will report engine_error",
        )

    try:
        from src.services.redis_service import get_redis

        await get_redis()
        logger.info("redis_initialized")
    except Exception as e:
        logger.warning(
            "redis_initialization_failed",
            error=str(e),
            note="Continuing without Redis - the action ledger is disabled",
        )

    heartbeat_service = None
    if settings.heartbeat_enabled:
        try:
            from src.services.heartbeat_service import HeartbeatService

            heartbeat_service = HeartbeatService()
            heartbeat_service.start()
        except Exception as e:
            logger.warning(
                "heartbeat_start_failed",
                error=str(e),
                note="Continuing without heartbeat - only synchronous evaluation is available",
            )

    logger.info(
        "application_started",
        model=settings.openai_model,
        log_level=settings.log_level,
        heartbeat=heartbeat_service is not None,
    )

    yield

    if heartbeat_service is not None:
        try:
            await heartbeat_service.stop()
        except Exception as e:
            logger.warning("heartbeat_stop_failed", error=str(e))

    try:
        from src.database import close_database

        await close_database()
    except Exception as e:
        logger.warning("database_close_failed", error=str(e))

    try:
        from src.services.redis_service import close_redis

        await close_redis()
    except Exception as e:
        logger.warning("redis_close_failed", error=str(e))

    logger.info("application_shutdown")


app = FastAPI(
    title="Proactive Intervention Engine",
    description="Decides when and how to proactively intervene for a user",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 400 with the first offending field and the correlation id."""
    correlation_id = getattr(request.state, "correlation_id", None) or str(uuid4())
    logger = structlog.get_logger()

    errors = exc.errors()
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", ["unknown"]))
        message = first_error.get("msg", "Validation failed")
        detail = f"Field '{field}': {message}"
    else:
        detail = "Request validation failed"

    logger.warning("validation_error", correlation_id=correlation_id, detail=detail)

    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation error",
            "detail": detail,
            "correlation_id": correlation_id,
        },
        headers={"X-Correlation-Id": correlation_id},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(CorrelationIdMiddleware)

app.include_router(interventions_router)
app.include_router(admin_router)
app.include_router(router)
