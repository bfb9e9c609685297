# backend/marketplace/main.py

import asyncio
import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as SA_TimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models  # noqa: F401  registers tables on Base.metadata
from .api import api_admin, api_appointment, api_payment, auth
from .core.config import settings
from .core.observability import setup_logging, setup_tracer
from .database import Base, engine, get_db_session
from .services.appointments import auto_complete
from .utils.errors import DomainError, UpstreamError
from .utils.notifications import alert_scheduler_failure
from .utils.status_logger import register_status_listeners

setup_logging()
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)
register_status_listeners()

app = FastAPI(title="Marketplace Appointments API", default_response_class=ORJSONResponse)
setup_tracer(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
    allow_credentials=not settings.CORS_ALLOW_ALL,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger.info("CORS origins set to: %s", settings.CORS_ORIGINS)


@app.middleware("http")
async def catch_exceptions(request: Request, call_next):
    """Return JSON responses for HTTP errors and log them."""
    try:
        response = await call_next(request)
    except StarletteHTTPException as exc:  # return the original status and detail
        logger.error(
            "HTTP error %s at %s: %s", exc.status_code, request.url.path, exc.detail
        )
        response = ORJSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}
        )
    except SA_TimeoutError as exc:  # DB pool timeout -> 503 to reduce retry storms
        logger.error("DB timeout at %s: %s", request.url.path, str(exc))
        response = ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "message": "Database busy, please retry"},
        )
    except Exception as exc:  # pragma: no cover - generic handler
        logger.exception("Unhandled error: %s", exc)
        response = ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Internal Server Error"},
        )
    return response


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """Render service-layer failures as ``{"success": false, "message": ...}``."""
    if isinstance(exc, UpstreamError):
        logger.error(
            "Upstream failure at %s (cid=%s, retryable=%s): %s",
            request.url.path,
            exc.correlation_id,
            exc.retryable,
            exc.message,
        )
    else:
        logger.info("%s at %s: %s", type(exc).__name__, request.url.path, exc.message)
    content = {"success": False, "message": exc.message}
    if isinstance(exc, UpstreamError):
        content["retryable"] = exc.retryable
        if exc.correlation_id:
            content["correlationId"] = exc.correlation_id
    return ORJSONResponse(status_code=exc.status_code, content=content)


def _validation_message(errors) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = str(first.get("msg", "Invalid value")).removeprefix("Value error, ")
    return f"{field}: {message}" if field else message


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Render request validation failures like ``ValidationError`` and log the details."""
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, jsonable_encoder(errors))
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": _validation_message(errors)},
    )


@app.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok"}


api_prefix = settings.API_V1_STR  # usually something like "/api/v1"

# ─── AUTH ROUTES (no version prefix) ────────────────────────────────────────────────
app.include_router(auth.router, prefix="/auth", tags=["auth"])

app.include_router(
    api_appointment.router,
    prefix=f"{api_prefix}/appointments",
    tags=["appointments"],
)
app.include_router(
    api_payment.router,
    prefix=f"{api_prefix}/payment",
    tags=["payments"],
)
app.include_router(
    api_admin.router,
    prefix=f"{api_prefix}/admin",
    tags=["admin"],
)


def run_auto_complete() -> list[int]:
    with get_db_session() as db:
        return auto_complete(db)


async def auto_complete_loop() -> None:
    """Periodically complete confirmed appointments whose time has passed."""
    while True:
        await asyncio.sleep(settings.AUTO_COMPLETE_INTERVAL_SECONDS)
        # Retry with backoff on transient DB failures
        delay = 5
        max_retries = 5
        for attempt in range(max_retries):
            try:
                completed = await asyncio.to_thread(run_auto_complete)
                if completed:
                    logger.info("Auto-complete sweep finished: %s", completed)
                break
            except OperationalError as exc:  # pragma: no cover - transient DB outage
                alert_scheduler_failure(exc)
                if attempt < max_retries - 1:
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, 60)
                    continue
                else:
                    # Give up for this cycle; try again next tick
                    break
            except Exception as exc:  # pragma: no cover - log and continue
                alert_scheduler_failure(exc)
                break


@app.on_event("startup")
async def start_background_tasks() -> None:
    """Launch background maintenance tasks."""
    if not settings.ENABLE_AUTO_COMPLETE or os.getenv("PYTEST_RUN") == "1":
        return
    asyncio.create_task(auto_complete_loop())


@app.get("/")
async def root():
    return {"message": "Welcome to the Marketplace Appointments API"}
