import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from esim_reseller.api.health import router as health_router
from esim_reseller.api.router import api_router
from esim_reseller.config import settings
from esim_reseller.core.exceptions import (
    InsufficientFundsError,
    ResellerException,
    UpstreamAuthError,
)
from esim_reseller.core.logging import configure_logging, get_logger, set_correlation_id
from esim_reseller.core.resilience import reset_circuit_breakers
from esim_reseller.core.security import limiter, verify_api_key
from esim_reseller.core.utils import to_money
from esim_reseller.db.base import Database
from esim_reseller.models.common import ErrorDetail, ErrorResponse, InsufficientFundsResponse
from esim_reseller.suppliers.registry import close_adapters

# Configure logging (set json_logs=True for production)
configure_logging(json_logs=settings.env != "development", log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    logger.info(
        "application_starting",
        env=settings.env,
        require_api_key=settings.require_api_key,
        rate_limit=f"{settings.rate_limit_requests}/{settings.rate_limit_window}",
    )

    if settings.require_api_key and not settings.get_api_keys():
        logger.warning(
            "no_api_keys_configured",
            message="API key authentication is enabled but no keys configured. "
            "Set API_KEYS environment variable or disable with REQUIRE_API_KEY=false",
        )

    database: Database = app.state.database
    await database.create_all()

    yield

    logger.info("application_shutting_down")
    await close_adapters()
    reset_circuit_breakers()
    await database.dispose()


app = FastAPI(
    title="eSIM Reseller",
    description="Agent wallets, pricing and eSIM fulfillment across suppliers",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.database = Database(settings.database_url, echo=settings.database_echo)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def log_requests(request: Request, call_next: Any) -> Any:
    """Log all incoming requests and responses."""
    # One correlation id per request ties the purchase, supplier calls and ledger together
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))

    if request.url.path == "/health":
        return await call_next(request)

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        agent_id=request.headers.get(settings.agent_id_header),
        client=request.client.host if request.client else None,
    )

    start_time = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start_time) * 1000

    logger.info(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        elapsed_ms=round(elapsed_ms, 2),
    )

    response.headers["X-Request-ID"] = correlation_id
    return response


@app.exception_handler(InsufficientFundsError)
async def insufficient_funds_handler(
    request: Request,  # noqa: ARG001
    exc: InsufficientFundsError,
) -> JSONResponse:
    """Flat 402 body, kept for the checkout UI."""
    body = InsufficientFundsResponse(balance=str(to_money(exc.balance)))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(ResellerException)
async def reseller_exception_handler(
    request: Request,  # noqa: ARG001
    exc: ResellerException,
) -> JSONResponse:
    """Handle service exceptions."""
    error_response = ErrorResponse(
        error=ErrorDetail(
            code=exc.error_code,
            message=exc.message,
            upstream=exc.upstream if isinstance(exc, UpstreamAuthError) else None,
        ),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response.model_dump(exclude_none=True),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    error_response = ErrorResponse(error=ErrorDetail(code="validation_error", message=message))
    return JSONResponse(status_code=422, content=error_response.model_dump(exclude_none=True))


# Include routes with API key dependency
app.include_router(
    api_router,
    dependencies=[Depends(verify_api_key)],
)

# Health endpoint (no auth required)
app.include_router(health_router)
