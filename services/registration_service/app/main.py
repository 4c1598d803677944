"""FastAPI application for the Registration Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from libs.common.arq_config import close_arq_pool
from libs.common.middleware import add_observability_middleware
from libs.common.rate_limit import limiter, rate_limit_exceeded_handler
from services.registration_service.routers import (
    internal_router,
    promo_codes_router,
    registrations_router,
    waitlist_router,
    webhooks_router,
)
from services.registration_service.services.errors import DomainError, ErrorCode
from slowapi.errors import RateLimitExceeded

ERROR_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.COHORT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.COHORT_FULL: status.HTTP_409_CONFLICT,
    ErrorCode.COHORT_NOT_FULL: status.HTTP_400_BAD_REQUEST,
    ErrorCode.ALREADY_REGISTERED: status.HTTP_409_CONFLICT,
    ErrorCode.REGISTRATION_WINDOW_CLOSED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_PROMO_CODE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.PROMO_CODE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.PROMO_CODE_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.REGISTRATION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_ON_WAITLIST: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_COHORT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.STORAGE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.code, status.HTTP_400_BAD_REQUEST)
    headers = None
    if exc.code == ErrorCode.STORAGE_UNAVAILABLE:
        headers = {"Retry-After": "5"}
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code.value, **exc.extra()},
        headers=headers,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_arq_pool()


def create_app() -> FastAPI:
    """Create and configure the Registration Service FastAPI app."""
    app = FastAPI(
        title="Cohort Registration Service",
        version="0.1.0",
        description="Seat reservation, waitlist, promo codes and payment reconciliation for cohorts.",
        lifespan=lifespan,
    )

    add_observability_middleware(app)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(DomainError, domain_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "registration"}

    # Multi-segment routes before the registration router's /{registration_id}
    app.include_router(waitlist_router)
    app.include_router(promo_codes_router)
    app.include_router(webhooks_router)
    app.include_router(internal_router)
    app.include_router(registrations_router)

    return app


app = create_app()
