"""FastAPI application entry point."""

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from researchhub.core.config import settings
from researchhub.core.logging import setup_logging
from researchhub.core.metrics import get_content_type, get_metrics, set_app_info
from researchhub.core.middleware import (
    MetricsMiddleware,
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
)
from researchhub.modules.billing import router as billing_router
from researchhub.modules.billing.errors import LedgerValidationError

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## ResearchHub Billing & Entitlement API

Tracks money moving in (subscriptions, one-off payments, manual credit
purchases) and answers entitlement questions for the rest of the platform.

### Features

* **Entitlements** - plan limits, usage percentages, trial state
* **Manual payments** - bank transfer submission and admin verification
* **Credits** - credit balances with expiring plan windows
* **Fraud review** - risk levels and manual review holds
* **Gateway webhooks** - normalized, replay-safe charge and subscription events

Admin endpoints expect the acting admin in the `X-Admin-Id` header.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "billing",
            "description": "Entitlements, payments, credits and fraud review",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, log_request_body=False)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(LedgerValidationError)
async def ledger_validation_error_handler(
    request: Request, exc: LedgerValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"error_code": exc.error_code, "message": exc.message}},
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint.

    Returns:
        dict: Health status with "healthy" value.
    """
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
