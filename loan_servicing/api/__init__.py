"""
Loan Servicing API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clients import router as clients_router
from .loans import router as loans_router
from .portal import router as portal_router
from .. import __version__
from ..config import get_config
from ..exceptions import (
    NotFoundError, InvalidAmountError, PlanLimitExceededError,
    ConflictRetryableError, TransactionFailureError
)


# Most specific first; Starlette resolves handlers along the exception's MRO
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InvalidAmountError, 400),
    (PlanLimitExceededError, 403),
    (ConflictRetryableError, 409),
    (TransactionFailureError, 500),
    (ValueError, 400),
)


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Multi-tenant loan servicing: amortization, ledger and payment allocation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    config = get_config()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in config.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_type, status_code in ERROR_STATUS_CODES:
        app.add_exception_handler(exc_type, _error_handler(status_code))

    app.include_router(clients_router, prefix="/t/{tenant_id}/clients", tags=["Clients"])
    app.include_router(loans_router, prefix="/t/{tenant_id}/loans", tags=["Loans"])
    app.include_router(portal_router, prefix="/t/{tenant_id}/portal", tags=["Portal"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    return app
