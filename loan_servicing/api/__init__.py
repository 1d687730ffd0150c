"""
Loan Servicing API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..errors import (
    AlreadyCompletedError, CollaboratorError, ConcurrencyConflictError,
    InvalidTransitionError, LoanNotFoundError, LoanServicingError,
    PermissionDeniedError, ValidationError
)
from ..logging_config import get_logger
from .loans import router as loans_router
from .payments import portfolio_router, router as payments_router
from .tieups import router as tie_ups_router


logger = get_logger("loan_servicing.api")

# Checked in order; TerminalStateError is an InvalidTransitionError
ERROR_STATUS_CODES = [
    (ValidationError, 422),
    (LoanNotFoundError, 404),
    (PermissionDeniedError, 403),
    (InvalidTransitionError, 409),
    (AlreadyCompletedError, 409),
    (ConcurrencyConflictError, 409),
    (CollaboratorError, 502),
]


def status_code_for(error: LoanServicingError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


async def handle_loan_servicing_error(request: Request, exc: LoanServicingError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing API",
        description="Loan lifecycle and EMI payment tracking for gold and product loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LoanServicingError, handle_loan_servicing_error)

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(payments_router, prefix="/loans", tags=["Payments"])
    app.include_router(portfolio_router, prefix="/portfolio", tags=["Payments"])
    app.include_router(tie_ups_router, prefix="/tie-ups", tags=["Tie-ups"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "tie_ups": "/tie-ups",
                "portfolio": "/portfolio",
                "schedule": "/loans/{loan_id}/schedule",
                "installments": "/loans/{loan_id}/installments/{index}"
            }
        }

    return app


app = create_app()
