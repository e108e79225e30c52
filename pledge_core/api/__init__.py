"""
Pledge Loan API Application Factory
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .loans import router as loans_router
from .. import __version__
from ..config import get_config
from ..exceptions import (
    PledgeError, LoanNotFound, ConfigurationError
)
from ..logging_config import get_logger, log_action


logger = get_logger("pledge.api")

# Business errors not listed here are conflicts with the loan's current state
ERROR_STATUS_CODES = {
    LoanNotFound: 404,
    ConfigurationError: 422,
}


def status_code_for(error: PledgeError) -> int:
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(error, error_type):
            return code
    return 409


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Pledge Loan Engine API",
        description="Interest accrual and repayment allocation for pledge loans",
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

    app.include_router(loans_router, prefix="/loans", tags=["Loans"])

    @app.exception_handler(PledgeError)
    async def pledge_error_handler(request: Request, exc: PledgeError):
        code = status_code_for(exc)
        log_action(logger, "warning", str(exc), action="request_rejected", resource=request.url.path,
                   extra={"error": type(exc).__name__, "status_code": code})
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "error": type(exc).__name__})

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "pledge_core_api",
            "version": __version__
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "pledge_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        workers=None if debug else config.api_workers,
        log_level=config.log_level.lower()
    )
