"""
Loan Desk API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import LoanDeskConfig, get_config
from ..errors import (
    LoanDeskError, ValidationError, NotFoundError, ConflictError, TransientStoreError
)
from ..logging_config import setup_logging
from ..system import LoanDeskSystem
from .loans import router as loans_router
from .slots import router as slots_router
from .payments import router as payments_router


STATUS_BY_ERROR = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    TransientStoreError: 503,
}


def status_for(error: LoanDeskError) -> int:
    for error_type, status_code in STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(system: Optional[LoanDeskSystem] = None,
               config: Optional[LoanDeskConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.
    
    The system (store plus engine components) is built at startup unless one
    is passed in, initialized before serving, and closed at shutdown.
    """
    config = config or get_config()
    
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config.log_level, log_format=config.log_format)
        app.state.system = system or LoanDeskSystem.from_config(config)
        await app.state.system.initialize()
        yield
        await app.state.system.close()
    
    app = FastAPI(
        title="Loan Desk API",
        description="Account numbers, physical file slots and payment ledger for a loan office",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    
    @app.exception_handler(LoanDeskError)
    async def handle_engine_error(request: Request, exc: LoanDeskError):
        return JSONResponse(
            status_code=status_for(exc),
            content={"error": exc.kind, "message": exc.message}
        )
    
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(slots_router, prefix="/loansDoc", tags=["Slots"])
    app.include_router(payments_router, tags=["Payments"])
    
    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        system = getattr(request.app.state, "system", None)
        return {
            "status": "healthy" if system is not None and system.initialized else "starting",
            "service": "loan_desk_api",
            "version": __version__
        }
    
    return app


app = create_app()
