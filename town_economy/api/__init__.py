"""
Town Economy API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import router as accounts_router
from .admin import router as admin_router
from .land import router as land_router
from .loans import router as loans_router
from .transfers import router as transfers_router
from .treasury import router as treasury_router
from .. import __version__
from ..errors import (
    AuthorizationError, ConflictError, EconomyError, InsufficientFundsError,
    NotFoundError, ValidationError
)
from ..config import get_config
from ..logging_config import get_logger, setup_logging
from ..system import TownEconomySystem


logger = get_logger("town_economy.api")

# Most specific first; InsufficientTreasuryFundsError falls under InsufficientFundsError
STATUS_CODES = (
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InsufficientFundsError, 402),
)


def status_for(error: EconomyError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(system: Optional[TownEconomySystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Prebuilt system (tests pass one over in-memory storage);
            built from configuration when omitted
    """
    system = system or TownEconomySystem()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.system.close()

    app = FastAPI(
        title="Town Economy API",
        description="Classroom economy ledger with teacher-approved transfers, loans, treasury and land",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    origins = [origin.strip() for origin in system.config.cors_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EconomyError)
    async def economy_error_handler(request: Request, exc: EconomyError):
        status_code = status_for(exc)
        if status_code == 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
            return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(treasury_router, prefix="/treasury", tags=["Treasury"])
    app.include_router(land_router, prefix="/land", tags=["Land"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "town_economy_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Town Economy API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "transfers": "/transfers",
                "loans": "/loans",
                "treasury": "/treasury",
                "land": "/land",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "town_economy.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
