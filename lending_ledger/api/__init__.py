"""
Lending Ledger API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import get_config
from ..exceptions import LedgerError, NotFoundError
from ..logging_config import get_logger, log_action, setup_logging
from .customers import router as customers_router
from .loans import router as loans_router
from .payments import router as payments_router
from .schemas import error_response

logger = get_logger("lending_ledger.api")


def _register_exception_handlers(app: FastAPI) -> None:
    """Map ledger errors to HTTP statuses with the {success, message} envelope"""

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = 404 if isinstance(exc, NotFoundError) else 400
        log_action(logger, "info", exc.message, action="request_rejected",
                   resource=request.url.path,
                   extra={"error": type(exc).__name__, "status_code": status_code})
        return JSONResponse(status_code=status_code, content=error_response(exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=error_response("Invalid request", jsonable_encoder(exc.errors()))
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=error_response(str(exc.detail)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=error_response("Internal server error"))


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    config = get_config()

    app = FastAPI(
        title="Lending Ledger API",
        description="Customer, loan and payment ledger with simple-interest accrual",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app)

    prefix = config.api_prefix.rstrip("/")
    app.include_router(customers_router, prefix=f"{prefix}/customers", tags=["Customers"])
    app.include_router(loans_router, prefix=f"{prefix}/loans", tags=["Loans"])
    app.include_router(payments_router, prefix=f"{prefix}/payments", tags=["Payments"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_ledger_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "customers": f"{prefix}/customers",
                "loans": f"{prefix}/loans",
                "payments": f"{prefix}/payments",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format,
                  log_file=config.log_file)
    uvicorn.run(
        "lending_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
