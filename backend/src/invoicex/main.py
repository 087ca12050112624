"""
FastAPI application entry point.

This is the main application that ties together all components:
- API routes for evidence storage and KYB verification
- Service container lifecycle (database, storage backend, ledger)
- CORS configuration for dashboard access
- Error handling and logging
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from invoicex import __version__
from invoicex.api.routes import documents, health, kyb
from invoicex.api.schemas import ErrorResponse
from invoicex.config import Settings, get_settings
from invoicex.container import Container, build_container
from invoicex.domain.errors import (
    BackendUnavailable,
    DecodeError,
    KYBError,
    NotFound,
    Unauthorized,
    UnsupportedJurisdiction,
    UploadFailed,
    WorkflowError,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: list[tuple[type[KYBError], int, str]] = [
    (NotFound, status.HTTP_404_NOT_FOUND, "Not Found"),
    (UploadFailed, status.HTTP_502_BAD_GATEWAY, "Upload Failed"),
    (BackendUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, "Service Unavailable"),
    (DecodeError, status.HTTP_500_INTERNAL_SERVER_ERROR, "Corrupt Content"),
    (UnsupportedJurisdiction, status.HTTP_400_BAD_REQUEST, "Unsupported Jurisdiction"),
    (WorkflowError, status.HTTP_409_CONFLICT, "Conflict"),
    (Unauthorized, status.HTTP_403_FORBIDDEN, "Forbidden"),
]


def status_for(exc: KYBError) -> tuple[int, str]:
    """HTTP status code and title for a service error."""
    for error_type, status_code, title in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, title
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"


def _error_response(status_code: int, error: str, detail: str | None, code: str | None) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, code=code)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    settings: Settings | None = None,
    container: Container | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Configuration (environment if omitted)
        container: Pre-built services; built from settings at startup if omitted

    Returns:
        Configured FastAPI instance ready to serve requests.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build and open services on startup, close them on shutdown."""
        logger.info(f"Starting InvoiceX KYB v{__version__}")
        logger.info(f"Ledger backend: {settings.ledger_backend} ({settings.xrpl_network})")
        logger.info(f"Debug mode: {settings.debug}")

        services = container or build_container(settings)
        await services.open()
        app.state.container = services

        yield  # Application runs here

        logger.info("Shutting down InvoiceX KYB")
        await services.close()

    app = FastAPI(
        title="InvoiceX KYB API",
        description=(
            "Know-Your-Business verification for invoice financing.\n\n"
            "Stores business evidence by content address and runs the "
            "reviewer workflow for KYB requests."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else ["https://invoicex.app"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(health.router)
    app.include_router(documents.router, prefix="/api/v1")
    app.include_router(kyb.router, prefix="/api/v1")

    @app.exception_handler(KYBError)
    async def kyb_exception_handler(request: Request, exc: KYBError):
        """Translate service errors to status codes."""
        status_code, title = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(status_code, title, str(exc), exc.code)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _error_response(status.HTTP_400_BAD_REQUEST, "Bad Request", str(exc), "invalid_input")

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler for unhandled errors."""
        logger.exception(f"Unhandled error: {exc}")

        # Don't expose internal errors in production
        detail = str(exc) if settings.debug else "An internal error occurred"
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail, None)

    return app


# Create the application instance
app = create_app()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "invoicex.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
