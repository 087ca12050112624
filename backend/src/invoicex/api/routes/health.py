"""
Health check endpoint.

Provides system health status for monitoring and load balancers.
"""

from fastapi import APIRouter

from invoicex import __version__
from invoicex.api.dependencies import ContainerDep
from invoicex.api.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ContainerDep) -> HealthResponse:
    """
    Check system health.

    Reports the storage backend chosen at startup so operators can spot an
    instance running on local fallback storage.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        storage_provider=container.backend.provider,
        ledger_backend=container.settings.ledger_backend,
    )
