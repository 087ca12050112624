"""
Storage backend selection.

The backend is chosen once per process from configuration. Missing remote
credentials force the local fallback; there is no mixed mode.
"""

import logging

from invoicex.config import Settings
from invoicex.infrastructure.pinata import PinataBackend
from invoicex.infrastructure.storage import LocalFallbackBackend, StorageBackend

logger = logging.getLogger(__name__)


def create_storage_backend(settings: Settings) -> StorageBackend:
    """
    Build the storage backend for this deployment.

    Returns:
        PinataBackend when remote storage is requested and credentials are
        configured, LocalFallbackBackend otherwise.
    """
    if settings.storage_backend == "remote" and settings.remote_storage_configured:
        logger.info(f"Using Pinata storage via {settings.pinata_api_url}")
        return PinataBackend(
            jwt=settings.pinata_jwt.get_secret_value(),
            api_url=settings.pinata_api_url,
            gateway=settings.pinata_gateway,
            timeout_seconds=settings.storage_timeout_seconds,
            max_concurrency=settings.storage_max_concurrency,
        )

    if settings.storage_backend == "remote":
        logger.warning(
            "Pinata not configured, using local fallback storage. "
            "Evidence will only be visible to this instance."
        )
    return LocalFallbackBackend(settings.storage_path)
