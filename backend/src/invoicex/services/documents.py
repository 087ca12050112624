"""
Document store for KYB evidence.

Turns uploaded files and business dossiers into stored, address-bearing
evidence on the active storage backend. Retry policy belongs to the
caller; this layer reports each failure once.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from invoicex.domain.addressing import address, verify_locator
from invoicex.domain.errors import BackendUnavailable, DecodeError, UploadFailed
from invoicex.domain.models import BusinessDossier, Document, utcnow
from invoicex.infrastructure.storage import StorageBackend

logger = logging.getLogger(__name__)


class DocumentStore:
    """
    High-level service for document and manifest storage.

    Wraps the storage backend with document metadata and manifest
    (de)serialization.
    """

    def __init__(
        self,
        backend: StorageBackend,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self._clock = clock

    @property
    def provider(self) -> str:
        return self.backend.provider

    async def upload_document(
        self,
        content: bytes,
        name: str,
        mime_type: str = "application/octet-stream",
    ) -> Document:
        """
        Store an uploaded document.

        Args:
            content: Document binary content
            name: Original filename
            mime_type: MIME type reported by the uploader

        Returns:
            Document with metadata and locator

        Raises:
            UploadFailed: If the backend could not store the content
        """
        locator = address(content)
        logger.info(f"Storing document {name} ({len(content)} bytes) as {locator}")

        try:
            stored_locator = await self.backend.put(content, name=name, content_type=mime_type)
        except (BackendUnavailable, OSError) as e:
            logger.error(f"Upload of {name} failed: {e}")
            raise UploadFailed(e, name=name) from e

        return Document(
            locator=stored_locator,
            name=name,
            mime_type=mime_type,
            size=len(content),
            uploaded_at=self._clock(),
        )

    async def upload_manifest(self, dossier: BusinessDossier) -> BusinessDossier:
        """
        Store a dossier and return it with ``self_locator`` filled in.

        Raises:
            UploadFailed: If the backend could not store the manifest
        """
        try:
            locator = await self.backend.put_manifest(dossier)
        except (BackendUnavailable, OSError) as e:
            logger.error(f"Manifest upload for {dossier.business_identity} failed: {e}")
            raise UploadFailed(e, name="manifest") from e

        logger.info(
            f"Stored manifest for {dossier.business_identity}: {locator} "
            f"({len(dossier.documents)} documents)"
        )
        return replace(dossier, self_locator=locator)

    async def fetch_document(self, locator: str) -> bytes:
        """
        Retrieve document bytes and verify them against the locator.

        Raises:
            NotFound: If the backend holds nothing for the locator
            DecodeError: If the stored bytes do not hash to the locator
        """
        content = await self.backend.get(locator)
        if not verify_locator(content, locator):
            logger.error(f"Hash mismatch for {locator}")
            raise DecodeError(f"Document integrity check failed for {locator}")
        return content

    async def fetch_manifest(self, locator: str) -> BusinessDossier:
        """
        Retrieve and decode a dossier.

        Raises:
            NotFound: If the backend holds nothing for the locator
            DecodeError: If the bytes are not a valid dossier
        """
        content = await self.fetch_document(locator)
        try:
            payload = json.loads(content.decode("utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("Dossier must be a JSON object")
            return BusinessDossier.from_payload(payload, self_locator=locator)
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise DecodeError(f"Content at {locator} is not a valid dossier: {e}") from e

    async def url_for(self, locator: str) -> str:
        return await self.backend.url_for(locator)
