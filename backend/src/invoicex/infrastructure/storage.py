"""
Content-addressed storage backends for KYB evidence.

Design Decisions:
- One async interface, two variants chosen once at startup
- Content is keyed by its locator, so identical bytes are stored once
  and concurrent writes of the same content cannot conflict
- Manifests are canonicalized before hashing so their locators are
  reproducible
- Local fallback content is only visible to the instance that wrote it;
  misses are reported as FallbackContentNotFound
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from invoicex.domain.addressing import LOCATOR_PREFIX, address, canonical_json, ensure_locator
from invoicex.domain.errors import FallbackContentNotFound
from invoicex.domain.models import BusinessDossier

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/json"


@dataclass(frozen=True)
class StorageStatus:
    """Which backend is active, for operator dashboards."""
    provider: str
    configured: bool
    message: str


class StorageBackend(ABC):
    """Abstract interface for content-addressed storage backends."""

    provider: str = "abstract"

    @abstractmethod
    async def put(
        self,
        content: bytes,
        name: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Store content and return its locator. Idempotent."""

    async def put_manifest(self, dossier: BusinessDossier) -> str:
        """Store a dossier in canonical JSON form and return its locator."""
        payload = canonical_json(dossier.to_payload())
        return await self.put(
            payload,
            name=f"kyb-{dossier.business_identity}.json",
            content_type=MANIFEST_CONTENT_TYPE,
        )

    @abstractmethod
    async def get(self, locator: str) -> bytes:
        """Retrieve content by locator. Raises ContentNotFound if absent."""

    @abstractmethod
    async def exists(self, locator: str) -> bool:
        """Check if content is stored."""

    @abstractmethod
    async def url_for(self, locator: str) -> str:
        """Dereferenceable URL, or an opaque marker for unreachable backends."""

    @abstractmethod
    def status(self) -> StorageStatus:
        """Describe this backend for operators."""

    async def check_connection(self) -> bool:
        """True if the backend accepts requests right now."""
        return True

    async def close(self) -> None:
        """Release network resources."""


class LocalFallbackBackend(StorageBackend):
    """
    Local filesystem storage used when remote pinning is not configured.

    Stores content in a content-addressable structure:
    storage_path/
        ab/
            cd/
                sha256-abcd1234...
    """

    provider = "local"
    URL_SCHEME = "local"

    def __init__(self, base_path: Path) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Local fallback storage initialized at {self.base_path}")

    def _path_for(self, locator: str) -> Path:
        encoded = ensure_locator(locator)[len(LOCATOR_PREFIX):]
        return self.base_path / encoded[:2] / encoded[2:4] / locator

    async def put(
        self,
        content: bytes,
        name: str | None = None,
        content_type: str | None = None,
    ) -> str:
        locator = address(content)
        file_path = self._path_for(locator)

        if file_path.exists():
            logger.debug(f"Content already stored: {locator}")
            return locator

        file_path.parent.mkdir(parents=True, exist_ok=True)

        # Write atomically (write to temp, then rename)
        temp_path = file_path.with_name(f"{file_path.name}.{uuid4().hex}.tmp")
        try:
            temp_path.write_bytes(content)
            temp_path.replace(file_path)
        except Exception:
            temp_path.unlink(missing_ok=True)
            raise

        logger.info(f"Stored {name or 'content'} locally: {locator} ({len(content)} bytes)")
        return locator

    async def get(self, locator: str) -> bytes:
        file_path = self._path_for(locator)
        try:
            return file_path.read_bytes()
        except FileNotFoundError:
            logger.warning(f"Local fallback miss for {locator}")
            raise FallbackContentNotFound(locator) from None

    async def exists(self, locator: str) -> bool:
        return self._path_for(locator).is_file()

    async def url_for(self, locator: str) -> str:
        return f"{self.URL_SCHEME}://{ensure_locator(locator)}"

    def status(self) -> StorageStatus:
        return StorageStatus(
            provider=self.provider,
            configured=False,
            message=(
                "Using local fallback storage. Documents are only visible to this "
                "instance; configure Pinata for production use."
            ),
        )

    def count(self) -> int:
        """Number of stored objects."""
        return sum(
            1
            for path in self.base_path.rglob(f"{LOCATOR_PREFIX}*")
            if path.is_file() and not path.name.endswith(".tmp")
        )
