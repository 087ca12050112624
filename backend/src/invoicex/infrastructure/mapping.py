"""
Business -> manifest index.

Manifests are content-addressed and therefore anonymous; this index is
the only way to find the dossier a business submitted most recently.
Last write wins.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from invoicex.domain.addressing import ensure_locator
from invoicex.domain.errors import NoMapping
from invoicex.domain.models import normalize_identity
from invoicex.infrastructure.database import BusinessMappingRecord, Database

logger = logging.getLogger(__name__)


class BusinessMappingIndex(ABC):
    """Abstract business identity -> manifest locator store."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def set(self, business_identity: str, locator: str) -> None:
        """Point a business at a manifest, replacing any previous entry."""

    @abstractmethod
    async def get(self, business_identity: str) -> str:
        """Current manifest locator. Raises NoMapping if never set."""


class InMemoryMappingIndex(BusinessMappingIndex):
    """Process-local index for development and tests."""

    def __init__(self) -> None:
        self._entries: dict[str, str] | None = None

    async def open(self) -> None:
        if self._entries is None:
            self._entries = {}

    async def close(self) -> None:
        self._entries = None

    def _require_open(self) -> dict[str, str]:
        if self._entries is None:
            raise RuntimeError("Mapping index is not open")
        return self._entries

    async def set(self, business_identity: str, locator: str) -> None:
        key = normalize_identity(business_identity)
        self._require_open()[key] = ensure_locator(locator)
        logger.info(f"Mapped {key} -> {locator}")

    async def get(self, business_identity: str) -> str:
        key = normalize_identity(business_identity)
        try:
            return self._require_open()[key]
        except KeyError:
            raise NoMapping(key) from None


class SqlMappingIndex(BusinessMappingIndex):
    """Index persisted in the business_mappings table."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def open(self) -> None:
        await self.database.open()

    async def set(self, business_identity: str, locator: str) -> None:
        key = normalize_identity(business_identity)
        ensure_locator(locator)
        async with self.database.session() as session:
            await session.merge(
                BusinessMappingRecord(
                    business_identity=key,
                    locator=locator,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
        logger.info(f"Mapped {key} -> {locator}")

    async def get(self, business_identity: str) -> str:
        key = normalize_identity(business_identity)
        async with self.database.session() as session:
            record = await session.get(BusinessMappingRecord, key)
        if record is None:
            raise NoMapping(key)
        return record.locator
