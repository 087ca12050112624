"""
Service wiring.

Builds every collaborator once per process from settings and owns their
lifecycle. The API reads services from ``app.state.container`` instead of
module-level singletons, so tests can run isolated instances.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from invoicex.config import Settings
from invoicex.domain.models import utcnow
from invoicex.infrastructure.backend_factory import create_storage_backend
from invoicex.infrastructure.database import Database
from invoicex.infrastructure.mapping import BusinessMappingIndex, SqlMappingIndex
from invoicex.infrastructure.request_store import RequestStore, SqlRequestStore
from invoicex.infrastructure.storage import StorageBackend
from invoicex.services.documents import DocumentStore
from invoicex.services.kyb import KYBService
from invoicex.services.ledger import LedgerGateway, create_ledger_gateway
from invoicex.services.workflow import VerificationWorkflow

logger = logging.getLogger(__name__)


@dataclass
class Container:
    """All long-lived services of one application instance."""
    settings: Settings
    backend: StorageBackend
    mapping: BusinessMappingIndex
    requests: RequestStore
    ledger: LedgerGateway
    documents: DocumentStore
    workflow: VerificationWorkflow
    kyb: KYBService
    database: Database | None = None

    async def open(self) -> None:
        await self.mapping.open()
        await self.requests.open()
        if not await self.backend.check_connection():
            logger.warning(
                f"Storage backend {self.backend.provider} rejected the startup check; "
                "uploads will fail until it recovers"
            )
        logger.info(f"Services ready (storage: {self.backend.provider})")

    async def close(self) -> None:
        await self.requests.close()
        await self.mapping.close()
        await self.backend.close()
        if self.database is not None:
            await self.database.close()


def build_container(
    settings: Settings,
    backend: StorageBackend | None = None,
    mapping: BusinessMappingIndex | None = None,
    requests: RequestStore | None = None,
    ledger: LedgerGateway | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Container:
    """
    Wire services from settings; any collaborator can be overridden.

    The storage backend is selected here, once, for the process lifetime.
    """
    database = None
    if mapping is None or requests is None:
        database = Database(settings.database_url, echo=settings.debug)
        mapping = mapping or SqlMappingIndex(database)
        requests = requests or SqlRequestStore(database)

    backend = backend or create_storage_backend(settings)
    ledger = ledger or create_ledger_gateway(settings)

    documents = DocumentStore(backend, clock=clock)
    workflow = VerificationWorkflow(
        requests=requests,
        ledger=ledger,
        supported_jurisdictions=settings.supported_jurisdictions,
        clock=clock,
    )
    kyb = KYBService(
        documents=documents,
        mapping=mapping,
        workflow=workflow,
        max_attempts=settings.upload_max_attempts,
        backoff_seconds=settings.upload_backoff_seconds,
        clock=clock,
    )
    return Container(
        settings=settings,
        backend=backend,
        mapping=mapping,
        requests=requests,
        ledger=ledger,
        documents=documents,
        workflow=workflow,
        kyb=kyb,
        database=database,
    )
