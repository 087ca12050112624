"""
KYB submission orchestrator.

Coordinates the business-facing flow:
1. Upload each evidence file to the document store
2. Build and store the business dossier (manifest)
3. Open a verification request with the document locators as proofs
4. Point the mapping index at the new dossier

Dossier rewrites for one business run one at a time, so two concurrent
additions cannot both start from the same manifest and drop each other.

Transient storage failures are retried here, with a bounded number of
attempts and exponential backoff. Content addressing makes a repeated
upload of the same bytes harmless.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from invoicex.domain.errors import AlreadyPending, NotRequestOwner, UploadFailed
from invoicex.domain.models import (
    BusinessDossier,
    Document,
    VerificationRequest,
    normalize_identity,
    utcnow,
)
from invoicex.infrastructure.mapping import BusinessMappingIndex
from invoicex.infrastructure.storage import StorageStatus
from invoicex.services.documents import DocumentStore
from invoicex.services.locks import KeyedLocks
from invoicex.services.workflow import VerificationWorkflow

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class EvidenceFile:
    """An uploaded file and the dossier slot it fills."""
    key: str
    content: bytes
    name: str
    mime_type: str = "application/octet-stream"


@dataclass(frozen=True)
class KYBSubmission:
    """Outcome of a successful KYB submission."""
    request_id: int
    dossier: BusinessDossier


class KYBService:
    """
    High-level KYB operations used by the API layer.

    Example:
        service = KYBService(documents, mapping, workflow)
        submission = await service.submit_kyb(
            business_identity="0xB1",
            business_hash="0x9f...",
            jurisdiction="SG",
            business_type="Partnership",
            files=[EvidenceFile("business_registration", pdf, "reg.pdf", "application/pdf")],
        )
    """

    def __init__(
        self,
        documents: DocumentStore,
        mapping: BusinessMappingIndex,
        workflow: VerificationWorkflow,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.documents = documents
        self.mapping = mapping
        self.workflow = workflow
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._clock = clock
        self._sleep = sleep
        self._dossier_locks = KeyedLocks()

    async def _with_retry(self, label: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an upload, retrying only while the backend is unavailable."""
        attempt = 1
        while True:
            try:
                return await operation()
            except UploadFailed as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f"{label} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e.cause}"
                )
                await self._sleep(delay)
                attempt += 1

    async def upload_document(self, content: bytes, name: str, mime_type: str) -> Document:
        return await self._with_retry(
            f"Upload of {name}",
            lambda: self.documents.upload_document(content, name, mime_type),
        )

    async def _store_dossier(self, dossier: BusinessDossier) -> BusinessDossier:
        return await self._with_retry(
            f"Manifest upload for {dossier.business_identity}",
            lambda: self.documents.upload_manifest(dossier),
        )

    async def submit_kyb(
        self,
        business_identity: str,
        business_hash: str,
        jurisdiction: str,
        business_type: str,
        files: Sequence[EvidenceFile],
        business_id: str = "",
    ) -> KYBSubmission:
        """
        Upload evidence, store the dossier and open a verification request.

        The mapping index is only updated once the request is open, so a
        rejected submission never replaces the dossier of record.

        Raises:
            AlreadyPending: If the business already has an open request
            UnsupportedJurisdiction: If the jurisdiction is not accepted
            UploadFailed: If storage kept failing
        """
        if not files:
            raise ValueError("At least one document is required")

        identity = normalize_identity(business_identity)
        code = self.workflow.check_submission(business_hash, jurisdiction)
        pending = await self.workflow.requests.find_pending(identity)
        if pending is not None:
            raise AlreadyPending(identity, pending.request_id)

        dossier = BusinessDossier(
            business_identity=identity,
            business_id=business_id,
            jurisdiction=code,
            business_type=business_type.strip(),
            submitted_at=self._clock(),
            storage_provider=self.documents.provider,
        )
        for evidence in files:
            document = await self.upload_document(evidence.content, evidence.name, evidence.mime_type)
            dossier = dossier.with_document(evidence.key, document)

        async with self._dossier_locks.hold(identity):
            dossier = await self._store_dossier(dossier)
            request_id = await self.workflow.submit(
                identity,
                business_hash,
                dossier.proof_locators,
                code,
                business_type,
            )
            await self.mapping.set(identity, dossier.self_locator)

        logger.info(
            f"KYB submitted for {identity}: request {request_id}, "
            f"dossier {dossier.self_locator}"
        )
        return KYBSubmission(request_id=request_id, dossier=dossier)

    async def add_proof_document(
        self,
        request_id: int,
        caller: str,
        key: str,
        content: bytes,
        name: str,
        mime_type: str,
    ) -> VerificationRequest:
        """
        Upload an extra document, add it to the dossier and the open request.

        Raises:
            NotFound: If the business dossier cannot be retrieved
            NotRequestOwner: If ``caller`` did not submit the request
            RequestNotPending: If the request is no longer pending
        """
        request = await self.workflow.get_request(request_id)
        if normalize_identity(caller) != request.business_identity:
            raise NotRequestOwner(request_id, caller)
        document = await self.upload_document(content, name, mime_type)

        async with self._dossier_locks.hold(request.business_identity):
            dossier = await self.get_business_dossier(request.business_identity)
            slot = key
            suffix = 2
            while slot in dossier.documents and dossier.documents[slot].locator != document.locator:
                slot = f"{key}_{suffix}"
                suffix += 1
            dossier = await self._store_dossier(dossier.with_document(slot, document))

            updated = await self.workflow.add_proof(request_id, document.locator, caller=caller)
            await self.mapping.set(request.business_identity, dossier.self_locator)
        return updated

    async def get_business_dossier(self, business_identity: str) -> BusinessDossier:
        """
        Current dossier of a business.

        Raises:
            NoMapping: If the business never submitted
            FallbackContentNotFound: If the dossier was stored by another
                instance's local fallback storage
        """
        locator = await self.mapping.get(business_identity)
        return await self.documents.fetch_manifest(locator)

    def storage_status(self) -> StorageStatus:
        return self.documents.backend.status()
