"""
Tests for the KYB orchestrator: submission, retry policy and dossier lookup.
"""

import asyncio

import pytest

from conftest import BUSINESS
from invoicex.domain.addressing import address
from invoicex.domain.errors import (
    AlreadyPending,
    BackendUnavailable,
    FallbackContentNotFound,
    NoMapping,
    NotRequestOwner,
    UnsupportedJurisdiction,
    UploadFailed,
)
from invoicex.domain.models import RequestStatus
from invoicex.infrastructure.storage import LocalFallbackBackend
from invoicex.services.documents import DocumentStore
from invoicex.services.kyb import EvidenceFile, KYBService


class FlakyBackend(LocalFallbackBackend):
    """Local backend whose first ``failures`` puts raise ``error``."""

    def __init__(self, base_path, failures: int, error: Exception) -> None:
        super().__init__(base_path)
        self.failures = failures
        self.error = error
        self.attempts = 0

    async def put(self, content, name=None, content_type=None):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        return await super().put(content, name=name, content_type=content_type)


class YieldingBackend(LocalFallbackBackend):
    """Local backend that lets other tasks run during every read and write."""

    async def put(self, content, name=None, content_type=None):
        await asyncio.sleep(0)
        return await super().put(content, name=name, content_type=content_type)

    async def get(self, locator):
        await asyncio.sleep(0)
        return await super().get(locator)


def _files() -> list[EvidenceFile]:
    return [
        EvidenceFile("business_registration", b"%PDF registration", "reg.pdf", "application/pdf"),
        EvidenceFile("bank_statement", b"%PDF bank", "bank.pdf", "application/pdf"),
    ]


async def _submit(service: KYBService, jurisdiction: str = "SG"):
    return await service.submit_kyb(
        business_identity=BUSINESS,
        business_hash="0xhash",
        jurisdiction=jurisdiction,
        business_type="Partnership",
        files=_files(),
        business_id="UEN-201912345K",
    )


def _service(backend, mapping, workflow, clock, sleep) -> KYBService:
    return KYBService(
        documents=DocumentStore(backend, clock=clock),
        mapping=mapping,
        workflow=workflow,
        max_attempts=3,
        backoff_seconds=0.5,
        clock=clock,
        sleep=sleep,
    )


async def test_submit_stores_dossier_and_opens_request(kyb, workflow):
    submission = await _submit(kyb)

    request = await workflow.get_request(submission.request_id)
    dossier = await kyb.get_business_dossier("0XB1")
    assert request.status == RequestStatus.PENDING
    assert request.submitted_proofs == dossier.proof_locators
    assert set(request.submitted_proofs) == {address(b"%PDF registration"), address(b"%PDF bank")}
    assert dossier == submission.dossier
    assert dossier.business_id == "UEN-201912345K"
    assert dossier.storage_provider == "local"


async def test_pending_business_fails_before_upload(kyb, local_backend):
    await _submit(kyb)
    stored = local_backend.count()

    with pytest.raises(AlreadyPending):
        await kyb.submit_kyb(
            BUSINESS, "0xhash", "SG", "Partnership",
            [EvidenceFile("tax_document", b"%PDF new tax", "tax.pdf")],
        )

    assert local_backend.count() == stored


async def test_rejected_submission_keeps_mapping_untouched(kyb, mapping):
    with pytest.raises(UnsupportedJurisdiction):
        await _submit(kyb, jurisdiction="XX")

    with pytest.raises(NoMapping):
        await mapping.get(BUSINESS)


@pytest.mark.parametrize(
    "business_hash, jurisdiction, error",
    [
        ("0xhash", "XX", UnsupportedJurisdiction),
        ("0xhash", "", UnsupportedJurisdiction),
        ("   ", "SG", ValueError),
    ],
)
async def test_invalid_submission_fails_before_upload(kyb, local_backend, business_hash, jurisdiction, error):
    with pytest.raises(error):
        await kyb.submit_kyb(BUSINESS, business_hash, jurisdiction, "Partnership", _files())

    assert local_backend.count() == 0


async def test_submit_requires_documents(kyb):
    with pytest.raises(ValueError):
        await kyb.submit_kyb(BUSINESS, "0xhash", "SG", "Partnership", [])


async def test_transient_failures_are_retried(tmp_path, mapping, workflow, clock, sleep):
    backend = FlakyBackend(tmp_path, failures=2, error=BackendUnavailable("timeout"))
    service = _service(backend, mapping, workflow, clock, sleep)

    submission = await _submit(service)

    assert submission.request_id == 1
    assert sleep.delays == [0.5, 1.0]


async def test_retries_are_bounded(tmp_path, mapping, workflow, clock, sleep):
    backend = FlakyBackend(tmp_path, failures=99, error=BackendUnavailable("timeout"))
    service = _service(backend, mapping, workflow, clock, sleep)

    with pytest.raises(UploadFailed) as exc_info:
        await _submit(service)

    assert exc_info.value.retryable
    assert backend.attempts == 3
    assert sleep.delays == [0.5, 1.0]
    assert await workflow.pending_requests() == []


async def test_local_io_errors_are_not_retried(tmp_path, mapping, workflow, clock, sleep):
    backend = FlakyBackend(tmp_path, failures=1, error=OSError("disk full"))
    service = _service(backend, mapping, workflow, clock, sleep)

    with pytest.raises(UploadFailed) as exc_info:
        await _submit(service)

    assert not exc_info.value.retryable
    assert backend.attempts == 1
    assert sleep.delays == []


async def test_add_proof_document_extends_dossier_and_request(kyb, workflow):
    submission = await _submit(kyb)

    request = await kyb.add_proof_document(
        submission.request_id,
        caller="0xB1",
        key="bank_statement",
        content=b"%PDF second bank statement",
        name="bank-2.pdf",
        mime_type="application/pdf",
    )

    dossier = await kyb.get_business_dossier(BUSINESS)
    assert request.submitted_proofs[-1] == address(b"%PDF second bank statement")
    assert dossier.documents["bank_statement_2"].name == "bank-2.pdf"
    assert dossier.documents["bank_statement"] == submission.dossier.documents["bank_statement"]
    assert dossier.self_locator != submission.dossier.self_locator


async def test_concurrent_proof_documents_are_both_kept(tmp_path, mapping, workflow, clock, sleep):
    service = _service(YieldingBackend(tmp_path), mapping, workflow, clock, sleep)
    submission = await _submit(service)

    await asyncio.gather(
        service.add_proof_document(
            submission.request_id, "0xB1", "tax_document", b"%PDF tax", "tax.pdf", "application/pdf"
        ),
        service.add_proof_document(
            submission.request_id, "0xB1", "ownership_proof", b"%PDF owners", "owners.pdf", "application/pdf"
        ),
    )

    dossier = await service.get_business_dossier(BUSINESS)
    request = await workflow.get_request(submission.request_id)
    assert {"business_registration", "bank_statement", "tax_document", "ownership_proof"} == set(dossier.documents)
    assert sorted(dossier.proof_locators) == sorted(request.submitted_proofs)
    assert len(service._dossier_locks) == 0


async def test_add_proof_document_by_stranger_keeps_dossier(kyb):
    submission = await _submit(kyb)

    with pytest.raises(NotRequestOwner):
        await kyb.add_proof_document(
            submission.request_id, "0xB2", "additional_docs", b"%PDF spam", "spam.pdf", "application/pdf"
        )

    assert (await kyb.get_business_dossier(BUSINESS)) == submission.dossier


async def test_dossier_from_another_instance_is_a_fallback_miss(kyb, mapping):
    await mapping.set(BUSINESS, address(b"manifest written by another instance"))

    with pytest.raises(FallbackContentNotFound):
        await kyb.get_business_dossier(BUSINESS)


def test_storage_status_reports_fallback(kyb):
    status = kyb.storage_status()

    assert status.provider == "local"
    assert not status.configured
