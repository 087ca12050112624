"""
Tests for the document store: uploads, manifests and integrity checks.
"""

import json

import pytest

from conftest import START
from invoicex.domain.addressing import address, canonical_json
from invoicex.domain.errors import BackendUnavailable, DecodeError, UploadFailed
from invoicex.domain.models import DOSSIER_SCHEMA, BusinessDossier
from invoicex.infrastructure.storage import LocalFallbackBackend
from invoicex.services.documents import DocumentStore


class UnavailableBackend(LocalFallbackBackend):
    async def put(self, content, name=None, content_type=None):
        raise BackendUnavailable("pinning service timed out")


def _dossier(**overrides) -> BusinessDossier:
    values = dict(
        business_identity="0xb1",
        jurisdiction="SG",
        business_type="Partnership",
        submitted_at=START,
        storage_provider="local",
    )
    values.update(overrides)
    return BusinessDossier(**values)


async def test_upload_document_returns_metadata(documents):
    document = await documents.upload_document(b"%PDF registration", "reg.pdf", "application/pdf")

    assert document.locator == address(b"%PDF registration")
    assert document.name == "reg.pdf"
    assert document.mime_type == "application/pdf"
    assert document.size == len(b"%PDF registration")
    assert document.uploaded_at == START


async def test_same_bytes_stored_once(documents, local_backend):
    first = await documents.upload_document(b"identical", "a.pdf")
    second = await documents.upload_document(b"identical", "b.pdf")

    assert first.locator == second.locator
    assert local_backend.count() == 1


async def test_upload_failure_is_wrapped(tmp_path):
    store = DocumentStore(UnavailableBackend(tmp_path))

    with pytest.raises(UploadFailed) as exc_info:
        await store.upload_document(b"bytes", "reg.pdf")

    assert exc_info.value.retryable
    assert isinstance(exc_info.value.cause, BackendUnavailable)


async def test_manifest_round_trip(documents):
    document = await documents.upload_document(b"registration", "reg.pdf", "application/pdf")
    dossier = _dossier().with_document("business_registration", document)

    stored = await documents.upload_manifest(dossier)
    fetched = await documents.fetch_manifest(stored.self_locator)

    assert stored.self_locator is not None
    assert fetched == stored
    assert fetched.proof_locators == [document.locator]


async def test_manifest_locator_is_reproducible(documents):
    document = await documents.upload_document(b"registration", "reg.pdf")
    dossier = _dossier().with_document("business_registration", document)

    stored = await documents.upload_manifest(dossier)

    assert stored.self_locator == address(canonical_json(dossier.to_payload()))
    assert "self_locator" not in dossier.to_payload()
    assert dossier.to_payload()["schema"] == DOSSIER_SCHEMA


async def test_different_manifests_get_different_locators(documents):
    first = await documents.upload_manifest(_dossier())
    second = await documents.upload_manifest(_dossier(business_type="LLC"))

    assert first.self_locator != second.self_locator


async def test_with_document_clears_self_locator(documents):
    stored = await documents.upload_manifest(_dossier())
    document = await documents.upload_document(b"extra", "extra.pdf")

    assert stored.with_document("additional_docs", document).self_locator is None


async def test_fetch_detects_corruption(documents, local_backend):
    locator = await local_backend.put(b"genuine")
    local_backend._path_for(locator).write_bytes(b"tampered")

    with pytest.raises(DecodeError):
        await documents.fetch_document(locator)


async def test_fetch_manifest_rejects_non_dossier(documents, local_backend):
    not_json = await local_backend.put(b"%PDF not a manifest")
    wrong_schema = await local_backend.put(canonical_json({"schema": "other/v9"}))
    not_object = await local_backend.put(json.dumps([1, 2]).encode())

    for locator in (not_json, wrong_schema, not_object):
        with pytest.raises(DecodeError):
            await documents.fetch_manifest(locator)


async def test_document_order_does_not_change_manifest(documents):
    reg = await documents.upload_document(b"reg", "reg.pdf")
    bank = await documents.upload_document(b"bank", "bank.pdf")

    forward = _dossier().with_document("business_registration", reg).with_document("bank_statement", bank)
    backward = _dossier().with_document("bank_statement", bank).with_document("business_registration", reg)

    first = await documents.upload_manifest(forward)
    second = await documents.upload_manifest(backward)

    assert first.self_locator == second.self_locator
    assert first.proof_locators == [bank.locator, reg.locator]
