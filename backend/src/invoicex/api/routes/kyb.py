"""
KYB verification endpoints.

Businesses submit evidence, add proofs, cancel and renew; reviewers holding
the verifier role approve or reject, and hand the staged ledger records
to the signer. The acting wallet is read from the
X-Wallet-Address header.
"""

import logging
from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, File, Form, HTTPException, UploadFile, status

from invoicex.api.dependencies import CallerDep, ContainerDep
from invoicex.api.routes.documents import read_upload
from invoicex.api.schemas import (
    AddProofRequest,
    ApproveRequest,
    BusinessStatusResponse,
    DossierResponse,
    LedgerOutboxResponse,
    RejectRequest,
    RenewalRequest,
    SubmissionResponse,
    VerificationRequestResponse,
)
from invoicex.container import Container
from invoicex.domain.errors import Unauthorized
from invoicex.domain.models import VerificationLevel, VerificationRequest, normalize_identity
from invoicex.services.kyb import EvidenceFile
from invoicex.services.ledger import KYB_VERIFIER_ROLE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/kyb", tags=["kyb"])

_ERROR_RESPONSES = {
    403: {"description": "Caller may not act on this request"},
    404: {"description": "Request not found"},
    409: {"description": "Request is not in a state that allows this action"},
}


async def _require_reviewer(container: Container, caller: str) -> None:
    if not await container.ledger.has_role(KYB_VERIFIER_ROLE, caller):
        raise Unauthorized(f"{caller} does not hold {KYB_VERIFIER_ROLE}")


def _to_response(container: Container, request: VerificationRequest) -> VerificationRequestResponse:
    return VerificationRequestResponse.from_request(
        request, container.workflow.effective_status(request)
    )


@router.post(
    "/submissions",
    response_model=SubmissionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid file, missing documents or unsupported jurisdiction"},
        409: {"description": "Business already has a pending request"},
        502: {"description": "Storage backend failed"},
    },
)
async def submit_kyb(
    container: ContainerDep,
    caller: CallerDep,
    business_hash: Annotated[str, Form(description="Hash identifying the registered business")],
    jurisdiction: Annotated[str, Form(description="ISO 3166-1 alpha-2 country code")],
    business_type: Annotated[str, Form(description="Legal form, e.g. LLC")],
    business_id: Annotated[str, Form(description="Registration number")] = "",
    business_registration: Annotated[UploadFile | None, File()] = None,
    bank_statement: Annotated[UploadFile | None, File()] = None,
    tax_document: Annotated[UploadFile | None, File()] = None,
    ownership_proof: Annotated[UploadFile | None, File()] = None,
    additional_docs: Annotated[UploadFile | None, File()] = None,
) -> SubmissionResponse:
    """
    Submit KYB evidence for the calling business.

    **Process:**
    1. Upload each provided document to storage
    2. Store the business dossier
    3. Open a pending verification request
    """
    slots = {
        "business_registration": business_registration,
        "bank_statement": bank_statement,
        "tax_document": tax_document,
        "ownership_proof": ownership_proof,
        "additional_docs": additional_docs,
    }
    files = []
    for key, upload in slots.items():
        if upload is None:
            continue
        content, filename, mime_type = await read_upload(upload, key)
        files.append(EvidenceFile(key=key, content=content, name=filename, mime_type=mime_type))

    if not files:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one document is required",
        )

    submission = await container.kyb.submit_kyb(
        business_identity=caller,
        business_hash=business_hash,
        jurisdiction=jurisdiction,
        business_type=business_type,
        files=files,
        business_id=business_id,
    )
    return SubmissionResponse(
        request_id=submission.request_id,
        dossier=DossierResponse.from_dossier(submission.dossier),
    )


@router.post(
    "/renewals",
    response_model=VerificationRequestResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"description": "Renewal not allowed or already pending"}},
)
async def request_renewal(
    body: RenewalRequest,
    container: ContainerDep,
    caller: CallerDep,
) -> VerificationRequestResponse:
    """Open a renewal for the calling business with freshly uploaded proofs."""
    request_id = await container.workflow.request_renewal(caller, body.new_proof_locators)
    request = await container.workflow.get_request(request_id)
    return _to_response(container, request)


@router.get("/requests", response_model=list[VerificationRequestResponse])
async def list_pending_requests(container: ContainerDep) -> list[VerificationRequestResponse]:
    """Pending requests awaiting review, oldest first."""
    pending = await container.workflow.pending_requests()
    return [_to_response(container, request) for request in pending]


@router.get(
    "/requests/{request_id}",
    response_model=VerificationRequestResponse,
    responses={404: {"description": "Request not found"}},
)
async def get_request(request_id: int, container: ContainerDep) -> VerificationRequestResponse:
    request = await container.workflow.get_request(request_id)
    return _to_response(container, request)


@router.post(
    "/requests/{request_id}/proofs",
    response_model=VerificationRequestResponse,
    responses=_ERROR_RESPONSES,
)
async def add_proof(
    request_id: int,
    body: AddProofRequest,
    container: ContainerDep,
    caller: CallerDep,
) -> VerificationRequestResponse:
    """Attach an already-uploaded document to a pending request."""
    request = await container.workflow.add_proof(request_id, body.proof_locator, caller=caller)
    return _to_response(container, request)


@router.post(
    "/requests/{request_id}/documents",
    response_model=VerificationRequestResponse,
    responses=_ERROR_RESPONSES,
)
async def add_proof_document(
    request_id: int,
    container: ContainerDep,
    caller: CallerDep,
    file: Annotated[UploadFile, File(description="Additional evidence document")],
    document_key: Annotated[str, Form(description="Dossier slot for the document")] = "additional_docs",
) -> VerificationRequestResponse:
    """Upload a document and add it to both the dossier and the pending request."""
    content, filename, mime_type = await read_upload(file, document_key)
    request = await container.kyb.add_proof_document(
        request_id,
        caller=caller,
        key=document_key,
        content=content,
        name=filename,
        mime_type=mime_type,
    )
    return _to_response(container, request)


@router.post(
    "/requests/{request_id}/cancel",
    response_model=VerificationRequestResponse,
    responses=_ERROR_RESPONSES,
)
async def cancel_request(
    request_id: int,
    container: ContainerDep,
    caller: CallerDep,
) -> VerificationRequestResponse:
    request = await container.workflow.cancel(request_id, caller)
    return _to_response(container, request)


@router.post(
    "/requests/{request_id}/approve",
    response_model=VerificationRequestResponse,
    responses=_ERROR_RESPONSES,
)
async def approve_request(
    request_id: int,
    body: ApproveRequest,
    container: ContainerDep,
    caller: CallerDep,
) -> VerificationRequestResponse:
    """Approve a pending request. Requires the verifier role."""
    days = body.validity_days or container.settings.default_validity_days
    request = await container.workflow.approve(
        request_id,
        timedelta(days=days),
        reviewer=caller,
        level=VerificationLevel(body.level.value),
    )
    return _to_response(container, request)


@router.post(
    "/requests/{request_id}/reject",
    response_model=VerificationRequestResponse,
    responses=_ERROR_RESPONSES,
)
async def reject_request(
    request_id: int,
    body: RejectRequest,
    container: ContainerDep,
    caller: CallerDep,
) -> VerificationRequestResponse:
    """Reject a pending request with a reason. Requires the verifier role."""
    request = await container.workflow.reject(request_id, body.reason, reviewer=caller)
    return _to_response(container, request)


@router.get("/businesses/{business_identity}/status", response_model=BusinessStatusResponse)
async def business_status(
    business_identity: str,
    container: ContainerDep,
) -> BusinessStatusResponse:
    """Whether the business currently holds a valid verification."""
    requests = await container.workflow.requests_for(business_identity)
    return BusinessStatusResponse(
        business_identity=normalize_identity(business_identity),
        is_valid=await container.workflow.is_currently_valid(business_identity),
        days_until_expiry=await container.workflow.days_until_expiry(business_identity),
        requests=[_to_response(container, request) for request in requests],
    )


@router.get(
    "/businesses/{business_identity}/dossier",
    response_model=DossierResponse,
    responses={404: {"description": "No dossier, or dossier held by another instance's fallback storage"}},
)
async def business_dossier(business_identity: str, container: ContainerDep) -> DossierResponse:
    dossier = await container.kyb.get_business_dossier(business_identity)
    return DossierResponse.from_dossier(dossier)


@router.get(
    "/ledger/outbox",
    response_model=LedgerOutboxResponse,
    responses={403: {"description": "Caller does not hold the verifier role"}},
)
async def ledger_outbox(container: ContainerDep, caller: CallerDep) -> LedgerOutboxResponse:
    """Staged ledger records awaiting signature, left in place."""
    await _require_reviewer(container, caller)
    return LedgerOutboxResponse(
        records=container.ledger.pending_records(),
        capacity=container.ledger.outbox.maxlen,
    )


@router.post(
    "/ledger/outbox/drain",
    response_model=LedgerOutboxResponse,
    responses={403: {"description": "Caller does not hold the verifier role"}},
)
async def drain_ledger_outbox(container: ContainerDep, caller: CallerDep) -> LedgerOutboxResponse:
    """
    Hand staged ledger records to the signer.

    **Process:**
    1. Check the caller holds the verifier role
    2. Remove every staged record from the outbox
    3. Return them oldest first for signing and submission
    """
    await _require_reviewer(container, caller)
    records = container.ledger.drain()
    logger.info(f"{caller} drained {len(records)} ledger records")
    return LedgerOutboxResponse(records=records, capacity=container.ledger.outbox.maxlen)
