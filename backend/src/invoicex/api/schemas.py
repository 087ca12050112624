"""
Pydantic schemas for API request/response validation.

These schemas define the contract between the dashboard and the backend.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from invoicex.domain.models import (
    BusinessDossier,
    Document,
    RequestStatus,
    VerificationRequest,
)


class RequestStatusEnum(str, Enum):
    """Verification request status for API responses."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class VerificationLevelEnum(str, Enum):
    """Review depth granted on approval."""
    BASIC = "basic"
    STANDARD = "standard"
    ENHANCED = "enhanced"
    PREMIUM = "premium"


# =============================================================================
# Request Schemas
# =============================================================================

class AddProofRequest(BaseModel):
    """Append an already-uploaded document to a pending request."""
    proof_locator: str = Field(..., description="Locator returned by document upload")


class ApproveRequest(BaseModel):
    """Reviewer approval of a pending request."""
    validity_days: int | None = Field(
        default=None,
        ge=1,
        le=3650,
        description="Days the verification stays valid (configured default if omitted)",
    )
    level: VerificationLevelEnum = VerificationLevelEnum.STANDARD


class RejectRequest(BaseModel):
    """Reviewer rejection of a pending request."""
    reason: str = Field(..., min_length=1, max_length=1000)


class RenewalRequest(BaseModel):
    """Re-verification with fresh evidence."""
    new_proof_locators: list[str] = Field(..., min_length=1)


# =============================================================================
# Response Schemas
# =============================================================================

class DocumentResponse(BaseModel):
    """Stored document metadata."""
    locator: str
    name: str
    mime_type: str
    size: int
    uploaded_at: datetime
    url: str | None = None

    @classmethod
    def from_document(cls, document: Document, url: str | None = None) -> "DocumentResponse":
        return cls(
            locator=document.locator,
            name=document.name,
            mime_type=document.mime_type,
            size=document.size,
            uploaded_at=document.uploaded_at,
            url=url,
        )


class DossierResponse(BaseModel):
    """A business's current KYB manifest."""
    business_identity: str
    business_id: str = ""
    jurisdiction: str
    business_type: str
    documents: dict[str, DocumentResponse]
    submitted_at: datetime
    storage_provider: str
    self_locator: str | None

    @classmethod
    def from_dossier(cls, dossier: BusinessDossier) -> "DossierResponse":
        return cls(
            business_identity=dossier.business_identity,
            business_id=dossier.business_id,
            jurisdiction=dossier.jurisdiction,
            business_type=dossier.business_type,
            documents={
                key: DocumentResponse.from_document(doc)
                for key, doc in dossier.documents.items()
            },
            submitted_at=dossier.submitted_at,
            storage_provider=dossier.storage_provider,
            self_locator=dossier.self_locator,
        )


class VerificationRequestResponse(BaseModel):
    """A verification request as seen now (approvals may read as expired)."""
    request_id: int
    business_identity: str
    business_hash: str
    jurisdiction: str
    business_type: str
    submitted_proofs: list[str]
    status: RequestStatusEnum
    level: str
    requested_at: datetime
    decided_at: datetime | None = None
    decided_by: str | None = None
    rejection_reason: str | None = None
    valid_until: datetime | None = None
    renewal_of: int | None = None

    @classmethod
    def from_request(
        cls,
        request: VerificationRequest,
        status: RequestStatus,
    ) -> "VerificationRequestResponse":
        return cls(
            request_id=request.request_id,
            business_identity=request.business_identity,
            business_hash=request.business_hash,
            jurisdiction=request.jurisdiction,
            business_type=request.business_type,
            submitted_proofs=list(request.submitted_proofs),
            status=RequestStatusEnum(status.value),
            level=request.level.value,
            requested_at=request.requested_at,
            decided_at=request.decided_at,
            decided_by=request.decided_by,
            rejection_reason=request.rejection_reason,
            valid_until=request.valid_until,
            renewal_of=request.renewal_of,
        )


class SubmissionResponse(BaseModel):
    """Result of a KYB submission."""
    request_id: int
    status: RequestStatusEnum = RequestStatusEnum.PENDING
    dossier: DossierResponse


class BusinessStatusResponse(BaseModel):
    """KYB standing of a business."""
    business_identity: str
    is_valid: bool
    days_until_expiry: int | None = None
    requests: list[VerificationRequestResponse] = []


class StorageStatusResponse(BaseModel):
    """Active storage backend."""
    provider: str
    configured: bool
    message: str


class LedgerOutboxResponse(BaseModel):
    """Staged ledger records awaiting signature, oldest first."""
    records: list[dict[str, Any]]
    capacity: int = Field(..., description="Records kept before the oldest is dropped")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    storage_provider: str
    ledger_backend: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: str | None = None
    code: str | None = None
