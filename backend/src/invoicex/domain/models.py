"""
Domain models for KYB evidence and verification requests.

Design Decisions:
- Dataclasses for typed domain objects, frozen where the value is immutable
- Documents carry metadata and a locator, never the content itself
- Manifests serialize through a plain payload dict so the canonical JSON
  form is independent of the Python object layout
- The expired state is derived from ``valid_until`` at read time and is
  never written back
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from invoicex.domain.addressing import is_locator

DOSSIER_SCHEMA = "invoicex.kyb.dossier/v1"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_identity(business_identity: str) -> str:
    """
    Normalize a business identity for use as an index key.

    Wallet addresses and business hashes are case-insensitive, so
    ``0xAbC...`` and ``0xabc...`` resolve to one entry.
    """
    normalized = (business_identity or "").strip().casefold()
    if not normalized:
        raise ValueError("Business identity must not be empty")
    if is_locator(normalized):
        raise ValueError(f"A content locator is not a business identity: {business_identity}")
    return normalized


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RequestStatus(Enum):
    """Lifecycle states of a verification request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# States a stored request can reach by an explicit action.
TERMINAL_STATUSES = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})


class VerificationLevel(Enum):
    """Depth of the review granted on approval."""
    NONE = "none"
    BASIC = "basic"
    STANDARD = "standard"
    ENHANCED = "enhanced"
    PREMIUM = "premium"


@dataclass(frozen=True)
class Document:
    """
    A stored piece of evidence.

    The locator is derived from the document bytes, so uploading the same
    file twice yields an equal locator.
    """
    locator: str
    name: str
    mime_type: str
    size: int
    uploaded_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "locator": self.locator,
            "name": self.name,
            "mime_type": self.mime_type,
            "size": self.size,
            "uploaded_at": _format_timestamp(self.uploaded_at),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Document":
        locator = payload["locator"]
        if not is_locator(locator):
            raise ValueError(f"Invalid document locator: {locator!r}")
        size = payload["size"]
        if not isinstance(size, int) or size < 0:
            raise ValueError(f"Invalid document size: {size!r}")
        return cls(
            locator=locator,
            name=str(payload["name"]),
            mime_type=str(payload["mime_type"]),
            size=size,
            uploaded_at=_parse_timestamp(payload["uploaded_at"]),
        )


@dataclass(frozen=True)
class BusinessDossier:
    """
    Manifest aggregating the documents a business submitted for KYB.

    ``self_locator`` is the address of the canonical payload, which does
    not include ``self_locator``. Any change to ``documents`` clears it so a
    stale address is never carried forward.
    """
    business_identity: str
    jurisdiction: str
    business_type: str
    documents: dict[str, Document] = field(default_factory=dict)
    submitted_at: datetime = field(default_factory=utcnow)
    business_id: str = ""
    storage_provider: str = ""
    self_locator: str | None = None

    @property
    def proof_locators(self) -> list[str]:
        """Document locators ordered by logical key."""
        return [self.documents[key].locator for key in sorted(self.documents)]

    def with_document(self, key: str, document: Document) -> "BusinessDossier":
        documents = dict(self.documents)
        documents[key] = document
        return replace(self, documents=documents, self_locator=None)

    def to_payload(self) -> dict[str, Any]:
        return {
            "schema": DOSSIER_SCHEMA,
            "business_identity": self.business_identity,
            "business_id": self.business_id,
            "jurisdiction": self.jurisdiction,
            "business_type": self.business_type,
            "documents": {key: doc.to_payload() for key, doc in self.documents.items()},
            "submitted_at": _format_timestamp(self.submitted_at),
            "storage_provider": self.storage_provider,
        }

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        self_locator: str | None = None,
    ) -> "BusinessDossier":
        if payload.get("schema") != DOSSIER_SCHEMA:
            raise ValueError(f"Unsupported dossier schema: {payload.get('schema')!r}")
        documents = payload["documents"]
        if not isinstance(documents, dict):
            raise ValueError("Dossier documents must be an object")
        return cls(
            business_identity=str(payload["business_identity"]),
            business_id=str(payload.get("business_id", "")),
            jurisdiction=str(payload["jurisdiction"]),
            business_type=str(payload["business_type"]),
            documents={key: Document.from_payload(doc) for key, doc in documents.items()},
            submitted_at=_parse_timestamp(payload["submitted_at"]),
            storage_provider=str(payload.get("storage_provider", "")),
            self_locator=self_locator,
        )


@dataclass
class VerificationRequest:
    """
    A business's KYB request from intake to reviewer decision.

    Mutable because proofs are appended and the decision fields are
    filled in by a reviewer action. Stores hand out copies.
    """
    business_identity: str
    business_hash: str
    jurisdiction: str
    business_type: str
    submitted_proofs: list[str] = field(default_factory=list)
    status: RequestStatus = RequestStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    request_id: int | None = None
    decided_at: datetime | None = None
    decided_by: str | None = None
    rejection_reason: str | None = None
    valid_until: datetime | None = None
    level: VerificationLevel = VerificationLevel.NONE
    renewal_of: int | None = None
    # Stored revision; save() only succeeds against the revision it was read at
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def effective_status(self, now: datetime) -> RequestStatus:
        """Stored status, with an approval past ``valid_until`` read as expired."""
        if (
            self.status == RequestStatus.APPROVED
            and self.valid_until is not None
            and now >= self.valid_until
        ):
            return RequestStatus.EXPIRED
        return self.status

    def is_valid_at(self, now: datetime) -> bool:
        return self.effective_status(now) == RequestStatus.APPROVED
