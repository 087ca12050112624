"""
KYB verification request workflow.

State machine (terminal states in brackets):

    None -> pending -> [approved] -> [expired]
            pending -> [rejected]
            pending -> [cancelled]

``expired`` is never stored: an approval reads as expired once the clock
passes ``valid_until``. Reviewer authority is checked against the ledger
collaborator, never decided here.

Design Decisions:
- At most one pending request per business, checked and created under a
  per-business lock (the SQL store backs this with a unique index)
- Saves are compare-and-set on the stored version, so a second worker on
  the same database cannot close a request the first one already closed
- Renewal shares the submission path; only its precondition on the prior
  record differs
- No retries: every precondition violation is raised to the caller
- Every successful transition is mirrored to the ledger gateway
"""

import logging
from collections.abc import AsyncGenerator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from invoicex.domain.addressing import ensure_locator
from invoicex.domain.errors import (
    AlreadyPending,
    NotRequestOwner,
    RenewalNotAllowed,
    RequestNotPending,
    Unauthorized,
    UnsupportedJurisdiction,
)
from invoicex.domain.models import (
    TERMINAL_STATUSES,
    RequestStatus,
    VerificationLevel,
    VerificationRequest,
    normalize_identity,
    utcnow,
)
from invoicex.infrastructure.request_store import RequestStore
from invoicex.services.ledger import KYB_VERIFIER_ROLE, LedgerGateway
from invoicex.services.locks import KeyedLocks

logger = logging.getLogger(__name__)

RENEWABLE_STATUSES = frozenset({RequestStatus.APPROVED, RequestStatus.EXPIRED})


class VerificationWorkflow:
    """
    Governs the lifecycle of KYB verification requests.

    Example:
        workflow = VerificationWorkflow(requests=store, ledger=gateway)
        request_id = await workflow.submit(
            "0xB1", "0xhash", [doc.locator], "US", "Corporation (C-Corp)"
        )
        await workflow.approve(request_id, timedelta(days=365), reviewer="0xAdmin")
        assert await workflow.is_currently_valid("0xB1")
    """

    def __init__(
        self,
        requests: RequestStore,
        ledger: LedgerGateway,
        supported_jurisdictions: Iterable[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Args:
            requests: Request persistence
            ledger: Role checks and decision mirroring
            supported_jurisdictions: ISO country codes accepted on submission;
                None accepts any two-letter code
            clock: Source of "now", injectable for tests
        """
        self.requests = requests
        self.ledger = ledger
        self.supported_jurisdictions = (
            frozenset(code.upper() for code in supported_jurisdictions)
            if supported_jurisdictions is not None
            else None
        )
        self._clock = clock
        self._locks = KeyedLocks()

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        business_identity: str,
        business_hash: str,
        proof_locators: Iterable[str],
        jurisdiction: str,
        business_type: str,
    ) -> int:
        """
        Open a verification request.

        Returns:
            The new request_id

        Raises:
            AlreadyPending: If the business already has an open request
            UnsupportedJurisdiction: If the jurisdiction is not accepted
        """
        identity = normalize_identity(business_identity)
        async with self._locks.hold(identity):
            request = await self._open_request(
                identity,
                business_hash=business_hash,
                proof_locators=proof_locators,
                jurisdiction=jurisdiction,
                business_type=business_type,
            )
        return request.request_id

    async def request_renewal(
        self,
        business_identity: str,
        new_proof_locators: Iterable[str],
    ) -> int:
        """
        Open a new request for a business whose last decision was an approval.

        The prior record is left untouched for audit; business hash,
        jurisdiction and business type carry over from it.

        Raises:
            AlreadyPending: If the business already has an open request
            RenewalNotAllowed: If the prior request is not approved or expired
        """
        identity = normalize_identity(business_identity)
        async with self._locks.hold(identity):
            prior = await self.requests.latest(identity)
            if prior is None:
                raise RenewalNotAllowed(f"Business {identity} has no prior verification to renew")
            if prior.is_pending:
                raise AlreadyPending(identity, prior.request_id)

            prior_status = prior.effective_status(self._clock())
            if prior_status not in RENEWABLE_STATUSES:
                raise RenewalNotAllowed(
                    f"Request {prior.request_id} is {prior_status.value}; "
                    "only approved or expired verifications can be renewed"
                )

            request = await self._open_request(
                identity,
                business_hash=prior.business_hash,
                proof_locators=new_proof_locators,
                jurisdiction=prior.jurisdiction,
                business_type=prior.business_type,
                renewal_of=prior.request_id,
            )
        return request.request_id

    async def _open_request(
        self,
        identity: str,
        business_hash: str,
        proof_locators: Iterable[str],
        jurisdiction: str,
        business_type: str,
        renewal_of: int | None = None,
    ) -> VerificationRequest:
        proofs = [ensure_locator(locator) for locator in proof_locators]
        if not proofs:
            raise ValueError("At least one proof document is required")
        code = self.check_submission(business_hash, jurisdiction)

        pending = await self.requests.find_pending(identity)
        if pending is not None:
            raise AlreadyPending(identity, pending.request_id)

        request = await self.requests.create(
            VerificationRequest(
                business_identity=identity,
                business_hash=business_hash.strip(),
                jurisdiction=code,
                business_type=business_type.strip(),
                submitted_proofs=proofs,
                requested_at=self._clock(),
                renewal_of=renewal_of,
            )
        )
        kind = f"renewal of {renewal_of}" if renewal_of is not None else "submission"
        logger.info(
            f"Opened request {request.request_id} for {identity} "
            f"({kind}, {len(proofs)} proofs)"
        )
        await self.ledger.record_request(request)
        return request

    def check_submission(self, business_hash: str, jurisdiction: str) -> str:
        """
        Validate submission fields that need no storage or ledger access.

        Returns:
            The normalized jurisdiction code

        Raises:
            ValueError: If the business hash is blank
            UnsupportedJurisdiction: If the jurisdiction is not accepted
        """
        if not business_hash or not business_hash.strip():
            raise ValueError("Business hash must not be empty")
        code = (jurisdiction or "").strip().upper()
        if len(code) != 2 or not code.isalpha():
            raise UnsupportedJurisdiction(jurisdiction)
        if self.supported_jurisdictions is not None and code not in self.supported_jurisdictions:
            raise UnsupportedJurisdiction(jurisdiction)
        return code

    # =========================================================================
    # Transitions on an open request
    # =========================================================================

    async def add_proof(
        self,
        request_id: int,
        proof_locator: str,
        caller: str | None = None,
    ) -> VerificationRequest:
        """
        Append a proof to a pending request. Duplicates are kept.

        Raises:
            RequestNotFound: If the request does not exist
            NotRequestOwner: If ``caller`` is given and did not submit it
            RequestNotPending: If the request is no longer pending
        """
        ensure_locator(proof_locator)
        async with self._request_lock(request_id) as request:
            if caller is not None:
                self._require_owner(request, caller)
            self._require_pending(request)
            request.submitted_proofs.append(proof_locator)
            await self.requests.save(request)

        logger.info(f"Added proof to request {request_id} ({len(request.submitted_proofs)} total)")
        await self.ledger.record_request(request)
        return request

    async def cancel(self, request_id: int, caller: str) -> VerificationRequest:
        """
        Withdraw a pending request. Only the submitting business may cancel.

        Raises:
            NotRequestOwner: If ``caller`` did not submit the request
            RequestNotPending: If the request is no longer pending
        """
        async with self._request_lock(request_id) as request:
            self._require_owner(request, caller)
            self._require_pending(request)
            request.status = RequestStatus.CANCELLED
            request.decided_at = self._clock()
            request.decided_by = normalize_identity(caller)
            await self.requests.save(request)

        logger.info(f"Request {request_id} cancelled by {request.decided_by}")
        await self.ledger.record_request(request)
        return request

    async def approve(
        self,
        request_id: int,
        validity_period: timedelta,
        reviewer: str,
        level: VerificationLevel = VerificationLevel.STANDARD,
    ) -> VerificationRequest:
        """
        Approve a pending request for ``validity_period``.

        Raises:
            Unauthorized: If ``reviewer`` lacks the verifier role
            RequestNotPending: If the request is no longer pending
        """
        if validity_period <= timedelta(0):
            raise ValueError("Validity period must be positive")
        if level == VerificationLevel.NONE:
            raise ValueError("Approval requires a verification level")

        await self._require_reviewer(reviewer)
        async with self._request_lock(request_id) as request:
            self._require_pending(request)
            now = self._clock()
            request.status = RequestStatus.APPROVED
            request.decided_at = now
            request.decided_by = normalize_identity(reviewer)
            request.valid_until = now + validity_period
            request.level = level
            await self.requests.save(request)

        logger.info(
            f"Request {request_id} approved by {request.decided_by} "
            f"({level.value}, valid until {request.valid_until.isoformat()})"
        )
        await self.ledger.record_request(request)
        return request

    async def reject(self, request_id: int, reason: str, reviewer: str) -> VerificationRequest:
        """
        Reject a pending request.

        Raises:
            Unauthorized: If ``reviewer`` lacks the verifier role
            RequestNotPending: If the request is no longer pending
        """
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")

        await self._require_reviewer(reviewer)
        async with self._request_lock(request_id) as request:
            self._require_pending(request)
            request.status = RequestStatus.REJECTED
            request.decided_at = self._clock()
            request.decided_by = normalize_identity(reviewer)
            request.rejection_reason = reason.strip()
            await self.requests.save(request)

        logger.info(f"Request {request_id} rejected by {request.decided_by}: {request.rejection_reason}")
        await self.ledger.record_request(request)
        return request

    @asynccontextmanager
    async def _request_lock(self, request_id: int) -> AsyncGenerator[VerificationRequest, None]:
        """Hold the owning business's lock and yield a fresh copy of the request."""
        current = await self.requests.get(request_id)
        async with self._locks.hold(current.business_identity):
            yield await self.requests.get(request_id)

    @staticmethod
    def _require_pending(request: VerificationRequest) -> None:
        if not request.is_pending:
            raise RequestNotPending(request.request_id, request.status.value)

    @staticmethod
    def _require_owner(request: VerificationRequest, caller: str) -> None:
        if normalize_identity(caller) != request.business_identity:
            raise NotRequestOwner(request.request_id, caller)

    async def _require_reviewer(self, reviewer: str) -> None:
        if not await self.ledger.has_role(KYB_VERIFIER_ROLE, reviewer):
            logger.warning(f"{reviewer} attempted a review without {KYB_VERIFIER_ROLE}")
            raise Unauthorized(f"{reviewer} does not hold {KYB_VERIFIER_ROLE}")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_request(self, request_id: int) -> VerificationRequest:
        """Raises RequestNotFound if the id is unknown."""
        return await self.requests.get(request_id)

    async def pending_requests(self) -> list[VerificationRequest]:
        return await self.requests.list_pending()

    async def requests_for(self, business_identity: str) -> list[VerificationRequest]:
        return await self.requests.list_for_business(business_identity)

    def effective_status(self, request: VerificationRequest) -> RequestStatus:
        return request.effective_status(self._clock())

    async def is_currently_valid(self, business_identity: str) -> bool:
        """True iff the most recent decided request is an unexpired approval."""
        decided = await self.requests.latest(business_identity, TERMINAL_STATUSES)
        return decided is not None and decided.is_valid_at(self._clock())

    async def days_until_expiry(self, business_identity: str) -> int | None:
        """
        Whole days left on the current approval; negative once expired.

        Returns None if the most recent decision is not an approval.
        """
        decided = await self.requests.latest(business_identity, TERMINAL_STATUSES)
        if decided is None or decided.status != RequestStatus.APPROVED:
            return None
        return (decided.valid_until - self._clock()).days

