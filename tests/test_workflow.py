"""
Tests for the verification request state machine.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import BUSINESS, REVIEWER, START, proof
from invoicex.domain.errors import (
    AlreadyPending,
    NotRequestOwner,
    RenewalNotAllowed,
    RequestNotFound,
    RequestNotPending,
    Unauthorized,
    UnsupportedJurisdiction,
)
from invoicex.domain.models import RequestStatus, VerificationLevel
from invoicex.infrastructure.request_store import InMemoryRequestStore
from invoicex.services.workflow import VerificationWorkflow

YEAR = timedelta(days=365)


class YieldingRequestStore(InMemoryRequestStore):
    """In-memory store that lets other tasks run between its reads and writes."""

    def __init__(self) -> None:
        super().__init__()
        self.create_calls = 0

    async def list_for_business(self, business_identity):
        await asyncio.sleep(0)
        return await super().list_for_business(business_identity)

    async def create(self, request):
        self.create_calls += 1
        await asyncio.sleep(0)
        return await super().create(request)


async def _submit(workflow, identity=BUSINESS, proofs=("reg",)) -> int:
    return await workflow.submit(
        identity,
        "0xhash",
        [proof(label) for label in proofs],
        "SG",
        "Partnership",
    )


async def test_submit_opens_pending_request(workflow, ledger):
    request_id = await _submit(workflow)

    request = await workflow.get_request(request_id)
    assert request_id == 1
    assert request.status == RequestStatus.PENDING
    assert request.business_identity == "0xb1"
    assert request.jurisdiction == "SG"
    assert request.requested_at == START
    assert request.submitted_proofs == [proof("reg")]
    assert ledger.outbox[-1]["status"] == "pending"


async def test_b1_submit_approve_resubmit(workflow):
    first = await _submit(workflow)
    await workflow.add_proof(first, proof("bank"))
    approved = await workflow.approve(first, YEAR, reviewer=REVIEWER)

    assert first == 1
    assert approved.submitted_proofs == [proof("reg"), proof("bank")]
    assert approved.status == RequestStatus.APPROVED
    assert await workflow.is_currently_valid(BUSINESS)

    second = await _submit(workflow)
    assert second == 2
    # The pending resubmission does not revoke the standing approval
    assert await workflow.is_currently_valid(BUSINESS)


async def test_single_pending_per_business(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(AlreadyPending) as exc_info:
        await _submit(workflow, identity="0XB1")

    assert exc_info.value.request_id == request_id
    assert len(await workflow.pending_requests()) == 1


async def test_concurrent_submissions_open_one_request(ledger, clock):
    store = YieldingRequestStore()
    await store.open()
    workflow = VerificationWorkflow(requests=store, ledger=ledger, clock=clock)

    results = await asyncio.gather(
        *(_submit(workflow) for _ in range(5)),
        return_exceptions=True,
    )

    opened = [r for r in results if isinstance(r, int)]
    assert len(opened) == 1
    assert all(isinstance(r, AlreadyPending) for r in results if not isinstance(r, int))
    # Later submitters saw the open request before reaching the store
    assert store.create_calls == 1
    assert len(workflow._locks) == 0


async def test_locks_are_released_for_unknown_businesses(workflow):
    for n in range(1000):
        with pytest.raises(RenewalNotAllowed):
            await workflow.request_renewal(f"0xnew{n}", [proof("reg")])

    assert len(workflow._locks) == 0


async def test_other_businesses_are_independent(workflow):
    await _submit(workflow, identity="0xB1")
    await _submit(workflow, identity="0xB2")

    assert len(await workflow.pending_requests()) == 2


@pytest.mark.parametrize("jurisdiction", ["XX", "USA", "", "1A"])
async def test_unsupported_jurisdiction(workflow, jurisdiction):
    with pytest.raises(UnsupportedJurisdiction):
        await workflow.submit(BUSINESS, "0xhash", [proof("reg")], jurisdiction, "LLC")


async def test_submit_requires_valid_proofs(workflow):
    with pytest.raises(ValueError):
        await workflow.submit(BUSINESS, "0xhash", [], "SG", "LLC")
    with pytest.raises(ValueError):
        await workflow.submit(BUSINESS, "0xhash", ["not-a-locator"], "SG", "LLC")


async def test_lowercase_jurisdiction_is_normalized(workflow):
    request_id = await workflow.submit(BUSINESS, "0xhash", [proof("reg")], "gb", "LLC")

    assert (await workflow.get_request(request_id)).jurisdiction == "GB"


# =============================================================================
# Closure: terminal requests accept no further transitions
# =============================================================================

async def _terminal(workflow, outcome: str) -> int:
    request_id = await _submit(workflow)
    if outcome == "approved":
        await workflow.approve(request_id, YEAR, reviewer=REVIEWER)
    elif outcome == "rejected":
        await workflow.reject(request_id, "Incomplete documents", reviewer=REVIEWER)
    else:
        await workflow.cancel(request_id, caller=BUSINESS)
    return request_id


@pytest.mark.parametrize("outcome", ["approved", "rejected", "cancelled"])
async def test_terminal_requests_are_closed(workflow, outcome):
    request_id = await _terminal(workflow, outcome)
    before = await workflow.get_request(request_id)

    with pytest.raises(RequestNotPending):
        await workflow.add_proof(request_id, proof("late"))
    with pytest.raises(RequestNotPending):
        await workflow.approve(request_id, YEAR, reviewer=REVIEWER)
    with pytest.raises(RequestNotPending):
        await workflow.reject(request_id, "late", reviewer=REVIEWER)
    with pytest.raises(RequestNotPending):
        await workflow.cancel(request_id, caller=BUSINESS)

    assert await workflow.get_request(request_id) == before


# =============================================================================
# Authorization
# =============================================================================

async def test_review_requires_verifier_role(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(Unauthorized):
        await workflow.approve(request_id, YEAR, reviewer="0xMallory")
    with pytest.raises(Unauthorized):
        await workflow.reject(request_id, "no", reviewer=BUSINESS)

    assert (await workflow.get_request(request_id)).is_pending


async def test_only_submitter_can_cancel(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(NotRequestOwner):
        await workflow.cancel(request_id, caller="0xB2")

    cancelled = await workflow.cancel(request_id, caller="0XB1")
    assert cancelled.status == RequestStatus.CANCELLED
    assert cancelled.decided_by == "0xb1"


async def test_add_proof_checks_owner_when_given(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(NotRequestOwner):
        await workflow.add_proof(request_id, proof("x"), caller="0xB2")


async def test_duplicate_proofs_are_kept(workflow):
    request_id = await _submit(workflow)

    request = await workflow.add_proof(request_id, proof("reg"))

    assert request.submitted_proofs == [proof("reg"), proof("reg")]


async def test_unknown_request(workflow):
    with pytest.raises(RequestNotFound):
        await workflow.get_request(99)
    with pytest.raises(RequestNotFound):
        await workflow.cancel(99, caller=BUSINESS)


# =============================================================================
# Decisions
# =============================================================================

async def test_approve_records_decision(workflow, clock, ledger):
    request_id = await _submit(workflow)
    clock.advance(hours=2)

    approved = await workflow.approve(
        request_id, YEAR, reviewer=REVIEWER, level=VerificationLevel.ENHANCED
    )

    assert approved.decided_at == clock.now
    assert approved.decided_by == REVIEWER.lower()
    assert approved.valid_until == clock.now + YEAR
    assert approved.level == VerificationLevel.ENHANCED
    assert ledger.outbox[-1]["status"] == "approved"


async def test_approve_rejects_bad_arguments(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(ValueError):
        await workflow.approve(request_id, timedelta(0), reviewer=REVIEWER)
    with pytest.raises(ValueError):
        await workflow.approve(request_id, YEAR, reviewer=REVIEWER, level=VerificationLevel.NONE)


async def test_reject_requires_reason(workflow):
    request_id = await _submit(workflow)

    with pytest.raises(ValueError):
        await workflow.reject(request_id, "  ", reviewer=REVIEWER)

    rejected = await workflow.reject(request_id, " Blurry scan ", reviewer=REVIEWER)
    assert rejected.rejection_reason == "Blurry scan"
    assert not await workflow.is_currently_valid(BUSINESS)


async def test_thirty_day_validity_window(workflow, clock):
    request_id = await _submit(workflow)
    await workflow.approve(request_id, timedelta(days=30), reviewer=REVIEWER)

    clock.advance(days=29, hours=23)
    assert await workflow.is_currently_valid(BUSINESS)
    assert await workflow.days_until_expiry(BUSINESS) == 0

    clock.advance(hours=1)
    request = await workflow.get_request(request_id)
    assert not await workflow.is_currently_valid(BUSINESS)
    assert workflow.effective_status(request) == RequestStatus.EXPIRED
    # Expiry is derived, never written back
    assert request.status == RequestStatus.APPROVED


async def test_days_until_expiry(workflow, clock):
    assert await workflow.days_until_expiry(BUSINESS) is None

    request_id = await _submit(workflow)
    await workflow.approve(request_id, YEAR, reviewer=REVIEWER)

    assert await workflow.days_until_expiry(BUSINESS) == 365
    clock.advance(days=400)
    assert await workflow.days_until_expiry(BUSINESS) < 0


async def test_latest_decision_wins(workflow):
    first = await _submit(workflow)
    await workflow.approve(first, YEAR, reviewer=REVIEWER)
    second = await _submit(workflow)
    await workflow.reject(second, "Ownership changed", reviewer=REVIEWER)

    assert not await workflow.is_currently_valid(BUSINESS)


# =============================================================================
# Renewal
# =============================================================================

async def test_renewal_after_expiry(workflow, clock):
    first = await _submit(workflow)
    await workflow.approve(first, timedelta(days=30), reviewer=REVIEWER)
    clock.advance(days=31)

    renewal_id = await workflow.request_renewal("0xB1", [proof("fresh")])

    renewal = await workflow.get_request(renewal_id)
    prior = await workflow.get_request(first)
    assert renewal.renewal_of == first
    assert renewal.business_hash == "0xhash"
    assert renewal.jurisdiction == "SG"
    assert renewal.business_type == "Partnership"
    assert renewal.submitted_proofs == [proof("fresh")]
    assert prior.status == RequestStatus.APPROVED


async def test_renewal_of_current_approval(workflow):
    first = await _submit(workflow)
    await workflow.approve(first, YEAR, reviewer=REVIEWER)

    renewal_id = await workflow.request_renewal(BUSINESS, [proof("fresh")])

    assert (await workflow.get_request(renewal_id)).is_pending


async def test_renewal_without_prior_approval(workflow):
    with pytest.raises(RenewalNotAllowed):
        await workflow.request_renewal(BUSINESS, [proof("fresh")])

    request_id = await _submit(workflow)
    with pytest.raises(AlreadyPending):
        await workflow.request_renewal(BUSINESS, [proof("fresh")])

    await workflow.reject(request_id, "Mismatch", reviewer=REVIEWER)
    with pytest.raises(RenewalNotAllowed):
        await workflow.request_renewal(BUSINESS, [proof("fresh")])
