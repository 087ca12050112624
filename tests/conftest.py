"""
Shared fixtures: in-memory stores, local storage under tmp_path and a
controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from invoicex.domain.addressing import address
from invoicex.infrastructure.mapping import InMemoryMappingIndex
from invoicex.infrastructure.request_store import InMemoryRequestStore
from invoicex.infrastructure.storage import LocalFallbackBackend
from invoicex.services.documents import DocumentStore
from invoicex.services.kyb import KYBService
from invoicex.services.ledger import KYB_VERIFIER_ROLE, StaticLedgerGateway
from invoicex.services.workflow import VerificationWorkflow

REVIEWER = "0xAdmin"
BUSINESS = "0xB1"
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def proof(label: str) -> str:
    """Locator of a throwaway document."""
    return address(f"proof:{label}".encode())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger() -> StaticLedgerGateway:
    return StaticLedgerGateway({KYB_VERIFIER_ROLE: [REVIEWER]})


@pytest.fixture
async def request_store():
    store = InMemoryRequestStore()
    await store.open()
    yield store
    await store.close()


@pytest.fixture
async def mapping():
    index = InMemoryMappingIndex()
    await index.open()
    yield index
    await index.close()


@pytest.fixture
def workflow(request_store, ledger, clock) -> VerificationWorkflow:
    return VerificationWorkflow(
        requests=request_store,
        ledger=ledger,
        supported_jurisdictions=["US", "GB", "SG"],
        clock=clock,
    )


@pytest.fixture
def local_backend(tmp_path) -> LocalFallbackBackend:
    return LocalFallbackBackend(tmp_path / "storage")


@pytest.fixture
def documents(local_backend, clock) -> DocumentStore:
    return DocumentStore(local_backend, clock=clock)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def kyb(documents, mapping, workflow, clock, sleep) -> KYBService:
    return KYBService(
        documents=documents,
        mapping=mapping,
        workflow=workflow,
        max_attempts=3,
        backoff_seconds=0.5,
        clock=clock,
        sleep=sleep,
    )
