"""
Verification request persistence.

Stores hand out copies of requests; callers mutate the copy and write it
back with save(), which only succeeds if nobody else saved in between.
Both implementations refuse to create a second pending request for one
business.
"""

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Collection
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from invoicex.domain.errors import (
    AlreadyPending,
    RequestConflict,
    RequestNotFound,
    RequestNotPending,
    WorkflowError,
)
from invoicex.domain.models import (
    RequestStatus,
    VerificationLevel,
    VerificationRequest,
    normalize_identity,
)
from invoicex.infrastructure.database import Database, VerificationRequestRecord

logger = logging.getLogger(__name__)


def _stale(current: VerificationRequest) -> WorkflowError:
    if current.is_pending:
        return RequestConflict(current.request_id)
    return RequestNotPending(current.request_id, current.status.value)


class RequestStore(ABC):
    """Abstract verification request table."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def create(self, request: VerificationRequest) -> VerificationRequest:
        """
        Insert a new request and assign its request_id.

        Raises:
            AlreadyPending: If the business already has a pending request
        """

    @abstractmethod
    async def get(self, request_id: int) -> VerificationRequest:
        """Raises RequestNotFound if the id is unknown."""

    @abstractmethod
    async def save(self, request: VerificationRequest) -> None:
        """
        Write back a request read from this store and bump its version.

        Raises:
            RequestNotFound: If the id is unknown
            RequestNotPending: If another writer closed the request meanwhile
            RequestConflict: If another writer changed the request meanwhile
        """

    @abstractmethod
    async def list_for_business(self, business_identity: str) -> list[VerificationRequest]:
        """All requests of a business, oldest first."""

    @abstractmethod
    async def list_pending(self) -> list[VerificationRequest]:
        """All pending requests, oldest first."""

    async def find_pending(self, business_identity: str) -> VerificationRequest | None:
        for request in await self.list_for_business(business_identity):
            if request.is_pending:
                return request
        return None

    async def latest(
        self,
        business_identity: str,
        statuses: Collection[RequestStatus] | None = None,
    ) -> VerificationRequest | None:
        """Most recent request of a business, optionally filtered by stored status."""
        for request in reversed(await self.list_for_business(business_identity)):
            if statuses is None or request.status in statuses:
                return request
        return None


class InMemoryRequestStore(RequestStore):
    """Process-local request table for development and tests."""

    def __init__(self) -> None:
        self._requests: dict[int, VerificationRequest] | None = None
        self._next_id = 1

    async def open(self) -> None:
        if self._requests is None:
            self._requests = {}

    async def close(self) -> None:
        self._requests = None

    def _require_open(self) -> dict[int, VerificationRequest]:
        if self._requests is None:
            raise RuntimeError("Request store is not open")
        return self._requests

    async def create(self, request: VerificationRequest) -> VerificationRequest:
        requests = self._require_open()
        identity = normalize_identity(request.business_identity)
        if request.is_pending:
            for existing in requests.values():
                if existing.business_identity == identity and existing.is_pending:
                    raise AlreadyPending(identity, existing.request_id)

        stored = copy.deepcopy(request)
        stored.business_identity = identity
        stored.request_id = self._next_id
        stored.version = 1
        self._next_id += 1
        requests[stored.request_id] = stored
        return copy.deepcopy(stored)

    async def get(self, request_id: int) -> VerificationRequest:
        try:
            return copy.deepcopy(self._require_open()[request_id])
        except KeyError:
            raise RequestNotFound(request_id) from None

    async def save(self, request: VerificationRequest) -> None:
        requests = self._require_open()
        if request.request_id not in requests:
            raise RequestNotFound(request.request_id)
        current = requests[request.request_id]
        if current.version != request.version:
            raise _stale(current)
        request.version += 1
        requests[request.request_id] = copy.deepcopy(request)

    async def list_for_business(self, business_identity: str) -> list[VerificationRequest]:
        identity = normalize_identity(business_identity)
        return [
            copy.deepcopy(request)
            for _, request in sorted(self._require_open().items())
            if request.business_identity == identity
        ]

    async def list_pending(self) -> list[VerificationRequest]:
        return [
            copy.deepcopy(request)
            for _, request in sorted(self._require_open().items())
            if request.is_pending
        ]


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(record: VerificationRequestRecord) -> VerificationRequest:
    return VerificationRequest(
        request_id=record.request_id,
        business_identity=record.business_identity,
        business_hash=record.business_hash,
        jurisdiction=record.jurisdiction,
        business_type=record.business_type,
        submitted_proofs=list(record.submitted_proofs or []),
        status=RequestStatus(record.status),
        level=VerificationLevel(record.level),
        requested_at=_aware(record.requested_at),
        decided_at=_aware(record.decided_at),
        decided_by=record.decided_by,
        rejection_reason=record.rejection_reason,
        valid_until=_aware(record.valid_until),
        renewal_of=record.renewal_of,
        version=record.version,
    )


def _columns(request: VerificationRequest) -> dict[str, object]:
    return {
        "business_hash": request.business_hash,
        "jurisdiction": request.jurisdiction,
        "business_type": request.business_type,
        "submitted_proofs": list(request.submitted_proofs),
        "status": request.status.value,
        "level": request.level.value,
        "requested_at": request.requested_at,
        "decided_at": request.decided_at,
        "decided_by": request.decided_by,
        "rejection_reason": request.rejection_reason,
        "valid_until": request.valid_until,
        "renewal_of": request.renewal_of,
    }


class SqlRequestStore(RequestStore):
    """Request table persisted with SQLAlchemy."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def open(self) -> None:
        await self.database.open()

    async def create(self, request: VerificationRequest) -> VerificationRequest:
        identity = normalize_identity(request.business_identity)
        async with self.database.session() as session:
            if request.is_pending:
                existing = await session.scalar(
                    select(VerificationRequestRecord.request_id).where(
                        VerificationRequestRecord.business_identity == identity,
                        VerificationRequestRecord.status == RequestStatus.PENDING.value,
                    )
                )
                if existing is not None:
                    raise AlreadyPending(identity, existing)

            record = VerificationRequestRecord(
                business_identity=identity, version=1, **_columns(request)
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                # Lost a race with a concurrent submission in another process
                raise AlreadyPending(identity) from e
            return _to_domain(record)

    async def get(self, request_id: int) -> VerificationRequest:
        async with self.database.session() as session:
            record = await session.get(VerificationRequestRecord, request_id)
        if record is None:
            raise RequestNotFound(request_id)
        return _to_domain(record)

    async def save(self, request: VerificationRequest) -> None:
        async with self.database.session() as session:
            result = await session.execute(
                update(VerificationRequestRecord)
                .where(
                    VerificationRequestRecord.request_id == request.request_id,
                    VerificationRequestRecord.version == request.version,
                )
                .values(**_columns(request), version=request.version + 1)
            )
            await session.commit()
            if result.rowcount == 0:
                record = await session.get(VerificationRequestRecord, request.request_id)
                if record is None:
                    raise RequestNotFound(request.request_id)
                logger.warning(
                    f"Stale write to request {request.request_id}: "
                    f"read at version {request.version}, stored {record.version}"
                )
                raise _stale(_to_domain(record))
        request.version += 1

    async def list_for_business(self, business_identity: str) -> list[VerificationRequest]:
        identity = normalize_identity(business_identity)
        async with self.database.session() as session:
            records = await session.scalars(
                select(VerificationRequestRecord)
                .where(VerificationRequestRecord.business_identity == identity)
                .order_by(VerificationRequestRecord.request_id)
            )
            return [_to_domain(record) for record in records]

    async def list_pending(self) -> list[VerificationRequest]:
        async with self.database.session() as session:
            records = await session.scalars(
                select(VerificationRequestRecord)
                .where(VerificationRequestRecord.status == RequestStatus.PENDING.value)
                .order_by(VerificationRequestRecord.request_id)
            )
            return [_to_domain(record) for record in records]
