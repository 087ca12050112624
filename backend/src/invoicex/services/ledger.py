"""
Ledger collaborator for KYB role checks and decision mirroring.

The ledger is the system of record for who may review KYB requests and
for the final verification outcome. This service only asks it questions
and prepares records for it; transaction signing and broadcasting happen
client-side.

Handles:
- Reviewer role lookup (has_role)
- Mirroring request state as unsigned AccountSet memo payloads

Staged records wait in a bounded outbox until a signer drains them; once
the outbox is full the oldest record is dropped with a warning.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.models import AccountInfo

from invoicex.config import Settings
from invoicex.domain.errors import LedgerUnavailable
from invoicex.domain.models import VerificationRequest

logger = logging.getLogger(__name__)

KYB_VERIFIER_ROLE = "KYB_VERIFIER_ROLE"


class XRPLNetwork(Enum):
    """Supported XRPL networks."""
    MAINNET = "mainnet"
    TESTNET = "testnet"
    DEVNET = "devnet"


# JSON-RPC endpoints (more reliable than WebSocket for quick operations)
NETWORK_URLS = {
    XRPLNetwork.MAINNET: "https://xrplcluster.com",
    XRPLNetwork.TESTNET: "https://s.altnet.rippletest.net:51234",
    XRPLNetwork.DEVNET: "https://s.devnet.rippletest.net:51234",
}


def _to_hex(value: str) -> str:
    return value.encode("utf-8").hex().upper()


def request_record(request: VerificationRequest) -> dict[str, Any]:
    """JSON-compatible snapshot of a request for on-ledger recording."""
    return {
        "request_id": request.request_id,
        "business_identity": request.business_identity,
        "business_hash": request.business_hash,
        "submitted_proofs": list(request.submitted_proofs),
        "status": request.status.value,
        "level": request.level.value,
        "decided_by": request.decided_by,
        "rejection_reason": request.rejection_reason,
        "valid_until": request.valid_until.isoformat() if request.valid_until else None,
    }


def _normalize_members(roles: Mapping[str, Iterable[str]]) -> dict[str, frozenset[str]]:
    return {
        role: frozenset(address.strip().casefold() for address in members)
        for role, members in roles.items()
    }


class LedgerGateway(ABC):
    """Abstract read/write interface to the ledger."""

    def __init__(self, outbox_size: int = 1000) -> None:
        if outbox_size < 1:
            raise ValueError("outbox_size must be at least 1")
        self.outbox: deque[dict[str, Any]] = deque(maxlen=outbox_size)

    @abstractmethod
    async def has_role(self, role: str, address: str) -> bool:
        """True if ``address`` holds ``role`` on the ledger."""

    @abstractmethod
    async def record_request(self, request: VerificationRequest) -> None:
        """Stage the current state of a request for on-ledger recording."""

    def pending_records(self) -> list[dict[str, Any]]:
        """Staged records, oldest first, without removing them."""
        return list(self.outbox)

    def drain(self) -> list[dict[str, Any]]:
        """Remove and return every staged record, oldest first."""
        records = list(self.outbox)
        self.outbox.clear()
        if records:
            logger.info(f"Drained {len(records)} ledger records")
        return records

    def _stage(self, record: dict[str, Any]) -> None:
        if len(self.outbox) == self.outbox.maxlen:
            logger.warning(
                f"Ledger outbox full ({self.outbox.maxlen}); dropping the oldest undrained record"
            )
        self.outbox.append(record)


class StaticLedgerGateway(LedgerGateway):
    """
    Role table from configuration, records kept in memory.

    Used for local development and tests where no ledger is reachable.
    """

    def __init__(
        self,
        roles: Mapping[str, Iterable[str]] | None = None,
        outbox_size: int = 1000,
    ) -> None:
        super().__init__(outbox_size)
        self._roles = _normalize_members(roles or {})

    async def has_role(self, role: str, address: str) -> bool:
        return address.strip().casefold() in self._roles.get(role, frozenset())

    async def record_request(self, request: VerificationRequest) -> None:
        self._stage(request_record(request))
        logger.info(f"Recorded request {request.request_id} ({request.status.value})")


class XRPLLedgerGateway(LedgerGateway):
    """
    Ledger gateway on the XRP Ledger.

    Role membership comes from the registry configuration; a member only
    counts while its account is activated on the ledger. Request records
    become AccountSet transactions carrying a JSON memo, prepared for the
    registry account to sign.

    Example:
        gateway = XRPLLedgerGateway(
            network=XRPLNetwork.TESTNET,
            account="rRegistry...",
            roles={KYB_VERIFIER_ROLE: ["rReviewer..."]},
        )
        if await gateway.has_role(KYB_VERIFIER_ROLE, "rReviewer..."):
            ...
    """

    MEMO_TYPE = "invoicex/kyb-request"
    MEMO_FORMAT = "application/json"

    def __init__(
        self,
        account: str,
        roles: Mapping[str, Iterable[str]],
        network: XRPLNetwork = XRPLNetwork.TESTNET,
        custom_url: str | None = None,
        client: AsyncJsonRpcClient | None = None,
        outbox_size: int = 1000,
    ) -> None:
        """
        Initialize XRPL gateway.

        Args:
            account: Registry account that signs request records
            roles: Role name -> member account addresses
            network: XRPL network to connect to
            custom_url: Override network URL (for testing)
            client: Preconfigured client (for testing)
            outbox_size: Undrained records kept before the oldest is dropped
        """
        super().__init__(outbox_size)
        self.account = account
        self.network = network
        self.url = custom_url or NETWORK_URLS[network]
        self._roles = _normalize_members(roles)
        self._client = client

    def _get_client(self) -> AsyncJsonRpcClient:
        """Get or create JSON-RPC client."""
        if self._client is None:
            self._client = AsyncJsonRpcClient(self.url)
        return self._client

    async def has_role(self, role: str, address: str) -> bool:
        if address.strip().casefold() not in self._roles.get(role, frozenset()):
            return False

        try:
            response = await self._get_client().request(
                AccountInfo(account=address.strip(), ledger_index="validated")
            )
        except Exception as e:
            logger.exception(f"Account lookup failed for {address}")
            raise LedgerUnavailable(f"XRPL account lookup failed: {e}") from e

        if response.is_successful():
            return True

        error = response.result.get("error")
        if error == "actNotFound":
            logger.warning(f"{role} member {address} is not an active ledger account")
            return False
        raise LedgerUnavailable(f"XRPL account lookup failed: {error or response.result}")

    def prepare_record_payload(self, request: VerificationRequest) -> dict[str, Any]:
        """
        Prepare an AccountSet transaction recording a request.

        Returns:
            Transaction payload ready for signing by the registry account
        """
        memo = json.dumps(request_record(request), sort_keys=True, separators=(",", ":"))
        return {
            "TransactionType": "AccountSet",
            "Account": self.account,
            "Memos": [
                {
                    "Memo": {
                        "MemoType": _to_hex(self.MEMO_TYPE),
                        "MemoFormat": _to_hex(self.MEMO_FORMAT),
                        "MemoData": _to_hex(memo),
                    }
                }
            ],
        }

    async def record_request(self, request: VerificationRequest) -> None:
        payload = self.prepare_record_payload(request)
        self._stage(payload)
        logger.info(
            f"Prepared ledger record for request {request.request_id} "
            f"({request.status.value}), memo {len(payload['Memos'][0]['Memo']['MemoData'])} chars"
        )


def create_ledger_gateway(settings: Settings) -> LedgerGateway:
    """Build the ledger gateway selected by configuration."""
    roles = {KYB_VERIFIER_ROLE: settings.reviewer_addresses}

    if settings.ledger_backend == "xrpl":
        if not settings.ledger_account:
            raise ValueError("ledger_account is required when ledger_backend is 'xrpl'")
        logger.info(f"Using XRPL ledger gateway on {settings.xrpl_network}")
        return XRPLLedgerGateway(
            account=settings.ledger_account,
            roles=roles,
            network=XRPLNetwork(settings.xrpl_network),
            outbox_size=settings.ledger_outbox_size,
        )

    logger.info("Using static ledger gateway (roles from configuration)")
    return StaticLedgerGateway(roles, outbox_size=settings.ledger_outbox_size)
