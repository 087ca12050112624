"""
Services package - Business logic and external integrations.

Includes document storage, the verification workflow, the KYB
orchestrator and the XRPL ledger gateway.
"""

from .documents import DocumentStore
from .kyb import EvidenceFile, KYBService, KYBSubmission
from .ledger import KYB_VERIFIER_ROLE, LedgerGateway, StaticLedgerGateway, XRPLLedgerGateway
from .workflow import VerificationWorkflow

__all__ = [
    "DocumentStore",
    "EvidenceFile",
    "KYBService",
    "KYBSubmission",
    "KYB_VERIFIER_ROLE",
    "LedgerGateway",
    "StaticLedgerGateway",
    "VerificationWorkflow",
    "XRPLLedgerGateway",
]
