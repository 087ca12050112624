"""
Error taxonomy for storage and verification workflow.

Callers branch on exception type, never on message text:
- NotFound: locator, identity or request unknown
- BackendUnavailable: transient, safe to retry
- WorkflowError: state-machine precondition violated, never retried
- DecodeError: stored bytes do not match the requested shape
- Unauthorized: actor lacks the required ledger role
"""


class KYBError(Exception):
    """Base class for all errors raised by this service."""

    code = "kyb_error"


# =============================================================================
# Lookup failures
# =============================================================================

class NotFound(KYBError):
    code = "not_found"


class ContentNotFound(NotFound):
    """The active storage backend holds no data for a locator."""

    code = "content_not_found"

    def __init__(self, locator: str, message: str | None = None) -> None:
        self.locator = locator
        super().__init__(message or f"Content not found: {locator}")


class FallbackContentNotFound(ContentNotFound):
    """
    Miss on the local fallback backend.

    Fallback content is only visible to the process that wrote it, so a miss
    here usually means the evidence was uploaded from another deployment or
    device, not that it was lost.
    """

    code = "fallback_storage_miss"

    def __init__(self, locator: str) -> None:
        super().__init__(
            locator,
            f"Content {locator} is not in local fallback storage. Fallback storage "
            "is only visible to the instance that wrote it; configure remote "
            "pinning to review evidence uploaded elsewhere.",
        )


class NoMapping(NotFound):
    code = "no_mapping"

    def __init__(self, business_identity: str) -> None:
        self.business_identity = business_identity
        super().__init__(f"No manifest recorded for business {business_identity}")


class RequestNotFound(NotFound):
    code = "request_not_found"

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        super().__init__(f"Verification request {request_id} not found")


# =============================================================================
# Backend failures
# =============================================================================

class BackendUnavailable(KYBError):
    """Network, auth or timeout failure talking to a remote collaborator."""

    code = "backend_unavailable"


class LedgerUnavailable(BackendUnavailable):
    code = "ledger_unavailable"


class UploadFailed(KYBError):
    code = "upload_failed"

    def __init__(self, cause: Exception, name: str | None = None) -> None:
        self.cause = cause
        self.name = name
        target = f" {name}" if name else ""
        super().__init__(f"Upload of{target or ' content'} failed: {cause}")

    @property
    def retryable(self) -> bool:
        """Only transient backend failures are worth another attempt."""
        return isinstance(self.cause, BackendUnavailable)


class DecodeError(KYBError):
    """Stored bytes are corrupt or not valid for the requested shape."""

    code = "decode_error"


# =============================================================================
# Workflow preconditions
# =============================================================================

class WorkflowError(KYBError):
    code = "workflow_error"


class AlreadyPending(WorkflowError):
    code = "already_pending"

    def __init__(self, business_identity: str, request_id: int | None = None) -> None:
        self.business_identity = business_identity
        self.request_id = request_id
        suffix = f" (request {request_id})" if request_id is not None else ""
        super().__init__(f"Business {business_identity} already has a pending request{suffix}")


class RequestNotPending(WorkflowError):
    code = "request_not_pending"

    def __init__(self, request_id: int, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(f"Request {request_id} is {status}, not pending")


class RequestConflict(WorkflowError):
    """The request changed since it was read; reload and try again."""

    code = "request_conflict"

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        super().__init__(f"Request {request_id} was modified concurrently")


class RenewalNotAllowed(WorkflowError):
    code = "renewal_not_allowed"


class UnsupportedJurisdiction(WorkflowError):
    code = "unsupported_jurisdiction"

    def __init__(self, jurisdiction: str) -> None:
        self.jurisdiction = jurisdiction
        super().__init__(f"Unsupported jurisdiction: {jurisdiction!r}")


# =============================================================================
# Authorization
# =============================================================================

class Unauthorized(KYBError):
    code = "unauthorized"


class NotRequestOwner(Unauthorized):
    code = "not_request_owner"

    def __init__(self, request_id: int, caller: str) -> None:
        self.request_id = request_id
        self.caller = caller
        super().__init__(f"{caller} did not submit request {request_id}")
