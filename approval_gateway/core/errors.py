"""
Error taxonomy for the approval workflow.

Every error carries the HTTP status it maps to, so the API layer can turn
any of them into a specific response instead of a generic 500.
"""


class ApprovalGatewayError(Exception):
    """Base class for all workflow errors"""

    status_code = 400
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ApprovalGatewayError):
    """Malformed input (unknown operation type, out-of-range signatures, missing amount...)"""

    status_code = 400
    kind = "validation_error"


class NotFound(ApprovalGatewayError):
    status_code = 404
    kind = "not_found"


class InvalidStateTransition(ApprovalGatewayError):
    """Action attempted outside its legal source state"""

    status_code = 400
    kind = "invalid_state_transition"


class DuplicateSignature(ApprovalGatewayError):
    status_code = 400
    kind = "duplicate_signature"


class PermissionDenied(ApprovalGatewayError):
    status_code = 403
    kind = "permission_denied"


class ConcurrencyConflict(ApprovalGatewayError):
    """Optimistic write kept losing after the bounded number of re-checks"""

    status_code = 409
    kind = "concurrency_conflict"


class LedgerError(ApprovalGatewayError):
    """
    Failure talking to the ledger or applying an operation's effect.

    retryable=True for transient causes (network, timeout, 429/5xx),
    False for fatal ones (malformed payload, rejected request).
    """

    status_code = 502
    kind = "ledger_error"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable
