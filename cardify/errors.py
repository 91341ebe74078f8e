"""Error taxonomy shared by every workflow component.

Each error carries a stable machine-readable ``kind``, the HTTP status the API
answers with, and whether the caller may retry the same request unchanged.
"""


class CardifyError(Exception):
    kind = 'error'
    status_code = 500
    retryable = False

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.message = message or self.__class__.__doc__ or self.kind
        self.details = details

    def to_dict(self):
        payload = {
            "success": False,
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CardifyError):
    """Invalid request"""
    kind = 'validation_error'
    status_code = 400


class InvalidCount(ValidationError):
    """Code count out of range"""
    kind = 'invalid_count'


class AuthorizationError(CardifyError):
    """Authentication required"""
    kind = 'authorization_error'
    status_code = 401


class InsufficientCredits(AuthorizationError):
    """Insufficient credits"""
    kind = 'insufficient_credits'
    status_code = 403


class Forbidden(AuthorizationError):
    """Not authorized to access this resource"""
    kind = 'forbidden'
    status_code = 403


class NotFound(CardifyError):
    """Not found"""
    kind = 'not_found'
    status_code = 404


class CodeNotFoundOrAlreadyUsed(NotFound):
    """not found or used"""
    kind = 'code_not_found_or_used'


class AttemptInProgress(CardifyError):
    """Deployment attempt is already running"""
    kind = 'attempt_in_progress'
    status_code = 409
    retryable = True


class ChainTransientError(CardifyError):
    """Blockchain temporarily unavailable"""
    kind = 'chain_transient'
    status_code = 503
    retryable = True


class TransactionTimedOut(ChainTransientError):
    """Transaction not confirmed in time"""
    kind = 'transaction_timed_out'

    def __init__(self, message=None, tx_hash=None, **details):
        super().__init__(message, tx_hash=tx_hash, **details)
        self.tx_hash = tx_hash


class InsufficientFunds(ChainTransientError):
    """Operator account cannot pay for gas"""
    kind = 'insufficient_funds'


class ChainFatalError(CardifyError):
    """Blockchain rejected the operation"""
    kind = 'chain_fatal'
    status_code = 502


class TransactionReverted(ChainFatalError):
    """Transaction reverted"""
    kind = 'transaction_reverted'


class PersistenceTransientError(CardifyError):
    """Database temporarily unavailable"""
    kind = 'persistence_unavailable'
    status_code = 503
    retryable = True


PersistenceUnavailable = PersistenceTransientError


class PersistenceRejected(CardifyError):
    """Database rejected the record"""
    kind = 'persistence_rejected'
    status_code = 500


class InvariantViolation(CardifyError):
    """Invariant violation"""
    kind = 'invariant_violation'
    status_code = 500


class EventNotFound(InvariantViolation):
    """CollectionDeployed event not found"""
    kind = 'event_not_found'


class OwnerMismatch(InvariantViolation):
    """Deployed collection is not owned by the operator"""
    kind = 'owner_mismatch'


class OwnershipTransferMismatch(InvariantViolation):
    """Ownership transfer did not reach the requested owner"""
    kind = 'ownership_transfer_mismatch'


class TransactionUnrecorded(InvariantViolation):
    """Transaction broadcast but not recorded"""
    kind = 'transaction_unrecorded'


class StorageUnavailable(CardifyError):
    """Content storage unavailable"""
    kind = 'storage_unavailable'
    status_code = 503
    retryable = True
