"""
Error kinds raised by the price change engine.

Each kind carries the HTTP status the API layer reports it with. Only
TransientStorageError is ever retried, and only by the next scheduler sweep.
"""


class PriceChangeError(Exception):
    """Base class for price change engine errors"""
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PriceChangeError):
    """Malformed or contradictory input"""
    status_code = 400


class PermissionDeniedError(PriceChangeError):
    """Caller does not own the subscription or product"""
    status_code = 403


class NotFoundError(PriceChangeError):
    """Unknown id, or a token that is no longer valid"""
    status_code = 404


class ConflictError(PriceChangeError):
    """The write would break the one-pending-change-per-subscription invariant"""
    status_code = 409


class TransientStorageError(PriceChangeError):
    """Underlying store unavailable"""
    status_code = 503
