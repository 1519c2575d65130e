"""Error taxonomy of the bid engine.

User-facing operations raise ValidationError, ConflictError or
BidNotFoundError synchronously. Marketplace failures are split into
transient (retried) and permanent (bid fails). ConsistencyViolation comes
from the store's conditional write and means another invocation won the
race; the execution phases treat it as a no-op.
"""

from models.operations.bids import ActiveBidExistsError, ConsistencyViolation


class BidEngineError(Exception):
    """Base exception for the bid engine."""
    pass


class ValidationError(BidEngineError):
    """Bad amount, item id or timing."""
    pass


class ConflictError(BidEngineError):
    """Duplicate active bid or an illegal state transition."""
    pass


class BidNotFoundError(BidEngineError):
    def __init__(self, bid_id: str):
        self.bid_id = bid_id
        super().__init__(f"Bid {bid_id} not found")


class SchedulingError(BidEngineError):
    """The scheduler refused to schedule or cancel a job."""
    pass


class MarketplaceError(BidEngineError):
    pass


class MarketplaceTransientError(MarketplaceError):
    """Timeout, rate limit or 5xx. Worth retrying."""
    pass


class MarketplacePermanentError(MarketplaceError):
    """Item ended, bid rejected, bad credential. Retrying will not help."""
    pass


class CredentialError(MarketplacePermanentError):
    """No usable marketplace credential for the user, even after a refresh."""
    pass


class RetriesExhaustedError(MarketplacePermanentError):
    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


__all__ = [
    "ActiveBidExistsError",
    "BidEngineError",
    "BidNotFoundError",
    "ConflictError",
    "ConsistencyViolation",
    "CredentialError",
    "MarketplaceError",
    "MarketplacePermanentError",
    "MarketplaceTransientError",
    "RetriesExhaustedError",
    "SchedulingError",
    "ValidationError",
]
