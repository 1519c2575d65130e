from typing import Optional, Literal, FrozenSet
from datetime import datetime
from clients.couchbase import BaseModelCouchbase, BaseCouchbaseEntityData


BidStatus = Literal["pending", "placed", "won", "lost", "cancelled", "failed"]

ACTIVE_STATUSES: FrozenSet[str] = frozenset({"pending", "placed"})
TERMINAL_STATUSES: FrozenSet[str] = frozenset({"won", "lost", "cancelled", "failed"})


class BidData(BaseCouchbaseEntityData):
    # Identity (immutable)
    user_id: str
    item_id: str

    # What the user asked for (smallest currency unit)
    max_bid_amount: int
    status: BidStatus = "pending"
    auction_end_time: datetime

    # Cached marketplace state
    current_price: int

    # Active scheduler job (placement, then outcome)
    scheduled_job_ref: Optional[str] = None

    # Price-alert dedup: one alert per max_bid_amount epoch
    last_alert_sent_at: Optional[datetime] = None
    last_alert_bid_amount: Optional[int] = None

    # Placement claim, taken before any marketplace call
    placement_started_at: Optional[datetime] = None

    # Placement result
    external_bid_id: Optional[str] = None
    placed_at: Optional[datetime] = None
    placed_amount: Optional[int] = None

    # Outcome
    final_price: Optional[int] = None
    closed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    outcome_error: Optional[str] = None
    outcome_attempts: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Bid(BaseModelCouchbase[BidData]):
    _collection_name = "bids"


class ActiveBidSlotData(BaseCouchbaseEntityData):
    """Claims the (user, item) pair for one non-terminal bid."""
    user_id: str
    item_id: str
    bid_id: str


class ActiveBidSlot(BaseModelCouchbase[ActiveBidSlotData]):
    _collection_name = "active_bid_slots"

    @staticmethod
    def key_for(user_id: str, item_id: str) -> str:
        return f"{user_id}::{item_id}"
