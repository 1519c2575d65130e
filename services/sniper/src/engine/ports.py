"""Collaborators the engine depends on, and the records exchanged with them."""

from datetime import datetime, timezone
from typing import List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from models.entities.couchbase.bid_history import BidHistoryData
from models.entities.couchbase.bids import Bid, BidData
from models.operations.bids import BidMutator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


#### Records ####

class ItemState(BaseModel):
    item_id: str
    current_price: int
    end_time: datetime


class PlaceBidResult(BaseModel):
    external_bid_id: Optional[str] = None
    accepted: bool
    message: Optional[str] = None


class AuctionOutcome(BaseModel):
    won: bool  # the item sold to some bidder
    winning_price: Optional[int] = None
    winning_bidder_is_us: bool = False
    final: bool = True


class Credential(BaseModel):
    user_id: str
    access_token: str
    expires_at: Optional[datetime] = None


EventKind = Literal["won", "lost", "failed", "price_exceeded", "operator_alert"]


class BidEvent(BaseModel):
    kind: EventKind
    bid_id: str
    item_id: str
    user_id: str
    max_bid_amount: Optional[int] = None
    price: Optional[int] = None
    message: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


JobPhase = Literal["placement", "outcome"]


class JobPayload(BaseModel):
    phase: JobPhase
    bid_id: str

    def job_id(self) -> str:
        return f"bid-job:{self.phase}:{self.bid_id}"


#### Ports ####

class BidStore(Protocol):
    async def get(self, bid_id: str) -> Optional[Bid]: ...

    async def create(self, data: BidData) -> Bid:
        """Insert a bid. Raises ActiveBidExistsError if (user, item) already
        has a non-terminal bid."""
        ...

    async def update(
        self, bid_id: str, mutator: BidMutator, expected_status: Optional[str] = None
    ) -> Bid:
        """Conditional write. Raises ConsistencyViolation when the stored
        status differs from *expected_status* or the mutator aborts."""
        ...

    async def query(self, user_id: str, item_id: str) -> List[Bid]: ...

    async def list_by_status(self, status: str) -> List[Bid]: ...

    async def append_history(self, entry: BidHistoryData) -> None: ...

    async def list_history(self, bid_id: str) -> List[BidHistoryData]: ...

    async def purge_terminal(self, older_than: datetime) -> int: ...


class MarketplaceClient(Protocol):
    async def get_item_state(self, item_id: str) -> ItemState: ...

    async def place_bid(self, item_id: str, amount: int, credential: Credential) -> PlaceBidResult: ...

    async def get_outcome(self, item_id: str, credential: Credential) -> AuctionOutcome: ...


class Scheduler(Protocol):
    async def schedule_at(self, when: datetime, payload: JobPayload) -> str: ...

    async def cancel(self, job_ref: str) -> None: ...


class CredentialProvider(Protocol):
    async def get_valid_credential(self, user_id: str) -> Credential: ...


class Notifier(Protocol):
    async def notify(self, user_id: str, event: BidEvent) -> None: ...
