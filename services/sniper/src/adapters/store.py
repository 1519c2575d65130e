"""Couchbase-backed BidStore, delegating to models.operations."""

from datetime import datetime
from typing import List, Optional

from models.entities.couchbase.bid_history import BidHistoryData
from models.entities.couchbase.bids import Bid, BidData
from models.operations.bid_history import (
    bid_history_append,
    bid_history_delete_for_bid,
    bid_history_list,
)
from models.operations.bids import (
    BidMutator,
    bid_create,
    bid_delete,
    bid_get,
    bid_list_by_status,
    bid_list_terminal_before,
    bid_query,
    bid_update,
)
from utils import log

logger = log.get_logger(__name__)


class CouchbaseBidStore:
    async def get(self, bid_id: str) -> Optional[Bid]:
        return await bid_get(bid_id)

    async def create(self, data: BidData) -> Bid:
        return await bid_create(data)

    async def update(
        self, bid_id: str, mutator: BidMutator, expected_status: Optional[str] = None
    ) -> Bid:
        return await bid_update(bid_id, mutator, expected_status)

    async def query(self, user_id: str, item_id: str) -> List[Bid]:
        return await bid_query(user_id, item_id)

    async def list_by_status(self, status: str) -> List[Bid]:
        return await bid_list_by_status(status)

    async def append_history(self, entry: BidHistoryData) -> None:
        await bid_history_append(entry)

    async def list_history(self, bid_id: str) -> List[BidHistoryData]:
        return [entry.data for entry in await bid_history_list(bid_id)]

    async def purge_terminal(self, older_than: datetime) -> int:
        purged = 0
        for bid in await bid_list_terminal_before(older_than):
            # History first, so a crash never leaves orphaned entries behind
            removed = await bid_history_delete_for_bid(bid.id)
            if await bid_delete(bid.id):
                purged += 1
                logger.debug(f"Purged bid {bid.id} and {removed} history entries")
        return purged
