"""
Append-only bid history.

Actions that can happen at most once per bid (everything except UPDATE) are
written under a deterministic key, so a job that is delivered twice and
repeats the write does not produce a second entry.
"""

import uuid
from typing import List

from models.entities.couchbase.bid_history import BidHistoryData, BidHistoryEntry

REPEATABLE_ACTIONS = frozenset({"UPDATE"})


def history_key(data: BidHistoryData) -> str:
    if data.action in REPEATABLE_ACTIONS:
        return f"{data.bid_id}::{data.action}::{uuid.uuid4().hex}"
    return f"{data.bid_id}::{data.action}"


async def bid_history_append(data: BidHistoryData) -> BidHistoryEntry:
    return await BidHistoryEntry.create_or_update(history_key(data), data)


async def bid_history_list(bid_id: str, limit: int = 100) -> List[BidHistoryEntry]:
    """History of one bid, oldest first."""
    keyspace = BidHistoryEntry.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE bid_id = $bid_id "
        f"ORDER BY `timestamp` ASC "
        f"LIMIT {limit}"
    )
    rows = await keyspace.query(query, bid_id=bid_id)
    return [e for e in (BidHistoryEntry.from_row(row) for row in rows) if e]


async def bid_history_delete_for_bid(bid_id: str) -> int:
    keyspace = BidHistoryEntry.get_keyspace()
    rows = await keyspace.query(
        f"DELETE FROM {keyspace} WHERE bid_id = $bid_id RETURNING META().id",
        bid_id=bid_id,
    )
    return len(rows)
