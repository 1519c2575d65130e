"""
Bid persistence with CAS-guarded conditional writes.

Follows the same read-modify-write pattern everywhere a bid changes:
- _bid_cas_retry re-reads, checks the expected status, mutates, and
  replaces with the CAS it read
- Exponential backoff on CASMismatchException
- An expected-status mismatch is not retried: it means another invocation
  already moved the bid and the caller lost the race

The (user_id, item_id) uniqueness of active bids is enforced by an
ActiveBidSlot document inserted alongside the bid.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from couchbase.exceptions import (
    CASMismatchException,
    DocumentExistsException,
    DocumentNotFoundException,
)

from models.entities.couchbase.bids import (
    ActiveBidSlot,
    ActiveBidSlotData,
    Bid,
    BidData,
    TERMINAL_STATUSES,
)

logger = logging.getLogger(__name__)

BidMutator = Callable[[BidData], Optional[str]]


class ConsistencyViolation(Exception):
    """A conditional write found the bid in a different state than expected."""

    def __init__(self, message: str, bid_id: str, current_status: Optional[str] = None):
        self.bid_id = bid_id
        self.current_status = current_status
        super().__init__(message)


class ActiveBidExistsError(Exception):
    """Another non-terminal bid already holds the (user, item) slot."""

    def __init__(self, user_id: str, item_id: str, bid_id: str):
        self.user_id = user_id
        self.item_id = item_id
        self.bid_id = bid_id
        super().__init__(f"Active bid {bid_id} already exists for user {user_id} on item {item_id}")


# ---------------------------------------------------------------------------
# CAS-retry helper
# ---------------------------------------------------------------------------

async def _bid_cas_retry(
    bid_id: str,
    mutator: BidMutator,
    expected_status: Optional[str] = None,
    max_retries: int = 5,
) -> Bid:
    """Read-modify-write a bid with CAS-guarded retry.

    *mutator* receives ``BidData`` and mutates it in place.  It returns
    ``None`` on success or an error string to abort.  When
    *expected_status* is given the write only happens while the stored status
    still equals it.  Both an abort and a status mismatch raise
    ``ConsistencyViolation``.  On ``CASMismatchException`` the helper re-reads
    and retries with exponential backoff (10 ms, 20 ms, 40 ms, …).
    """
    backoff_ms = 10
    for attempt in range(max_retries + 1):
        bid = await Bid.get(bid_id)
        if not bid:
            raise ConsistencyViolation(f"Bid {bid_id} not found", bid_id)

        current = bid.data.status
        if expected_status is not None and current != expected_status:
            raise ConsistencyViolation(
                f"Bid {bid_id} is {current}, expected {expected_status}", bid_id, current
            )

        error = mutator(bid.data)
        if error is not None:
            raise ConsistencyViolation(error, bid_id, current)

        try:
            await Bid.update(bid)
        except CASMismatchException:
            if attempt == max_retries:
                raise ConsistencyViolation(
                    f"Concurrent update conflict on bid {bid_id}", bid_id, current
                )
            await asyncio.sleep(backoff_ms / 1000)
            backoff_ms *= 2
            continue

        if bid.data.status in TERMINAL_STATUSES and current not in TERMINAL_STATUSES:
            await _release_active_slot(bid)
        return bid

    raise ConsistencyViolation("Max retries exceeded", bid_id)


# ---------------------------------------------------------------------------
# Active slot
# ---------------------------------------------------------------------------

# A slot is written before its bid document, so a slot whose bid is missing
# may belong to a create still in flight. It only counts as stale once it is
# older than this.
SLOT_CLAIM_GRACE = timedelta(seconds=60)


def _slot_age(slot: ActiveBidSlot, now: datetime) -> timedelta:
    claimed_at = slot.data.updated_at or slot.data.created_at
    if claimed_at is None:
        return SLOT_CLAIM_GRACE
    if claimed_at.tzinfo is None:
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)
    return now - claimed_at


async def _claim_active_slot(data: BidData, bid_id: str) -> None:
    key = ActiveBidSlot.key_for(data.user_id, data.item_id)
    slot_data = ActiveBidSlotData(user_id=data.user_id, item_id=data.item_id, bid_id=bid_id)

    try:
        await ActiveBidSlot.create(slot_data, key=key)
        return
    except DocumentExistsException:
        pass

    # The slot is taken. It is only stale if its bid is terminal, or gone for
    # longer than a create takes.
    slot = await ActiveBidSlot.get(key)
    if slot is None:
        try:
            await ActiveBidSlot.create(slot_data, key=key)
        except DocumentExistsException:
            raise ActiveBidExistsError(data.user_id, data.item_id, "unknown")
        return
    holder_id = slot.data.bid_id
    holder = await Bid.get(holder_id)
    if holder is None:
        if _slot_age(slot, datetime.now(timezone.utc)) < SLOT_CLAIM_GRACE:
            raise ActiveBidExistsError(data.user_id, data.item_id, holder_id)
    elif holder.data.is_active:
        raise ActiveBidExistsError(data.user_id, data.item_id, holder.id)

    slot.data = slot_data
    try:
        await ActiveBidSlot.update(slot)
    except CASMismatchException:
        # Someone else reclaimed it between our read and write
        raise ActiveBidExistsError(data.user_id, data.item_id, holder_id)


async def _release_slot_key(key: str, bid_id: str) -> None:
    try:
        slot = await ActiveBidSlot.get(key)
        if slot and slot.data.bid_id == bid_id:
            await ActiveBidSlot.get_keyspace().remove(key, cas=slot.cas)
    except (DocumentNotFoundException, CASMismatchException):
        pass
    except Exception as e:
        # A stale slot is reclaimed on a later create, so this is not fatal
        logger.warning(f"Failed to release active slot {key} for bid {bid_id}: {e}")


async def _release_active_slot(bid: Bid) -> None:
    await _release_slot_key(ActiveBidSlot.key_for(bid.data.user_id, bid.data.item_id), bid.id)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

async def bid_create(data: BidData, bid_id: Optional[str] = None) -> Bid:
    """Insert a new bid after claiming its (user, item) slot."""
    bid_id = bid_id or str(uuid.uuid4())
    await _claim_active_slot(data, bid_id)
    try:
        return await Bid.create(data, key=bid_id)
    except Exception:
        await _release_slot_key(ActiveBidSlot.key_for(data.user_id, data.item_id), bid_id)
        raise


async def bid_get(bid_id: str) -> Optional[Bid]:
    return await Bid.get(bid_id)


async def bid_update(
    bid_id: str,
    mutator: BidMutator,
    expected_status: Optional[str] = None,
) -> Bid:
    return await _bid_cas_retry(bid_id, mutator, expected_status)


async def bid_delete(bid_id: str) -> bool:
    return await Bid.delete(bid_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

async def bid_query(user_id: str, item_id: str) -> List[Bid]:
    """All bids (any status) a user has on an item, newest first."""
    keyspace = Bid.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE user_id = $user_id AND item_id = $item_id "
        f"ORDER BY created_at DESC"
    )
    rows = await keyspace.query(query, user_id=user_id, item_id=item_id)
    return [bid for bid in (Bid.from_row(row) for row in rows) if bid]


async def bid_list_by_status_page(
    status: str,
    after: Optional[Tuple[str, str]] = None,
    limit: int = 500,
) -> List[Bid]:
    """One page of bids in *status*, ordered by (auction_end_time, id).

    *after* is the (auction_end_time, id) of the last bid of the previous
    page, as stored in the document.
    """
    keyspace = Bid.get_keyspace()
    params = {"status": status}
    where = "status = $status"
    if after is not None:
        where += (
            " AND (auction_end_time > $after_end"
            " OR (auction_end_time = $after_end AND META().id > $after_id))"
        )
        params.update(after_end=after[0], after_id=after[1])
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE {where} "
        f"ORDER BY auction_end_time ASC, META().id ASC "
        f"LIMIT {limit}"
    )
    rows = await keyspace.query(query, **params)
    return [bid for bid in (Bid.from_row(row) for row in rows) if bid]


async def bid_list_by_status(status: str, page_size: int = 500) -> List[Bid]:
    """Every bid in a given status, soonest auction end first."""
    bids: List[Bid] = []
    after = None
    while True:
        page = await bid_list_by_status_page(status, after=after, limit=page_size)
        bids.extend(page)
        if len(page) < page_size:
            return bids
        last = page[-1]
        after = (Bid.to_document(last.data)["auction_end_time"], last.id)


async def bid_list_terminal_before(cutoff: datetime, limit: int = 500) -> List[Bid]:
    keyspace = Bid.get_keyspace()
    query = (
        f"SELECT META().id, * FROM {keyspace} "
        f"WHERE status IN $statuses AND STR_TO_MILLIS(updated_at) < $cutoff_ms "
        f"LIMIT {limit}"
    )
    rows = await keyspace.query(
        query, statuses=sorted(TERMINAL_STATUSES), cutoff_ms=int(cutoff.timestamp() * 1000)
    )
    return [bid for bid in (Bid.from_row(row) for row in rows) if bid]
