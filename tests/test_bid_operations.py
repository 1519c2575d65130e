from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from couchbase.exceptions import CASMismatchException, DocumentExistsException

from models.entities.couchbase.bid_history import BidHistoryData
from models.entities.couchbase.bids import ActiveBidSlot, ActiveBidSlotData, Bid, BidData
from models.operations import bids as ops
from models.operations.bid_history import history_key

END = datetime(2026, 3, 1, 13, 0, tzinfo=timezone.utc)


def make_bid(status="pending", bid_id="b1"):
    data = BidData(
        user_id="user-1", item_id="item-1", max_bid_amount=20000,
        status=status, auction_end_time=END, current_price=15000,
    )
    return Bid(id=bid_id, data=data, cas=1)


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("models.operations.bids.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


async def test_status_mismatch_raises_without_writing():
    update = AsyncMock()
    with patch.object(Bid, "get", new=AsyncMock(return_value=make_bid("cancelled"))), \
            patch.object(Bid, "update", new=update):
        with pytest.raises(ops.ConsistencyViolation) as exc_info:
            await ops.bid_update("b1", lambda d: None, expected_status="pending")

    assert exc_info.value.current_status == "cancelled"
    update.assert_not_awaited()


async def test_mutator_abort_raises():
    with patch.object(Bid, "get", new=AsyncMock(return_value=make_bid())), \
            patch.object(Bid, "update", new=AsyncMock()) as update:
        with pytest.raises(ops.ConsistencyViolation, match="claimed"):
            await ops.bid_update("b1", lambda d: "claimed", expected_status="pending")
    update.assert_not_awaited()


async def test_cas_mismatch_rereads_and_retries(no_backoff):
    get = AsyncMock(side_effect=[make_bid(), make_bid()])
    update = AsyncMock(side_effect=[CASMismatchException(), None])

    def _bump(d):
        d.current_price = 16000

    with patch.object(Bid, "get", new=get), patch.object(Bid, "update", new=update):
        bid = await ops.bid_update("b1", _bump, expected_status="pending")

    assert bid.data.current_price == 16000
    assert get.await_count == 2
    assert update.await_count == 2
    no_backoff.assert_awaited_once_with(0.01)


async def test_terminal_transition_releases_slot():
    def _cancel(d):
        d.status = "cancelled"

    with patch.object(Bid, "get", new=AsyncMock(return_value=make_bid())), \
            patch.object(Bid, "update", new=AsyncMock()), \
            patch("models.operations.bids._release_active_slot", new=AsyncMock()) as release:
        await ops.bid_update("b1", _cancel, expected_status="pending")

    release.assert_awaited_once()


async def test_create_conflicts_with_active_holder():
    slot = ActiveBidSlot(
        id="user-1::item-1",
        data=ActiveBidSlotData(user_id="user-1", item_id="item-1", bid_id="b0"),
        cas=3,
    )
    with patch.object(ActiveBidSlot, "create", new=AsyncMock(side_effect=DocumentExistsException())), \
            patch.object(ActiveBidSlot, "get", new=AsyncMock(return_value=slot)), \
            patch.object(Bid, "get", new=AsyncMock(return_value=make_bid("placed", "b0"))), \
            patch.object(Bid, "create", new=AsyncMock()) as create:
        with pytest.raises(ops.ActiveBidExistsError) as exc_info:
            await ops.bid_create(make_bid().data, bid_id="b1")

    assert exc_info.value.bid_id == "b0"
    create.assert_not_awaited()


async def test_create_reclaims_stale_slot():
    slot = ActiveBidSlot(
        id="user-1::item-1",
        data=ActiveBidSlotData(user_id="user-1", item_id="item-1", bid_id="b0"),
        cas=3,
    )
    with patch.object(ActiveBidSlot, "create", new=AsyncMock(side_effect=DocumentExistsException())), \
            patch.object(ActiveBidSlot, "get", new=AsyncMock(return_value=slot)), \
            patch.object(ActiveBidSlot, "update", new=AsyncMock()) as reclaim, \
            patch.object(Bid, "get", new=AsyncMock(return_value=make_bid("lost", "b0"))), \
            patch.object(Bid, "create", new=AsyncMock(return_value=make_bid())) as create:
        await ops.bid_create(make_bid().data, bid_id="b1")

    assert reclaim.await_args.args[0].data.bid_id == "b1"
    create.assert_awaited_once()


def make_slot(bid_id="b0", claimed_at=None):
    data = ActiveBidSlotData(user_id="user-1", item_id="item-1", bid_id=bid_id)
    data.created_at = data.updated_at = claimed_at or datetime.now(timezone.utc)
    return ActiveBidSlot(id="user-1::item-1", data=data, cas=3)


async def test_create_in_flight_slot_without_bid_is_not_stale():
    # Another create has written its slot but not its bid document yet
    with patch.object(ActiveBidSlot, "create", new=AsyncMock(side_effect=DocumentExistsException())), \
            patch.object(ActiveBidSlot, "get", new=AsyncMock(return_value=make_slot("b0"))), \
            patch.object(ActiveBidSlot, "update", new=AsyncMock()) as reclaim, \
            patch.object(Bid, "get", new=AsyncMock(return_value=None)), \
            patch.object(Bid, "create", new=AsyncMock()) as create:
        with pytest.raises(ops.ActiveBidExistsError) as exc_info:
            await ops.bid_create(make_bid().data, bid_id="b1")

    assert exc_info.value.bid_id == "b0"
    reclaim.assert_not_awaited()
    create.assert_not_awaited()


async def test_create_reclaims_abandoned_slot_without_bid():
    abandoned = make_slot("b0", claimed_at=datetime.now(timezone.utc) - ops.SLOT_CLAIM_GRACE - timedelta(seconds=1))
    with patch.object(ActiveBidSlot, "create", new=AsyncMock(side_effect=DocumentExistsException())), \
            patch.object(ActiveBidSlot, "get", new=AsyncMock(return_value=abandoned)), \
            patch.object(ActiveBidSlot, "update", new=AsyncMock()) as reclaim, \
            patch.object(Bid, "get", new=AsyncMock(return_value=None)), \
            patch.object(Bid, "create", new=AsyncMock(return_value=make_bid())) as create:
        await ops.bid_create(make_bid().data, bid_id="b1")

    assert reclaim.await_args.args[0].data.bid_id == "b1"
    create.assert_awaited_once()


async def test_create_losing_slot_recreate_race_is_a_conflict():
    slot_create = AsyncMock(side_effect=[DocumentExistsException(), DocumentExistsException()])
    with patch.object(ActiveBidSlot, "create", new=slot_create), \
            patch.object(ActiveBidSlot, "get", new=AsyncMock(return_value=None)), \
            patch.object(Bid, "create", new=AsyncMock()) as create:
        with pytest.raises(ops.ActiveBidExistsError):
            await ops.bid_create(make_bid().data, bid_id="b1")

    create.assert_not_awaited()


async def test_failed_bid_insert_releases_slot():
    with patch.object(ActiveBidSlot, "create", new=AsyncMock()), \
            patch.object(Bid, "create", new=AsyncMock(side_effect=RuntimeError("timeout"))), \
            patch("models.operations.bids._release_slot_key", new=AsyncMock()) as release:
        with pytest.raises(RuntimeError):
            await ops.bid_create(make_bid().data, bid_id="b1")

    release.assert_awaited_once_with("user-1::item-1", "b1")


async def test_list_by_status_reads_every_page():
    bids = [make_bid(bid_id=f"b{i}") for i in range(5)]
    for i, bid in enumerate(bids):
        bid.data.auction_end_time = END + timedelta(minutes=i // 2)
    rows = [{"id": b.id, "bids": Bid.to_document(b.data)} for b in bids]
    keyspace = MagicMock()
    keyspace.query = AsyncMock(side_effect=[rows[0:2], rows[2:4], rows[4:5]])

    with patch.object(Bid, "get_keyspace", return_value=keyspace):
        found = await ops.bid_list_by_status("pending", page_size=2)

    assert [b.id for b in found] == ["b0", "b1", "b2", "b3", "b4"]
    assert keyspace.query.await_count == 3
    first, second, third = keyspace.query.await_args_list
    assert "after_end" not in first.kwargs
    assert second.kwargs["after_end"] == rows[1]["bids"]["auction_end_time"]
    assert second.kwargs["after_id"] == "b1"
    assert third.kwargs["after_id"] == "b3"


def test_history_keys():
    at = datetime(2026, 3, 1, tzinfo=timezone.utc)
    place = BidHistoryData(bid_id="b1", action="PLACE", timestamp=at)
    update = BidHistoryData(bid_id="b1", action="UPDATE", timestamp=at)

    assert history_key(place) == history_key(place) == "b1::PLACE"
    assert history_key(update) != history_key(update)
