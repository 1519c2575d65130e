from datetime import timedelta

import pytest

from engine.errors import (
    BidNotFoundError,
    ConflictError,
    MarketplaceError,
    MarketplaceTransientError,
    SchedulingError,
    ValidationError,
)

from conftest import T0


@pytest.mark.parametrize("amount", [99, 10_000_001])
async def test_create_rejects_amount_out_of_bounds(lifecycle, marketplace, amount):
    marketplace.add_item("cheap", 50, T0 + timedelta(hours=1))
    with pytest.raises(ValidationError):
        await lifecycle.create_bid("user-1", "cheap", amount)


@pytest.mark.parametrize("amount", [100, 10_000_000])
async def test_create_accepts_amount_bounds(lifecycle, marketplace, amount):
    marketplace.add_item("cheap", 50, T0 + timedelta(hours=1))
    bid = await lifecycle.create_bid("user-1", "cheap", amount)
    assert bid.data.status == "pending"
    assert bid.data.max_bid_amount == amount


async def test_create_rejects_non_integer_amount(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.create_bid("user-1", "item-1", 200.5)


async def test_create_rejects_bad_item_id(lifecycle, marketplace):
    with pytest.raises(ValidationError):
        await lifecycle.create_bid("user-1", "bad item/../id", 20000)
    assert marketplace.item_calls == []


async def test_create_schedules_placement_five_seconds_before_end(lifecycle, store, scheduler):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)

    assert bid.data.scheduled_job_ref == f"bid-job:placement:{bid.id}"
    when, payload = scheduler.jobs[bid.data.scheduled_job_ref]
    assert when == T0 + timedelta(seconds=3595)
    assert payload.phase == "placement"
    assert bid.data.auction_end_time == T0 + timedelta(seconds=3600)
    assert bid.data.current_price == 15000
    assert store.actions(bid.id) == ["CREATE"]


async def test_create_rejects_amount_not_above_price(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.create_bid("user-1", "item-1", 15000)


async def test_create_needs_more_than_ten_seconds(lifecycle, marketplace):
    marketplace.add_item("closing", 100, T0 + timedelta(seconds=10))
    with pytest.raises(ValidationError):
        await lifecycle.create_bid("user-1", "closing", 20000)

    marketplace.add_item("almost", 100, T0 + timedelta(seconds=11))
    bid = await lifecycle.create_bid("user-1", "almost", 20000)
    assert bid.data.status == "pending"


async def test_create_rejects_ended_auction(lifecycle, marketplace):
    marketplace.add_item("over", 100, T0 - timedelta(seconds=1))
    with pytest.raises(ValidationError, match="already ended"):
        await lifecycle.create_bid("user-1", "over", 20000)


async def test_duplicate_active_bid_conflicts(lifecycle):
    await lifecycle.create_bid("user-1", "item-1", 20000)
    with pytest.raises(ConflictError):
        await lifecycle.create_bid("user-1", "item-1", 25000)

    # Another user may bid on the same item
    other = await lifecycle.create_bid("user-2", "item-1", 25000)
    assert other.data.status == "pending"


async def test_new_bid_allowed_after_cancel(lifecycle):
    first = await lifecycle.create_bid("user-1", "item-1", 20000)
    await lifecycle.cancel_bid(first.id)

    second = await lifecycle.create_bid("user-1", "item-1", 21000)
    assert second.id != first.id


async def test_create_retries_transient_lookup_failure(lifecycle, marketplace, sleep):
    marketplace.item_errors["item-1"] = [MarketplaceTransientError("503")]
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)
    assert bid.data.status == "pending"
    assert len(sleep.calls) == 1


async def test_create_surfaces_lookup_failure(lifecycle, marketplace, store):
    marketplace.item_errors["item-1"] = [MarketplaceTransientError("503")] * 2
    with pytest.raises(MarketplaceError):
        await lifecycle.create_bid("user-1", "item-1", 20000)
    assert store.bids == {}


async def test_scheduling_failure_fails_the_bid(lifecycle, store, scheduler):
    scheduler.fail_schedule = True
    with pytest.raises(SchedulingError):
        await lifecycle.create_bid("user-1", "item-1", 20000)

    (bid,) = store.bids.values()
    assert bid.data.status == "failed"
    assert "scheduling failed" in bid.data.failure_reason
    assert store.actions(bid.id) == ["CREATE", "FAIL"]


async def test_update_changes_amount_and_resets_alert_epoch(lifecycle, store):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)

    def _alerted(d):
        d.last_alert_sent_at = T0
        d.last_alert_bid_amount = 20000

    await store.update(bid.id, _alerted)

    updated = await lifecycle.update_bid(bid.id, 22000)

    assert updated.data.max_bid_amount == 22000
    assert updated.data.last_alert_sent_at is None
    assert updated.data.last_alert_bid_amount is None
    assert updated.data.scheduled_job_ref == bid.data.scheduled_job_ref
    history = await lifecycle.list_history(bid.id)
    assert [e.action for e in history] == ["CREATE", "UPDATE"]
    assert history[-1].details == {"old_max_bid_amount": 20000, "new_max_bid_amount": 22000}


async def test_update_validates_bounds(lifecycle):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)
    with pytest.raises(ValidationError):
        await lifecycle.update_bid(bid.id, 99)


async def test_update_and_cancel_rejected_once_not_pending(lifecycle):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)
    await lifecycle.cancel_bid(bid.id)

    with pytest.raises(ConflictError):
        await lifecycle.update_bid(bid.id, 22000)
    with pytest.raises(ConflictError):
        await lifecycle.cancel_bid(bid.id)


async def test_cancel_removes_job_and_records_history(lifecycle, store, scheduler):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)
    job_ref = bid.data.scheduled_job_ref

    cancelled = await lifecycle.cancel_bid(bid.id)

    assert cancelled.data.status == "cancelled"
    assert cancelled.data.scheduled_job_ref is None
    assert scheduler.cancelled == [job_ref]
    assert store.actions(bid.id) == ["CREATE", "CANCEL"]


async def test_cancel_succeeds_when_scheduler_cancel_fails(lifecycle, scheduler):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)

    async def _broken(job_ref):
        raise SchedulingError("gone")

    scheduler.cancel = _broken
    cancelled = await lifecycle.cancel_bid(bid.id)
    assert cancelled.data.status == "cancelled"


async def test_claimed_bid_cannot_be_cancelled_or_updated(lifecycle, store):
    bid = await lifecycle.create_bid("user-1", "item-1", 20000)

    def _claim(d):
        d.placement_started_at = T0

    await store.update(bid.id, _claim, expected_status="pending")

    with pytest.raises(ConflictError):
        await lifecycle.cancel_bid(bid.id)
    with pytest.raises(ConflictError):
        await lifecycle.update_bid(bid.id, 22000)
    assert (await lifecycle.get_bid(bid.id)).data.status == "pending"


async def test_unknown_bid(lifecycle):
    with pytest.raises(BidNotFoundError):
        await lifecycle.get_bid("nope")
    with pytest.raises(BidNotFoundError):
        await lifecycle.cancel_bid("nope")
