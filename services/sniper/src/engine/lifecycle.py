"""
User-driven bid mutations: create, update, cancel.

Every mutation is a conditional write that expects the bid to still be
pending. Once the placement phase has claimed a bid (``placement_started_at``
is set) update and cancel are refused: the claim is taken before any
marketplace call, so a bid is never both cancelled and placed.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from conf import EngineConf
from models.entities.couchbase.bid_history import BidHistoryData
from models.entities.couchbase.bids import Bid, BidData
from utils import log

from .audit import record_history
from .errors import (
    ActiveBidExistsError,
    BidNotFoundError,
    ConflictError,
    ConsistencyViolation,
    SchedulingError,
)
from .ports import BidStore, JobPayload, MarketplaceClient, Scheduler, utc_now
from .retry import Sleep, call_with_retry
from .validation import (
    CREATE_MIN_REMAINING,
    as_utc,
    next_status,
    validate_amount,
    validate_exceeds_price,
    validate_item_id,
    validate_time_remaining,
)

logger = log.get_logger(__name__)

PLACEMENT_IN_PROGRESS = "placement already in progress"


class BidLifecycleManager:
    def __init__(
        self,
        store: BidStore,
        marketplace: MarketplaceClient,
        scheduler: Scheduler,
        conf: EngineConf,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Sleep] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.scheduler = scheduler
        self.conf = conf
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_bid(self, user_id: str, item_id: str, max_bid_amount: int) -> Bid:
        """
        Register a maximum bid and schedule its placement.

        Raises:
            ValidationError: bad amount or item id, amount not above the
                current price, or 10 seconds or less before the auction ends
            ConflictError: the user already has an active bid on the item
            MarketplaceError: the item state could not be fetched
            SchedulingError: the placement job could not be scheduled (the
                bid is marked failed)
        """
        validate_item_id(item_id)
        validate_amount(max_bid_amount)

        for existing in await self.store.query(user_id, item_id):
            if existing.data.is_active:
                raise ConflictError(
                    f"User {user_id} already has active bid {existing.id} on item {item_id}"
                )

        state = await call_with_retry(
            lambda: self.marketplace.get_item_state(item_id),
            self.conf.lookup_retry,
            f"Item lookup for {item_id}",
            sleep=self._sleep,
        )
        now = self._clock()
        validate_time_remaining(state.end_time, now, CREATE_MIN_REMAINING)
        validate_exceeds_price(max_bid_amount, state.current_price)

        data = BidData(
            user_id=user_id,
            item_id=item_id,
            max_bid_amount=max_bid_amount,
            status=next_status("pending", "CREATE"),
            auction_end_time=as_utc(state.end_time),
            current_price=state.current_price,
        )
        try:
            bid = await self.store.create(data)
        except ActiveBidExistsError as e:
            raise ConflictError(str(e)) from e

        await record_history(
            self.store, bid.id, "CREATE", now,
            max_bid_amount=max_bid_amount,
            current_price=state.current_price,
            auction_end_time=data.auction_end_time.isoformat(),
        )
        logger.info(f"Bid {bid.id} created: user={user_id} item={item_id} max={max_bid_amount}")

        fire_at = data.auction_end_time - timedelta(seconds=self.conf.placement_lead_seconds)
        try:
            job_ref = await self.scheduler.schedule_at(fire_at, JobPayload(phase="placement", bid_id=bid.id))
        except SchedulingError as e:
            logger.error(f"Could not schedule placement for bid {bid.id}: {e}")
            await self._fail_unscheduled(bid.id, str(e))
            raise

        def _attach(d: BidData) -> Optional[str]:
            d.scheduled_job_ref = job_ref
            return None

        try:
            bid = await self.store.update(bid.id, _attach, expected_status="pending")
        except ConsistencyViolation as e:
            # Already cancelled or placed; the job re-reads the bid and no-ops
            logger.info(f"Bid {bid.id} moved on before its job ref was stored: {e}")
            bid = await self.get_bid(bid.id)
        return bid

    async def _fail_unscheduled(self, bid_id: str, reason: str) -> None:
        failed_at = self._clock()

        def _fail(d: BidData) -> Optional[str]:
            d.status = next_status(d.status, "FAIL")
            d.failure_reason = f"scheduling failed: {reason}"
            return None

        try:
            await self.store.update(bid_id, _fail, expected_status="pending")
        except ConsistencyViolation:
            return
        await record_history(self.store, bid_id, "FAIL", failed_at, reason=f"scheduling failed: {reason}")

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update_bid(self, bid_id: str, new_max_bid_amount: int) -> Bid:
        """Change the maximum of a pending bid and open a new alert epoch."""
        validate_amount(new_max_bid_amount)
        bid = await self.get_bid(bid_id)
        next_status(bid.data.status, "UPDATE")
        if bid.data.placement_started_at is not None:
            raise ConflictError(f"Bid {bid_id}: {PLACEMENT_IN_PROGRESS}")

        previous = {}

        def _update(d: BidData) -> Optional[str]:
            if d.placement_started_at is not None:
                return PLACEMENT_IN_PROGRESS
            previous["amount"] = d.max_bid_amount
            d.max_bid_amount = new_max_bid_amount
            d.last_alert_sent_at = None
            d.last_alert_bid_amount = None
            return None

        try:
            bid = await self.store.update(bid_id, _update, expected_status="pending")
        except ConsistencyViolation as e:
            raise ConflictError(f"Bid {bid_id} can no longer be updated: {e}") from e

        await record_history(
            self.store, bid_id, "UPDATE", self._clock(),
            old_max_bid_amount=previous["amount"],
            new_max_bid_amount=new_max_bid_amount,
        )
        logger.info(f"Bid {bid_id} updated: {previous['amount']} -> {new_max_bid_amount}")
        return bid

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_bid(self, bid_id: str) -> Bid:
        """Cancel a pending bid.

        Removing the scheduled job is best-effort. If the job fires anyway it
        finds the bid cancelled and does nothing.
        """
        bid = await self.get_bid(bid_id)
        next_status(bid.data.status, "CANCEL")
        if bid.data.placement_started_at is not None:
            raise ConflictError(f"Bid {bid_id}: {PLACEMENT_IN_PROGRESS}")

        if bid.data.scheduled_job_ref:
            try:
                await self.scheduler.cancel(bid.data.scheduled_job_ref)
            except SchedulingError as e:
                logger.warning(f"Could not cancel job {bid.data.scheduled_job_ref} for bid {bid_id}: {e}")

        def _cancel(d: BidData) -> Optional[str]:
            if d.placement_started_at is not None:
                return PLACEMENT_IN_PROGRESS
            d.status = next_status(d.status, "CANCEL")
            d.scheduled_job_ref = None
            return None

        try:
            bid = await self.store.update(bid_id, _cancel, expected_status="pending")
        except ConsistencyViolation as e:
            raise ConflictError(f"Bid {bid_id} can no longer be cancelled: {e}") from e

        await record_history(self.store, bid_id, "CANCEL", self._clock())
        logger.info(f"Bid {bid_id} cancelled")
        return bid

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_bid(self, bid_id: str) -> Bid:
        bid = await self.store.get(bid_id)
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid

    async def list_history(self, bid_id: str) -> List[BidHistoryData]:
        await self.get_bid(bid_id)
        return await self.store.list_history(bid_id)
