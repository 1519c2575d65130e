"""
Scheduled-job handler: the placement phase and the outcome phase.

Jobs are delivered at least once, so both phases start by re-reading the bid
and bail out unless it is in the status they act on. Every transition is a
conditional write against the status that was read; losing that race is a
no-op, not an error.

Placement is claimed (``placement_started_at``) with a conditional write
before the marketplace is contacted. A delivery that finds an existing claim
never places again: if the claim is older than one job execution ceiling the
earlier attempt died mid-flight and the operator is alerted, because whether
the marketplace accepted the bid is unknown.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from conf import EngineConf
from models.entities.couchbase.bids import Bid, BidData
from utils import log

from .audit import notify_safely, record_history
from .errors import (
    ConsistencyViolation,
    MarketplacePermanentError,
    MarketplaceTransientError,
    RetriesExhaustedError,
    SchedulingError,
    ValidationError,
)
from .ports import (
    AuctionOutcome,
    BidEvent,
    BidStore,
    Credential,
    CredentialProvider,
    ItemState,
    JobPayload,
    MarketplaceClient,
    Notifier,
    PlaceBidResult,
    Scheduler,
    utc_now,
)
from .retry import Sleep, call_with_retry
from .validation import (
    PLACEMENT_MIN_REMAINING,
    as_utc,
    next_status,
    validate_amount,
    validate_exceeds_price,
    validate_time_remaining,
)

logger = log.get_logger(__name__)

ALREADY_CLAIMED = "placement already claimed"


class ExecutionOrchestrator:
    def __init__(
        self,
        store: BidStore,
        marketplace: MarketplaceClient,
        credentials: CredentialProvider,
        scheduler: Scheduler,
        notifier: Notifier,
        conf: EngineConf,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Sleep] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.credentials = credentials
        self.scheduler = scheduler
        self.notifier = notifier
        self.conf = conf
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    async def handle(self, payload: JobPayload) -> None:
        """Entry point for the scheduler. Runs one phase under the execution ceiling."""
        runner = self.run_placement if payload.phase == "placement" else self.run_outcome
        logger.info(f"Running {payload.phase} phase for bid {payload.bid_id}")
        try:
            await asyncio.wait_for(
                runner(payload.bid_id), timeout=self.conf.job_execution_ceiling_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"{payload.phase} phase for bid {payload.bid_id} exceeded "
                f"{self.conf.job_execution_ceiling_seconds}s"
            )
            raise

    # ------------------------------------------------------------------
    # Placement phase
    # ------------------------------------------------------------------

    async def run_placement(self, bid_id: str) -> None:
        bid = await self.store.get(bid_id)
        if bid is None:
            logger.warning(f"Placement for unknown bid {bid_id}; nothing to do")
            return
        if bid.data.status != "pending":
            logger.info(f"Bid {bid_id} is {bid.data.status}; skipping placement")
            return
        if bid.data.placement_started_at is not None:
            await self._handle_existing_claim(bid)
            return

        bid = await self._claim(bid_id)
        if bid is None:
            return

        await self._align(bid.data)

        try:
            credential, state = await self._prepare(bid)
        except (ValidationError, MarketplacePermanentError) as e:
            await self._fail_placement(bid, str(e))
            return
        except Exception as e:
            # Nothing was sent to the marketplace yet, so failing is safe
            logger.exception(f"Unexpected error preparing placement of bid {bid_id}")
            await self._fail_placement(bid, f"Placement aborted before submission: {e!r}")
            return

        try:
            result = await self._submit(bid, credential)
        except MarketplacePermanentError as e:
            await self._fail_placement(bid, str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected error submitting bid {bid_id}")
            await self._alert_operator(
                bid,
                f"Submitting bid {bid_id} on item {bid.data.item_id} raised {e!r}. "
                f"Whether the marketplace accepted it is unknown; resolve manually.",
            )
            raise

        await self._mark_placed(bid, result.external_bid_id, state.current_price)

    async def _prepare(self, bid: Bid) -> Tuple[Credential, ItemState]:
        """Fetch the credential and fresh item state, then re-validate the bid."""
        credential = await call_with_retry(
            lambda: self.credentials.get_valid_credential(bid.data.user_id),
            self.conf.lookup_retry,
            f"Credential for user {bid.data.user_id}",
            sleep=self._sleep,
        )
        state = await call_with_retry(
            lambda: self.marketplace.get_item_state(bid.data.item_id),
            self.conf.lookup_retry,
            f"Item lookup for {bid.data.item_id}",
            sleep=self._sleep,
        )
        if as_utc(state.end_time) != as_utc(bid.data.auction_end_time):
            logger.warning(
                f"Item {bid.data.item_id} now ends at {state.end_time.isoformat()}, "
                f"bid {bid.id} was scheduled for {bid.data.auction_end_time.isoformat()}"
            )

        validate_amount(bid.data.max_bid_amount)
        validate_time_remaining(bid.data.auction_end_time, self._clock(), PLACEMENT_MIN_REMAINING)
        validate_exceeds_price(bid.data.max_bid_amount, state.current_price)
        return credential, state

    async def _handle_existing_claim(self, bid: Bid) -> None:
        claimed_at = as_utc(bid.data.placement_started_at)
        age = (self._clock() - claimed_at).total_seconds()
        if age < self.conf.job_execution_ceiling_seconds:
            logger.info(f"Bid {bid.id} placement already in flight ({age:.1f}s); skipping")
            return
        logger.error(f"Bid {bid.id} was claimed at {claimed_at.isoformat()} but never resolved")
        await self._alert_operator(
            bid,
            f"Placement of bid {bid.id} started at {claimed_at.isoformat()} and did not finish. "
            f"Check the marketplace for item {bid.data.item_id} and resolve manually.",
        )

    async def _claim(self, bid_id: str) -> Optional[Bid]:
        claimed_at = self._clock()

        def _take(d: BidData) -> Optional[str]:
            if d.placement_started_at is not None:
                return ALREADY_CLAIMED
            d.placement_started_at = claimed_at
            return None

        try:
            return await self.store.update(bid_id, _take, expected_status="pending")
        except ConsistencyViolation as e:
            logger.info(f"Lost placement claim for bid {bid_id}: {e}")
            return None

    async def _align(self, data: BidData) -> None:
        target = as_utc(data.auction_end_time) - timedelta(seconds=self.conf.placement_lead_seconds)
        delay = (target - self._clock()).total_seconds()
        if delay <= 0:
            return
        delay = min(delay, self.conf.placement_max_align_seconds)
        logger.debug(f"Fired early for item {data.item_id}; sleeping {delay:.3f}s")
        await self._sleep(delay)

    async def _submit(self, bid: Bid, credential: Credential) -> PlaceBidResult:
        async def _place():
            result = await self.marketplace.place_bid(bid.data.item_id, bid.data.max_bid_amount, credential)
            if not result.accepted:
                raise MarketplacePermanentError(
                    f"Marketplace rejected bid on {bid.data.item_id}: {result.message or 'no reason given'}"
                )
            return result

        return await call_with_retry(
            _place,
            self.conf.placement_retry,
            f"Placing bid {bid.id} on {bid.data.item_id}",
            sleep=self._sleep,
        )

    async def _mark_placed(self, bid: Bid, external_bid_id: Optional[str], price: int) -> None:
        placed_at = self._clock()

        def _place(d: BidData) -> Optional[str]:
            d.status = next_status(d.status, "PLACE")
            d.external_bid_id = external_bid_id
            d.placed_at = placed_at
            d.placed_amount = d.max_bid_amount
            d.current_price = price
            d.scheduled_job_ref = None
            return None

        try:
            bid = await self.store.update(bid.id, _place, expected_status="pending")
        except ConsistencyViolation as e:
            # Should not happen while the claim is held
            logger.error(f"Bid {bid.id} placed on the marketplace but could not be marked placed: {e}")
            await self._alert_operator(bid, f"Bid {bid.id} was placed but its record changed underneath: {e}")
            return

        await record_history(
            self.store, bid.id, "PLACE", placed_at,
            amount=bid.data.placed_amount,
            external_bid_id=external_bid_id,
            current_price=price,
        )
        logger.info(f"Bid {bid.id} placed on {bid.data.item_id} for {bid.data.placed_amount}")
        await self._schedule_outcome(bid)

    async def _fail_placement(self, bid: Bid, reason: str) -> None:
        failed_at = self._clock()

        def _fail(d: BidData) -> Optional[str]:
            d.status = next_status(d.status, "FAIL")
            d.failure_reason = reason
            d.scheduled_job_ref = None
            return None

        try:
            bid = await self.store.update(bid.id, _fail, expected_status="pending")
        except ConsistencyViolation as e:
            logger.info(f"Bid {bid.id} changed before it could be failed: {e}")
            return

        await record_history(self.store, bid.id, "FAIL", failed_at, reason=reason)
        logger.warning(f"Bid {bid.id} failed: {reason}")
        await notify_safely(
            self.notifier,
            bid.data.user_id,
            BidEvent(
                kind="failed",
                bid_id=bid.id,
                item_id=bid.data.item_id,
                user_id=bid.data.user_id,
                max_bid_amount=bid.data.max_bid_amount,
                message=reason,
                occurred_at=failed_at,
            ),
        )

    async def _schedule_outcome(self, bid: Bid) -> None:
        fire_at = as_utc(bid.data.auction_end_time) + timedelta(seconds=self.conf.outcome_check_delay_seconds)
        try:
            job_ref = await self.scheduler.schedule_at(fire_at, JobPayload(phase="outcome", bid_id=bid.id))
        except SchedulingError as e:
            logger.error(f"Could not schedule outcome check for bid {bid.id}: {e}")
            await self._record_unresolved(bid, f"outcome check not scheduled: {e}", attempts=0)
            return

        def _attach(d: BidData) -> Optional[str]:
            d.scheduled_job_ref = job_ref
            return None

        try:
            await self.store.update(bid.id, _attach, expected_status="placed")
        except ConsistencyViolation as e:
            logger.info(f"Bid {bid.id} resolved before its outcome job ref was stored: {e}")

    async def resume_jobs(self) -> int:
        """Re-schedule the next phase of every active bid.

        Used at startup with a scheduler that does not persist jobs. Job ids
        are derived from the bid, so re-scheduling an existing job replaces it.
        A fire time that passed while the worker was down runs now: a late
        placement then fails validation and a late outcome is still checked.
        """
        now = self._clock()
        resumed = 0
        for status, phase, offset in (
            ("pending", "placement", -self.conf.placement_lead_seconds),
            ("placed", "outcome", self.conf.outcome_check_delay_seconds),
        ):
            for bid in await self.store.list_by_status(status):
                fire_at = max(as_utc(bid.data.auction_end_time) + timedelta(seconds=offset), now)
                try:
                    job_ref = await self.scheduler.schedule_at(fire_at, JobPayload(phase=phase, bid_id=bid.id))
                except SchedulingError as e:
                    logger.error(f"Could not resume {phase} job for bid {bid.id}: {e}")
                    continue

                def _attach(d: BidData, ref: str = job_ref) -> Optional[str]:
                    d.scheduled_job_ref = ref
                    return None

                try:
                    await self.store.update(bid.id, _attach, expected_status=status)
                except ConsistencyViolation:
                    continue
                resumed += 1
        logger.info(f"Resumed {resumed} bid jobs")
        return resumed

    # ------------------------------------------------------------------
    # Outcome phase
    # ------------------------------------------------------------------

    async def run_outcome(self, bid_id: str) -> None:
        bid = await self.store.get(bid_id)
        if bid is None:
            logger.warning(f"Outcome check for unknown bid {bid_id}; nothing to do")
            return
        if bid.data.status != "placed":
            logger.info(f"Bid {bid_id} is {bid.data.status}; skipping outcome check")
            return

        try:
            credential = await call_with_retry(
                lambda: self.credentials.get_valid_credential(bid.data.user_id),
                self.conf.lookup_retry,
                f"Credential for user {bid.data.user_id}",
                sleep=self._sleep,
            )

            async def _final_outcome() -> AuctionOutcome:
                outcome = await self.marketplace.get_outcome(bid.data.item_id, credential)
                if not outcome.final:
                    raise MarketplaceTransientError(f"Auction {bid.data.item_id} not settled yet")
                return outcome

            outcome = await call_with_retry(
                _final_outcome,
                self.conf.outcome_retry,
                f"Outcome of {bid.data.item_id}",
                sleep=self._sleep,
            )
        except MarketplacePermanentError as e:
            attempts = e.attempts if isinstance(e, RetriesExhaustedError) else 1
            await self._record_unresolved(bid, str(e), attempts=attempts)
            return

        won = (
            outcome.won
            and outcome.winning_bidder_is_us
            and outcome.winning_price is not None
            and outcome.winning_price <= bid.data.max_bid_amount
        )
        await self._close(bid, outcome, won)

    async def _close(self, bid: Bid, outcome: AuctionOutcome, won: bool) -> None:
        action = "WIN" if won else "LOSE"
        closed_at = self._clock()

        def _resolve(d: BidData) -> Optional[str]:
            d.status = next_status(d.status, action)
            d.final_price = outcome.winning_price
            d.closed_at = closed_at
            d.outcome_error = None
            d.scheduled_job_ref = None
            return None

        try:
            bid = await self.store.update(bid.id, _resolve, expected_status="placed")
        except ConsistencyViolation as e:
            logger.info(f"Bid {bid.id} already resolved: {e}")
            return

        await record_history(
            self.store, bid.id, action, closed_at,
            final_price=outcome.winning_price,
            winning_bidder_is_us=outcome.winning_bidder_is_us,
        )
        logger.info(f"Bid {bid.id} {bid.data.status} (final price {outcome.winning_price})")
        await notify_safely(
            self.notifier,
            bid.data.user_id,
            BidEvent(
                kind="won" if won else "lost",
                bid_id=bid.id,
                item_id=bid.data.item_id,
                user_id=bid.data.user_id,
                max_bid_amount=bid.data.max_bid_amount,
                price=outcome.winning_price,
                occurred_at=closed_at,
            ),
        )

    async def _record_unresolved(self, bid: Bid, reason: str, attempts: int) -> None:
        """Leave the bid placed with a failure note and tell the operator."""

        def _note(d: BidData) -> Optional[str]:
            d.outcome_error = reason
            d.outcome_attempts += attempts
            return None

        try:
            bid = await self.store.update(bid.id, _note, expected_status="placed")
        except ConsistencyViolation as e:
            logger.info(f"Bid {bid.id} resolved while its outcome was failing: {e}")
            return

        logger.error(f"Outcome of bid {bid.id} unresolved: {reason}")
        await self._alert_operator(
            bid, f"Outcome of bid {bid.id} on item {bid.data.item_id} could not be determined: {reason}"
        )

    async def _alert_operator(self, bid: Bid, message: str) -> None:
        await notify_safely(
            self.notifier,
            self.conf.operator_notify_id,
            BidEvent(
                kind="operator_alert",
                bid_id=bid.id,
                item_id=bid.data.item_id,
                user_id=bid.data.user_id,
                max_bid_amount=bid.data.max_bid_amount,
                message=message,
                occurred_at=self._clock(),
            ),
        )
