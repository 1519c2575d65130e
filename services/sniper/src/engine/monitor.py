"""
Periodic price refresh for pending bids, with one price-exceeded alert per
alert epoch. An epoch is the lifetime of one ``max_bid_amount``; updating the
bid clears the alert fields and opens a new one.
"""

import asyncio
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from conf import EngineConf
from models.entities.couchbase.bids import Bid, BidData
from utils import log

from .audit import notify_safely
from .errors import ConsistencyViolation, MarketplaceError
from .ports import BidEvent, BidStore, MarketplaceClient, Notifier, utc_now
from .retry import Sleep, call_with_retry

logger = log.get_logger(__name__)


class MonitorRunSummary(BaseModel):
    checked: int = 0
    updated: int = 0
    alerts_sent: int = 0
    errors: int = 0


def needs_alert(data: BidData, price: int) -> bool:
    return price > data.max_bid_amount and data.last_alert_bid_amount != data.max_bid_amount


class PriceMonitor:
    def __init__(
        self,
        store: BidStore,
        marketplace: MarketplaceClient,
        notifier: Notifier,
        conf: EngineConf,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Sleep] = None,
    ):
        self.store = store
        self.marketplace = marketplace
        self.notifier = notifier
        self.conf = conf
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

    async def run_once(self) -> MonitorRunSummary:
        summary = MonitorRunSummary()
        bids = await self.store.list_by_status("pending")
        prices: Dict[str, Optional[int]] = {}

        for bid in bids:
            summary.checked += 1
            item_id = bid.data.item_id
            if item_id not in prices:
                prices[item_id] = await self._fetch_price(item_id)
            price = prices[item_id]
            if price is None:
                summary.errors += 1
                continue

            try:
                updated, alerted = await self._apply_price(bid, price)
            except Exception as e:
                logger.error(f"Price refresh failed for bid {bid.id}: {e}", exc_info=True)
                summary.errors += 1
                continue
            summary.updated += int(updated)
            summary.alerts_sent += int(alerted)

        logger.info(
            f"Price monitor run: checked={summary.checked} updated={summary.updated} "
            f"alerts={summary.alerts_sent} errors={summary.errors}"
        )
        return summary

    async def _fetch_price(self, item_id: str) -> Optional[int]:
        try:
            state = await call_with_retry(
                lambda: self.marketplace.get_item_state(item_id),
                self.conf.lookup_retry,
                f"Price check for {item_id}",
                sleep=self._sleep,
            )
        except MarketplaceError as e:
            logger.warning(f"Skipping item {item_id} this run: {e}")
            return None
        return state.current_price

    async def _apply_price(self, bid: Bid, price: int) -> Tuple[bool, bool]:
        if bid.data.current_price == price and not needs_alert(bid.data, price):
            return False, False

        now = self._clock()
        alert: Dict[str, int] = {}

        def _refresh(d: BidData) -> Optional[str]:
            alert.clear()
            d.current_price = price
            if needs_alert(d, price):
                d.last_alert_sent_at = now
                d.last_alert_bid_amount = d.max_bid_amount
                alert["max_bid_amount"] = d.max_bid_amount
            return None

        try:
            bid = await self.store.update(bid.id, _refresh, expected_status="pending")
        except ConsistencyViolation as e:
            logger.info(f"Bid {bid.id} left pending during price refresh: {e}")
            return False, False

        if not alert:
            return True, False

        delivered = await notify_safely(
            self.notifier,
            bid.data.user_id,
            BidEvent(
                kind="price_exceeded",
                bid_id=bid.id,
                item_id=bid.data.item_id,
                user_id=bid.data.user_id,
                max_bid_amount=alert["max_bid_amount"],
                price=price,
                occurred_at=now,
            ),
        )
        return True, delivered
