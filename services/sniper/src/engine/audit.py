from datetime import datetime
from typing import Any

from models.entities.couchbase.bid_history import BidHistoryData
from utils import log

from .ports import BidEvent, BidStore, Notifier

logger = log.get_logger(__name__)


async def record_history(store: BidStore, bid_id: str, action: str, at: datetime, **details: Any) -> None:
    await store.append_history(
        BidHistoryData(bid_id=bid_id, action=action, timestamp=at, details=details)
    )


async def notify_safely(notifier: Notifier, user_id: str, event: BidEvent) -> bool:
    """Deliver *event*; a delivery failure is logged and never propagates."""
    try:
        await notifier.notify(user_id, event)
        return True
    except Exception as e:
        logger.error(
            f"Failed to deliver {event.kind} event for bid {event.bid_id} to {user_id}: {e}",
            exc_info=True,
        )
        return False
