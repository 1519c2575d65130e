from clients import http
from conf import NotifierConf
from engine.ports import BidEvent
from utils import log

logger = log.get_logger(__name__)


class WebhookNotifier:
    """POSTs each event as JSON to a webhook. Errors propagate to the caller."""

    def __init__(self, conf: NotifierConf):
        self.conf = conf

    async def notify(self, user_id: str, event: BidEvent) -> None:
        await http.request(
            "POST",
            self.conf.webhook_url,
            json_data={"user_id": user_id, "event": event.model_dump(mode="json")},
            timeout=self.conf.timeout_seconds,
        )
        logger.debug(f"Delivered {event.kind} event for bid {event.bid_id} to {user_id}")


class LogNotifier:
    """Writes events to the log. Used when no webhook is configured."""

    async def notify(self, user_id: str, event: BidEvent) -> None:
        logger.info(
            f"[notify {user_id}] {event.kind} bid={event.bid_id} item={event.item_id} "
            f"price={event.price} max={event.max_bid_amount} {event.message or ''}".rstrip()
        )


def build_notifier(conf: NotifierConf):
    if conf.webhook_url:
        return WebhookNotifier(conf)
    logger.warning("NOTIFIER_WEBHOOK_URL not set; notifications go to the log only")
    return LogNotifier()
