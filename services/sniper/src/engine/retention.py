from datetime import datetime, timedelta
from typing import Callable

from utils import log

from .ports import BidStore, utc_now

logger = log.get_logger(__name__)


class RetentionJanitor:
    """Purges terminal bids (and their history) once they are past retention."""

    def __init__(self, store: BidStore, retention_days: int, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.retention = timedelta(days=retention_days)
        self._clock = clock

    async def run_once(self) -> int:
        cutoff = self._clock() - self.retention
        purged = await self.store.purge_terminal(cutoff)
        if purged:
            logger.info(f"Purged {purged} terminal bids last updated before {cutoff.isoformat()}")
        return purged
