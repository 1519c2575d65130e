from .errors import *  # noqa: F401,F403
from .lifecycle import BidLifecycleManager
from .monitor import MonitorRunSummary, PriceMonitor
from .orchestrator import ExecutionOrchestrator
from .ports import (
    AuctionOutcome,
    BidEvent,
    Credential,
    ItemState,
    JobPayload,
    PlaceBidResult,
    utc_now,
)
from .retention import RetentionJanitor
