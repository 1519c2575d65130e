"""Bridges scheduler callbacks to the ExecutionOrchestrator."""

from typing import Optional

from engine import ExecutionOrchestrator, JobPayload
from utils import log

logger = log.get_logger(__name__)

_orchestrator: Optional[ExecutionOrchestrator] = None


def set_orchestrator(orchestrator: ExecutionOrchestrator) -> None:
    global _orchestrator
    _orchestrator = orchestrator


async def dispatch_bid_job(phase: str, bid_id: str) -> None:
    """APScheduler job function for one phase of one bid."""
    if _orchestrator is None:
        raise RuntimeError("Bid job fired before the orchestrator was set")
    try:
        await _orchestrator.handle(JobPayload(phase=phase, bid_id=bid_id))
    except Exception as e:
        logger.error(f"{phase} job for bid {bid_id} failed: {e}", exc_info=True)
