"""
Durable bid jobs on Resonate.

``bid_job`` sleeps until the fire time with a durable sleep, then runs the
phase as a local function call. The phase itself is a coroutine on the
service's event loop; the Resonate worker thread hands it over with
``run_coroutine_threadsafe`` and waits for it. A failure propagates so
Resonate retries the call, which the phases tolerate.
"""

import asyncio
from datetime import datetime

from clients.resonate import Context, ResonateClient
from engine import ExecutionOrchestrator, JobPayload, utc_now
from engine.validation import as_utc
from utils import log

logger = log.get_logger(__name__)


def run_bid_job(ctx: Context, payload: dict) -> None:
    orchestrator: ExecutionOrchestrator = ctx.get_dependency("orchestrator")
    loop: asyncio.AbstractEventLoop = ctx.get_dependency("event_loop")
    job = JobPayload.model_validate(payload)
    future = asyncio.run_coroutine_threadsafe(orchestrator.handle(job), loop)
    future.result()


def bid_job(ctx: Context, payload: dict, fire_at: str):
    delay = (as_utc(datetime.fromisoformat(fire_at)) - utc_now()).total_seconds()
    if delay > 0:
        yield ctx.sleep(delay)
    yield ctx.lfc(run_bid_job, payload)


def register_workflows(
    client: ResonateClient,
    orchestrator: ExecutionOrchestrator,
    loop: asyncio.AbstractEventLoop,
) -> None:
    client.register(bid_job)
    client.set_dependency("orchestrator", orchestrator)
    client.set_dependency("event_loop", loop)
    logger.info("Registered durable bid_job workflow")
