import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import conf
from utils import log

from clients.couchbase import check_connection
from clients.resonate import ResonateClient

from adapters.credentials import TokenStoreCredentialProvider
from adapters.marketplace import HttpMarketplaceClient
from adapters.notifier import build_notifier
from adapters.scheduler import ApschedulerJobScheduler, ResonateJobScheduler
from adapters.store import CouchbaseBidStore
from engine import (
    BidLifecycleManager,
    ExecutionOrchestrator,
    PriceMonitor,
    RetentionJanitor,
)
from jobs.dispatch import dispatch_bid_job, set_orchestrator
from jobs.scheduler import create_scheduler, init_scheduler, shutdown_scheduler
from jobs.workflows import register_workflows

log.init(conf.get_log_level(), conf.get_environment())
logger = log.get_logger(__name__)


@dataclass
class Engine:
    lifecycle: BidLifecycleManager
    orchestrator: ExecutionOrchestrator
    monitor: PriceMonitor
    janitor: RetentionJanitor
    resonate: Optional[ResonateClient] = None


def build_engine() -> Engine:
    """Wire the adapters into the engine components for the configured backend."""
    engine_conf = conf.get_engine_conf()
    monitor_conf = conf.get_monitor_conf()
    scheduler_conf = conf.get_scheduler_conf()

    store = CouchbaseBidStore()
    marketplace = HttpMarketplaceClient(conf.get_marketplace_conf())
    credentials = TokenStoreCredentialProvider(conf.get_token_store_conf())
    notifier = build_notifier(conf.get_notifier_conf())

    resonate = None
    if scheduler_conf.backend == "resonate":
        resonate = ResonateClient(host=scheduler_conf.resonate_host, group=scheduler_conf.resonate_group)
        bid_scheduler = ResonateJobScheduler(resonate)
    else:
        bid_scheduler = ApschedulerJobScheduler(
            create_scheduler(), dispatch_bid_job, scheduler_conf.misfire_grace_seconds
        )
    logger.info(f"Bid jobs run on the {scheduler_conf.backend} backend")

    orchestrator = ExecutionOrchestrator(
        store, marketplace, credentials, bid_scheduler, notifier, engine_conf
    )
    return Engine(
        lifecycle=BidLifecycleManager(store, marketplace, bid_scheduler, engine_conf),
        orchestrator=orchestrator,
        monitor=PriceMonitor(store, marketplace, notifier, engine_conf),
        janitor=RetentionJanitor(store, monitor_conf.retention_days),
        resonate=resonate,
    )


async def run() -> None:
    if not conf.validate():
        raise ValueError("Invalid configuration.")

    logger.info("Verifying Couchbase connection...")
    await check_connection()
    logger.info("Couchbase connection verified.")

    engine = build_engine()
    set_orchestrator(engine.orchestrator)
    init_scheduler(engine.monitor, engine.janitor, conf.get_monitor_conf())

    if engine.resonate is not None:
        register_workflows(engine.resonate, engine.orchestrator, asyncio.get_running_loop())
        engine.resonate.start()
        logger.info("Resonate worker started")
    else:
        # In-process jobs do not survive a restart
        await engine.orchestrator.resume_jobs()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Bid sniper worker running")
    await stop.wait()

    logger.info("Shutting down...")
    shutdown_scheduler()


if __name__ == "__main__":
    asyncio.run(run())
