"""
Scheduler port implementations.

ApschedulerJobScheduler keeps bid jobs in the in-process AsyncIOScheduler as
one-shot DateTrigger jobs. Jobs are lost on restart; the job id is derived
from the payload so re-scheduling the same phase replaces the old job.

ResonateJobScheduler starts a durable ``bid_job`` workflow per payload. The
workflow sleeps durably until the fire time and then runs the phase, so jobs
survive restarts. The promise id is the job id, which makes scheduling the
same phase twice a no-op on the Resonate side.
"""

import asyncio
import functools
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from clients.resonate import ResonateClient, ResonateClientError
from engine.errors import SchedulingError
from engine.ports import JobPayload
from engine.validation import as_utc
from utils import log

logger = log.get_logger(__name__)

JobFunc = Callable[[str, str], Awaitable[None]]

BID_JOB_WORKFLOW = "bid_job"


class ApschedulerJobScheduler:
    def __init__(self, scheduler: AsyncIOScheduler, job_func: JobFunc, misfire_grace_seconds: int = 30):
        self.scheduler = scheduler
        self.job_func = job_func
        self.misfire_grace_seconds = misfire_grace_seconds

    async def schedule_at(self, when: datetime, payload: JobPayload) -> str:
        job_id = payload.job_id()
        # A run date in the past counts as a misfire and would be dropped
        run_date = max(as_utc(when), datetime.now(timezone.utc))
        try:
            self.scheduler.add_job(
                self.job_func,
                trigger=DateTrigger(run_date=run_date),
                args=[payload.phase, payload.bid_id],
                id=job_id,
                name=f"{payload.phase} {payload.bid_id}",
                replace_existing=True,
                misfire_grace_time=self.misfire_grace_seconds,
                coalesce=True,
            )
        except Exception as e:
            raise SchedulingError(f"Could not schedule {job_id}: {e}") from e
        logger.info(f"Scheduled {job_id} at {run_date.isoformat()}")
        return job_id

    async def cancel(self, job_ref: str) -> None:
        try:
            self.scheduler.remove_job(job_ref)
        except JobLookupError:
            # Already fired or never existed
            logger.debug(f"Job {job_ref} not found; nothing to cancel")
            return
        logger.info(f"Cancelled job {job_ref}")


class ResonateJobScheduler:
    def __init__(self, client: ResonateClient):
        self.client = client

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        # The resonate-sdk is synchronous
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def schedule_at(self, when: datetime, payload: JobPayload) -> str:
        job_id = payload.job_id()
        try:
            await self._run(
                self.client.begin_rpc,
                job_id,
                BID_JOB_WORKFLOW,
                payload.model_dump(mode="json"),
                as_utc(when).isoformat(),
            )
        except ResonateClientError as e:
            raise SchedulingError(f"Could not schedule {job_id}: {e}") from e
        logger.info(f"Started durable {job_id} firing at {as_utc(when).isoformat()}")
        return job_id

    async def cancel(self, job_ref: str) -> None:
        try:
            await self._run(self.client.cancel_promise, job_ref)
        except ResonateClientError as e:
            raise SchedulingError(str(e)) from e
        logger.info(f"Cancelled durable job {job_ref}")
