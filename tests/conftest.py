import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from conf import EngineConf, RetryConf
from engine import (
    AuctionOutcome,
    BidLifecycleManager,
    Credential,
    ExecutionOrchestrator,
    ItemState,
    JobPayload,
    PlaceBidResult,
    PriceMonitor,
)
from engine.errors import ActiveBidExistsError, ConsistencyViolation, SchedulingError
from models.entities.couchbase.bid_history import BidHistoryData
from models.entities.couchbase.bids import Bid, BidData
from models.operations.bids import BidMutator

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def set(self, when: datetime) -> None:
        self.now = when


class FakeSleep:
    """Records sleeps and moves the clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class InMemoryBidStore:
    """BidStore with the same conditional-write contract as the Couchbase one."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.bids: Dict[str, Bid] = {}
        self.history: Dict[str, List[BidHistoryData]] = {}
        self._ids = itertools.count(1)
        self._cas = itertools.count(1)

    def _copy(self, bid: Bid) -> Bid:
        return bid.model_copy(deep=True)

    async def get(self, bid_id: str) -> Optional[Bid]:
        bid = self.bids.get(bid_id)
        return self._copy(bid) if bid else None

    async def create(self, data: BidData) -> Bid:
        for bid in self.bids.values():
            if bid.data.user_id == data.user_id and bid.data.item_id == data.item_id and bid.data.is_active:
                raise ActiveBidExistsError(data.user_id, data.item_id, bid.id)
        bid_id = f"bid-{next(self._ids)}"
        data = data.model_copy(deep=True)
        data.created_at = data.updated_at = self.clock()
        self.bids[bid_id] = Bid(id=bid_id, data=data, cas=next(self._cas))
        return self._copy(self.bids[bid_id])

    async def update(self, bid_id: str, mutator: BidMutator, expected_status: Optional[str] = None) -> Bid:
        stored = self.bids.get(bid_id)
        if stored is None:
            raise ConsistencyViolation(f"Bid {bid_id} not found", bid_id)
        current = stored.data.status
        if expected_status is not None and current != expected_status:
            raise ConsistencyViolation(f"Bid {bid_id} is {current}, expected {expected_status}", bid_id, current)
        working = self._copy(stored)
        error = mutator(working.data)
        if error is not None:
            raise ConsistencyViolation(error, bid_id, current)
        working.data.updated_at = self.clock()
        working.cas = next(self._cas)
        self.bids[bid_id] = working
        return self._copy(working)

    async def query(self, user_id: str, item_id: str) -> List[Bid]:
        return [
            self._copy(b) for b in self.bids.values()
            if b.data.user_id == user_id and b.data.item_id == item_id
        ]

    async def list_by_status(self, status: str) -> List[Bid]:
        return [self._copy(b) for b in self.bids.values() if b.data.status == status]

    async def append_history(self, entry: BidHistoryData) -> None:
        self.history.setdefault(entry.bid_id, []).append(entry.model_copy(deep=True))

    async def list_history(self, bid_id: str) -> List[BidHistoryData]:
        return list(self.history.get(bid_id, []))

    async def purge_terminal(self, older_than: datetime) -> int:
        doomed = [
            bid_id for bid_id, b in self.bids.items()
            if b.data.is_terminal and b.data.updated_at < older_than
        ]
        for bid_id in doomed:
            self.history.pop(bid_id, None)
            del self.bids[bid_id]
        return len(doomed)

    def actions(self, bid_id: str) -> List[str]:
        return [e.action for e in self.history.get(bid_id, [])]


class FakeMarketplace:
    def __init__(self):
        self.items: Dict[str, ItemState] = {}
        self.outcomes: Dict[str, AuctionOutcome] = {}
        # Exceptions raised (in order) before calls start succeeding
        self.item_errors: Dict[str, List[Exception]] = {}
        self.place_errors: List[Exception] = []
        self.outcome_errors: List[Exception] = []
        self.place_response = PlaceBidResult(external_bid_id="ext-1", accepted=True)
        self.item_calls: List[str] = []
        self.place_calls: List[Tuple[str, int, str]] = []
        self.outcome_calls: List[str] = []

    def add_item(self, item_id: str, price: int, end_time: datetime) -> None:
        self.items[item_id] = ItemState(item_id=item_id, current_price=price, end_time=end_time)

    def set_price(self, item_id: str, price: int) -> None:
        self.items[item_id] = self.items[item_id].model_copy(update={"current_price": price})

    async def get_item_state(self, item_id: str) -> ItemState:
        self.item_calls.append(item_id)
        errors = self.item_errors.get(item_id)
        if errors:
            raise errors.pop(0)
        return self.items[item_id]

    async def place_bid(self, item_id: str, amount: int, credential: Credential) -> PlaceBidResult:
        self.place_calls.append((item_id, amount, credential.access_token))
        await asyncio.sleep(0)
        if self.place_errors:
            raise self.place_errors.pop(0)
        return self.place_response

    async def get_outcome(self, item_id: str, credential: Credential) -> AuctionOutcome:
        self.outcome_calls.append(item_id)
        if self.outcome_errors:
            raise self.outcome_errors.pop(0)
        return self.outcomes[item_id]


class FakeCredentials:
    def __init__(self):
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def get_valid_credential(self, user_id: str) -> Credential:
        self.calls.append(user_id)
        if self.error:
            raise self.error
        return Credential(user_id=user_id, access_token=f"token-{user_id}")


class FakeScheduler:
    def __init__(self):
        self.jobs: Dict[str, Tuple[datetime, JobPayload]] = {}
        self.cancelled: List[str] = []
        self.fail_schedule = False

    async def schedule_at(self, when: datetime, payload: JobPayload) -> str:
        if self.fail_schedule:
            raise SchedulingError("scheduler unavailable")
        job_id = payload.job_id()
        self.jobs[job_id] = (when, payload)
        return job_id

    async def cancel(self, job_ref: str) -> None:
        self.cancelled.append(job_ref)
        self.jobs.pop(job_ref, None)


class RecordingNotifier:
    def __init__(self):
        self.events = []
        self.fail = False

    async def notify(self, user_id, event) -> None:
        if self.fail:
            raise RuntimeError("webhook down")
        self.events.append((user_id, event))

    def kinds(self, kind: str):
        return [e for _, e in self.events if e.kind == kind]


def retry_conf(max_attempts: int) -> RetryConf:
    return RetryConf(max_attempts=max_attempts, base_delay_seconds=0.1, max_delay_seconds=1.0, timeout_seconds=1.0)


@pytest.fixture
def engine_conf() -> EngineConf:
    return EngineConf(
        placement_lead_seconds=5,
        placement_max_align_seconds=10,
        outcome_check_delay_seconds=60,
        job_execution_ceiling_seconds=60,
        operator_notify_id="operator",
        placement_retry=retry_conf(3),
        outcome_retry=retry_conf(3),
        lookup_retry=retry_conf(2),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def store(clock) -> InMemoryBidStore:
    return InMemoryBidStore(clock)


@pytest.fixture
def marketplace() -> FakeMarketplace:
    market = FakeMarketplace()
    market.add_item("item-1", 15000, T0 + timedelta(seconds=3600))
    return market


@pytest.fixture
def credentials() -> FakeCredentials:
    return FakeCredentials()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(store, marketplace, scheduler, engine_conf, clock, sleep) -> BidLifecycleManager:
    return BidLifecycleManager(store, marketplace, scheduler, engine_conf, clock=clock, sleep=sleep)


@pytest.fixture
def orchestrator(store, marketplace, credentials, scheduler, notifier, engine_conf, clock, sleep) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        store, marketplace, credentials, scheduler, notifier, engine_conf, clock=clock, sleep=sleep
    )


@pytest.fixture
def monitor(store, marketplace, notifier, engine_conf, clock, sleep) -> PriceMonitor:
    return PriceMonitor(store, marketplace, notifier, engine_conf, clock=clock, sleep=sleep)
