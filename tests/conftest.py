import os
import pathlib
import sys
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import rentcycle`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from rentcycle.config import ConfigManager, get_config_manager  # noqa: E402
from rentcycle.events import EventBus  # noqa: E402
from rentcycle.feed import ChangeFeed  # noqa: E402
from rentcycle.inspections import InspectionDesk  # noqa: E402
from rentcycle.models import Actor, InspectionDirection, RentalRecord  # noqa: E402
from rentcycle.notices import NoticeDispatcher  # noqa: E402
from rentcycle.processor import TransitionProcessor, TransitionResult  # noqa: E402
from rentcycle.resilience import BackoffStrategy, CircuitBreaker, RetryPolicy  # noqa: E402
from rentcycle.states import Command, RentalStatus  # noqa: E402
from rentcycle.store import RentalStore  # noqa: E402

REQUESTER = "renter-1"
PROVIDER = "owner-1"
RESOLVER = "resolver-1"
SYSTEM = "system:scheduler"

START = date(2026, 6, 10)
END = date(2026, 6, 15)


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    run_slow = _env_flag('RENTCYCLE_RUN_SLOW')
    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set RENTCYCLE_RUN_SLOW=1 to enable'))


class FakeClock:
    """Controllable UTC clock shared by the processor, activator and notices."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class RecordingSink:
    """Notice sink that records deliveries and can be told to fail."""

    def __init__(self):
        self.delivered: List[Any] = []
        self.failures = 0
        self.fail_next = 0
        self.fail_always = False

    def deliver(self, notice: Any) -> None:
        if self.fail_always or self.fail_next > 0:
            self.fail_next = max(0, self.fail_next - 1)
            self.failures += 1
            raise ConnectionError("notification channel unavailable")
        self.delivered.append(notice)

    def kinds(self) -> List[str]:
        return [n.kind for n in self.delivered]


@pytest.fixture(autouse=True)
def config(monkeypatch):
    """Fresh configuration per test, with no RENTCYCLE_* overrides from the environment."""
    for name in list(os.environ):
        if name.startswith("RENTCYCLE_"):
            monkeypatch.delenv(name)
    ConfigManager.reset()
    mgr = get_config_manager()
    mgr.set("auth.resolver_ids", [RESOLVER])
    yield mgr.config
    ConfigManager.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path):
    s = RentalStore(tmp_path / "rentcycle.db")
    yield s
    s.close()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def feed(bus) -> ChangeFeed:
    f = ChangeFeed(bus)
    yield f
    f.close()


@pytest.fixture
def dispatcher(sink, clock, bus) -> NoticeDispatcher:
    return NoticeDispatcher(
        sink,
        retry_policy=RetryPolicy(
            max_attempts=3,
            base_delay_seconds=1.0,
            backoff_strategy=BackoffStrategy.EXPONENTIAL,
        ),
        breaker=CircuitBreaker("notices", failure_threshold=100, clock=clock),
        clock=clock,
        bus=bus,
    )


@pytest.fixture
def processor(store, feed, dispatcher, config, clock) -> TransitionProcessor:
    return TransitionProcessor(store, feed=feed, notices=dispatcher, config=config, clock=clock)


@pytest.fixture
def desk(store, clock) -> InspectionDesk:
    return InspectionDesk(store, clock=clock)


class Lifecycle:
    """Drives a rental along the happy path, one step per method."""

    def __init__(self, store: RentalStore, processor: TransitionProcessor,
                 desk: InspectionDesk, clock: FakeClock):
        self.store = store
        self.processor = processor
        self.desk = desk
        self.clock = clock

    def create(
        self,
        start: date = START,
        end: date = END,
        rental_amount: str = "100.00",
        deposit_amount: str = "50.00",
    ) -> RentalRecord:
        return self.store.create_rental(
            requester_id=REQUESTER,
            provider_id=PROVIDER,
            item_id="item-1",
            start_date=start,
            end_date=end,
            rental_amount=rental_amount,
            deposit_amount=deposit_amount,
            now=self.clock(),
        )

    def attempt(self, record_id: str, command: Command, actor: str,
                payload: Optional[Dict[str, Any]] = None) -> TransitionResult:
        return self.processor.attempt(record_id, command, Actor(actor), payload)

    def status(self, record_id: str) -> RentalStatus:
        return self.store.get_rental(record_id).status

    def pay(self, record: RentalRecord) -> TransitionResult:
        self.store.record_payment(record.id, record.total_held, at=self.clock())
        return self.attempt(record.id, Command.COMPLETE_PAYMENT, SYSTEM)

    def sign(self, record_id: str, direction: InspectionDirection, signer: str = REQUESTER) -> None:
        self.desk.begin(record_id, direction, signer, evidence_refs=[f"photo-{direction.value}-1"])
        self.desk.sign(record_id, direction, signer)

    def pickup(self, record: RentalRecord) -> TransitionResult:
        self.sign(record.id, InspectionDirection.PICKUP)
        return self.attempt(record.id, Command.COMPLETE_PICKUP_INSPECTION, REQUESTER)

    def start(self, record: RentalRecord) -> TransitionResult:
        self.clock.set(datetime.combine(record.start_date, datetime.min.time(), timezone.utc)
                       + timedelta(hours=8))
        return self.attempt(record.id, Command.START_RENTAL, SYSTEM)

    def give_back(self, record: RentalRecord) -> TransitionResult:
        self.attempt(record.id, Command.INITIATE_RETURN, REQUESTER)
        self.sign(record.id, InspectionDirection.RETURN)
        return self.attempt(record.id, Command.COMPLETE_RETURN_INSPECTION, REQUESTER)

    def to_status(self, status: RentalStatus, **create_kwargs: Any) -> RentalRecord:
        """Create a rental and walk it forward until it reaches ``status``."""
        record = self.create(**create_kwargs)
        steps = [
            (RentalStatus.AWAITING_PICKUP_INSPECTION, self.pay),
            (RentalStatus.AWAITING_START_DATE, self.pickup),
            (RentalStatus.ACTIVE, self.start),
            (RentalStatus.PENDING_REVIEW, self.give_back),
        ]
        for reached, step in steps:
            if self.status(record.id) == status:
                break
            step(record)
            assert self.status(record.id) == reached
        assert self.status(record.id) == status
        return self.store.get_rental(record.id)


@pytest.fixture
def lifecycle(store, processor, desk, clock) -> Lifecycle:
    return Lifecycle(store, processor, desk, clock)

