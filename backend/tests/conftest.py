"""
Shared fixtures: an in-memory reminder engine wired to a scripted gateway
transport and a controllable clock.  No PostgreSQL or Redis needed.
"""

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone

import pytest
from redis.exceptions import LockNotOwnedError

from prima.config import Settings
from prima.models import Patient, Reminder, ReminderStatus, ConfirmationStatus, VerificationStatus
from prima.services.engine import ReminderEngine
from prima.services.gateway import GatewayResponse

WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTransport:
    """Gateway transport that records sends and raises scripted errors."""

    name = "fake"

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.errors: list[Exception] = []
        self.calls = 0
        self.delay = 0.0
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def aclose(self) -> None:
        self.closed = True

    async def send(self, to: str, body: str) -> GatewayResponse:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((to, body))
        message_id = f"wamid-{len(self.sent)}"
        return GatewayResponse(message_id=message_id, raw={"status": True, "id": [message_id]})

    @property
    def last_body(self) -> str:
        return self.sent[-1][1]


class FakeRedisLock:
    """Expiring lock with the redis-py asyncio ``Lock`` call surface."""

    def __init__(self, redis, name, timeout, blocking_timeout):
        self.redis = redis
        self.name = name
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.token = uuid.uuid4().hex

    def _owned(self, now):
        holder = self.redis.held.get(self.name)
        return holder is not None and holder[0] == self.token and holder[1] > now

    async def acquire(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.blocking_timeout
        while True:
            holder = self.redis.held.get(self.name)
            if holder is None or holder[1] <= loop.time():
                self.redis.held[self.name] = (self.token, loop.time() + self.timeout)
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.01)

    async def extend(self, additional_time, replace_ttl=False) -> bool:
        now = asyncio.get_running_loop().time()
        if not self._owned(now):
            raise LockNotOwnedError("lock expired")
        self.redis.held[self.name] = (self.token, now + additional_time)
        self.redis.extensions += 1
        return True

    async def release(self) -> None:
        if not self._owned(asyncio.get_running_loop().time()):
            raise LockNotOwnedError("lock expired")
        del self.redis.held[self.name]


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for ``PatientLocks``."""

    def __init__(self):
        self.held: dict[str, tuple[str, float]] = {}
        self.extensions = 0

    def lock(self, name, timeout=None, blocking_timeout=None):
        return FakeRedisLock(self, name, timeout, blocking_timeout)


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def settings():
    return Settings(
        USE_REDIS=False,
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        ALLOW_UNSIGNED_WEBHOOKS=False,
        FONNTE_TOKEN="test-token",
        GATEWAY_MAX_ATTEMPTS=3,
        CIRCUIT_FAILURE_THRESHOLD=5,
    )


@pytest.fixture
def clock():
    # 01:00 UTC == 08:00 Asia/Jakarta
    return FakeClock(datetime(2024, 5, 6, 1, 0, tzinfo=timezone.utc))


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def escalations():
    return []


@pytest.fixture
def engine(settings, transport, clock, escalations):
    async def sink(event, payload):
        escalations.append((event, payload))

    return ReminderEngine.in_memory(settings, transport=transport, escalate=sink, clock=clock, sleep=_no_sleep)


def make_patient(**overrides) -> Patient:
    fields = dict(
        id=uuid.uuid4(),
        phone="6281234567890",
        name="Budi",
        verification_status=VerificationStatus.VERIFIED,
        verification_response_at=None,
        unsubscribed_at=None,
        assigned_volunteer_id=None,
        is_active=True,
        deleted_at=None,
    )
    fields.update(overrides)
    return Patient(**fields)


def make_reminder(patient: Patient, **overrides) -> Reminder:
    fields = dict(
        id=uuid.uuid4(),
        patient_id=patient.id,
        scheduled_time="08:00",
        start_date=date(2024, 5, 1),
        end_date=None,
        message="Minum obat tekanan darah",
        status=ReminderStatus.PENDING,
        sent_at=None,
        gateway_message_id=None,
        confirmation_status=ConfirmationStatus.PENDING,
        confirmation_response=None,
        confirmation_response_at=None,
        is_active=True,
        deleted_at=None,
    )
    fields.update(overrides)
    return Reminder(**fields)


@pytest.fixture
def patient(engine):
    p = make_patient()
    engine.patients.patients[p.id] = p
    return p


@pytest.fixture
def reminder(engine, patient):
    r = make_reminder(patient)
    engine.reminders.reminders[r.id] = r
    return r
