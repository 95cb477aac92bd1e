"""Root test configuration for StreamGuard.

Every test gets a pinned ManualClock, deterministic key material and
in-memory stores, so time windows, key ids and partitions are reproducible.
Sleeps requested by retry loops and rule delays are recorded instead of
awaited.
"""

from __future__ import annotations

import hashlib
from collections.abc import AsyncIterator
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from streamguard.audit.trail import AuditTrail
from streamguard.config import Config
from streamguard.services import SecurityServices, build_services
from streamguard.stores.memory import MemoryCounterStore, MemoryDocumentStore
from streamguard.utils.clock import ManualClock

# A Saturday afternoon, mid-month, so month partitions are not near a boundary.
START = datetime(2026, 10, 17, 14, 30, tzinfo=timezone.utc)


class CountingRandomSource:
    """Deterministic, never-repeating key material."""

    def __init__(self) -> None:
        self.calls = 0

    def token_bytes(self, nbytes: int) -> bytes:
        self.calls += 1
        seed = hashlib.sha256(f"streamguard-test-{self.calls}".encode()).digest()
        return (seed * (nbytes // len(seed) + 1))[:nbytes]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def random_source() -> CountingRandomSource:
    return CountingRandomSource()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def document_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def counter_store(clock: ManualClock) -> MemoryCounterStore:
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def audit(document_store: MemoryDocumentStore, clock: ManualClock, sleep: RecordingSleep) -> AuditTrail:
    return AuditTrail(document_store, clock=clock, sleep=sleep)


@pytest.fixture
def config() -> Config:
    cfg = Config.defaults()
    cfg.keys.encryption_key = Fernet.generate_key().decode()
    cfg.object_storage.signing_secret = "test-signing-secret"
    return cfg


@pytest.fixture
async def services(
    config: Config,
    clock: ManualClock,
    random_source: CountingRandomSource,
    document_store: MemoryDocumentStore,
    counter_store: MemoryCounterStore,
    sleep: RecordingSleep,
) -> AsyncIterator[SecurityServices]:
    built = await build_services(
        config,
        clock=clock,
        random_source=random_source,
        document_store=document_store,
        counter_store=counter_store,
        sleep=sleep,
    )
    yield built
    await built.close()


@pytest.fixture(autouse=True)
def reset_rate_limiter() -> None:
    """Reset the slowapi in-memory storage between tests.

    Prevents test-to-test bleed when several tests hit the same decorated
    endpoint within the same minute.
    """
    from streamguard.api.limiter import limiter

    limiter.reset()
