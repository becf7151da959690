from __future__ import annotations

import asyncio
from unittest import mock

import pytest

from distributed_mutex import (
    DEFAULT_KEY_PREFIX,
    INFINITE,
    AsyncMemoryStore,
    AsyncMutexCoordinator,
    InvalidLifetimeError,
    MemoryStore,
    NotAcquiredException,
    ReadResult,
    StoreError,
    StoreUnavailableError,
)


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.now += seconds


class SlowReadStore(MemoryStore):
    """Every read takes 50ms on the (fake) store clock."""

    def read(self, key):
        result = super().read(key)
        self.clock.sleep(0.05)
        return result


def make(store, owner_id: str, **kwargs) -> AsyncMutexCoordinator:
    kwargs.setdefault("sleep_interval", 10)
    kwargs.setdefault("max_store_errors", None)
    return AsyncMutexCoordinator(store, owner_id=owner_id, **kwargs)


async def test_acquire_release():
    memory = MemoryStore()
    x = make(AsyncMemoryStore(memory), "a")
    assert await x.acquire_mutex("job", timeout=0, lifetime=5000)
    assert x.owns_mutex("job")
    assert memory.read(DEFAULT_KEY_PREFIX + "job").value == "a"
    await x.release_mutex("job")
    assert not x.owns_mutex("job")
    assert not memory.read(DEFAULT_KEY_PREFIX + "job").present


async def test_reentrant_without_store_interaction():
    store = mock.Mock(wraps=AsyncMemoryStore())
    x = make(store, "a")
    assert await x.acquire_mutex("job", timeout=0, lifetime=5000)
    store.reset_mock()
    assert await x.acquire_mutex("job", timeout=0, lifetime=5000)
    assert store.method_calls == []


async def test_invalid_lifetime():
    store = mock.Mock(wraps=AsyncMemoryStore())
    x = make(store, "a")
    with pytest.raises(InvalidLifetimeError):
        await x.acquire_mutex("job", timeout=0, lifetime=0)
    assert store.method_calls == []


async def test_timeout():
    clock = FakeClock()
    store = AsyncMemoryStore(MemoryStore(clock=clock))
    x = make(store, "a", clock=clock, sleep_interval=50)
    y = make(store, "b", clock=clock, sleep_interval=50)
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    with mock.patch("asyncio.sleep", side_effect=clock.sleep) as sleep:
        assert not await y.acquire_mutex("job", timeout=200, lifetime=1000)
    assert clock.now >= 100.0 + 0.2
    assert clock.now <= 100.0 + 0.2 + 0.05
    assert sleep.await_count >= 4
    assert all(call.args[0] <= 0.05 for call in sleep.await_args_list)
    assert not y.owns_mutex("job")
    assert not y.get_record("job").attached


async def test_self_expiry():
    clock = FakeClock()
    store = mock.Mock(wraps=AsyncMemoryStore(MemoryStore(clock=clock)))
    x = make(store, "a", clock=clock)
    assert await x.acquire_mutex("job", timeout=0, lifetime=1000)
    store.reset_mock()
    clock.now = 100.999
    assert x.owns_mutex("job")
    clock.now = 101.0
    assert not x.owns_mutex("job")
    assert store.method_calls == []


async def test_lifetime_starts_before_the_claim():
    clock = FakeClock()
    store = AsyncMemoryStore(SlowReadStore(clock=clock))
    a = make(store, "a", clock=clock)
    b = make(store, "b", clock=clock)
    assert await a.acquire_mutex("job", timeout=0, lifetime=100)
    assert a.get_record("job").acquired_at == pytest.approx(100.05)
    clock.now = 100.16
    assert await b.acquire_mutex("job", timeout=0, lifetime=100)
    assert not (a.owns_mutex("job") and b.owns_mutex("job"))


async def test_already_written_with_our_id():
    memory = MemoryStore()
    memory.add(DEFAULT_KEY_PREFIX + "job", "a", 0)
    store = mock.Mock(wraps=AsyncMemoryStore(memory))
    x = make(store, "a")
    assert await x.acquire_mutex("job", timeout=0, lifetime=1000)
    assert store.add.call_count == 0
    assert store.cas.call_count == 1
    assert store.cas.call_args.args[3] == 1000
    assert x.get_record("job").version == memory.read(DEFAULT_KEY_PREFIX + "job").version


async def test_scenario():
    store = AsyncMemoryStore()
    a = AsyncMutexCoordinator(store, owner_id="a")
    b = AsyncMutexCoordinator(store, owner_id="b")
    assert await a.acquire_mutex("job-42", timeout=0, lifetime=5000)
    a_version = a.get_record("job-42").version
    assert not await b.acquire_mutex("job-42", timeout=200, lifetime=5000)
    await a.release_mutex("job-42")
    assert await b.acquire_mutex("job-42", timeout=200, lifetime=5000)
    assert b.get_record("job-42").version != a_version


async def test_waiting_does_not_block_the_loop():
    store = AsyncMemoryStore()
    x = make(store, "a")
    y = make(store, "b")
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)

    async def release_later():
        await asyncio.sleep(0.05)
        await x.release_mutex("job")

    results = await asyncio.gather(
        y.acquire_mutex("job", timeout=1000, lifetime=INFINITE), release_later()
    )
    assert results[0] is True
    assert y.owns_mutex("job")
    assert not x.owns_mutex("job")


async def test_lost_race_after_claim():
    store = mock.AsyncMock()
    store.read.side_effect = [ReadResult(), ReadResult("other", 7)]
    store.add.return_value = True
    x = make(store, "a")
    assert not await x.acquire_mutex("job", timeout=0, lifetime=1000)
    assert store.read.await_count == 2


async def test_claim_with_cas_on_tombstone():
    store = mock.Mock(wraps=AsyncMemoryStore(MemoryStore(tombstones=True)))
    x = make(store, "a")
    y = make(store, "b")
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    await x.release_mutex("job")
    store.reset_mock()
    assert await y.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    assert store.cas.call_count == 1
    assert store.add.call_count == 0


async def test_store_unavailable():
    store = mock.AsyncMock()
    store.read.side_effect = StoreError("boom")
    x = make(store, "a", sleep_interval=1, max_store_errors=2)
    with pytest.raises(StoreUnavailableError):
        await x.acquire_mutex("job", timeout=INFINITE, lifetime=1000)
    assert store.read.await_count == 2


async def test_release_store_error():
    memory = MemoryStore()
    x = make(AsyncMemoryStore(memory), "a")
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    with mock.patch.object(x.store, "delete", side_effect=StoreError("boom")):
        await x.release_mutex("job")
    assert not x.owns_mutex("job")
    assert memory.read(DEFAULT_KEY_PREFIX + "job").value == "a"


async def test_cancel_event():
    store = AsyncMemoryStore()
    x = make(store, "a")
    y = make(store, "b")
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)
    assert not await y.acquire_mutex(
        "job", timeout=INFINITE, lifetime=1000, cancel=cancel
    )
    assert not y.owns_mutex("job")


async def test_task_cancellation():
    store = AsyncMemoryStore()
    x = make(store, "a")
    y = make(store, "b")
    assert await x.acquire_mutex("job", timeout=0, lifetime=INFINITE)
    task = asyncio.create_task(
        y.acquire_mutex("job", timeout=INFINITE, lifetime=1000)
    )
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    record = y.get_record("job")
    assert record is not None
    assert not record.attached


async def test_context_manager():
    store = AsyncMemoryStore()
    x = make(store, "a")
    y = make(store, "b")
    async with x.mutex("job", timeout=0, lifetime=1000):
        assert x.owns_mutex("job")
        with pytest.raises(NotAcquiredException):
            async with y.mutex("job", timeout=0, lifetime=1000):
                pass
    assert not x.owns_mutex("job")
    async with y.mutex("job", timeout=0, lifetime=1000):
        assert y.owns_mutex("job")


async def test_mutual_exclusion():
    store = AsyncMemoryStore()
    coordinators = [make(store, f"server-{i}", sleep_interval=1) for i in range(5)]
    violations = []

    async def worker(c: AsyncMutexCoordinator):
        for _ in range(5):
            assert await c.acquire_mutex("shared", timeout=INFINITE, lifetime=INFINITE)
            await asyncio.sleep(0)
            owners = [o.owner_id for o in coordinators if o.owns_mutex("shared")]
            if owners != [c.owner_id]:
                violations.append(owners)
            await c.release_mutex("shared")

    await asyncio.wait_for(asyncio.gather(*(worker(c) for c in coordinators)), 30)
    assert violations == []
