from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from distributed_mutex.common import (
    BaseMutexCoordinator,
    LockRecord,
    ReadResult,
    check_lifetime,
    check_timeout,
    to_store_ttl,
)
from distributed_mutex.const import DEFAULT_LIFETIME, DEFAULT_TIMEOUT
from distributed_mutex.exception import NotAcquiredException, StoreError
from distributed_mutex.store import AsyncKeyValueStore

logger = logging.getLogger("distributed-mutex.aio")


async def _sleep(delay: float, cancel: asyncio.Event | None):
    if cancel is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel.wait(), delay)
    except asyncio.TimeoutError:
        pass


@dataclass
class AsyncMutexCoordinator(BaseMutexCoordinator[AsyncKeyValueStore]):
    """Asyncio flavor of `MutexCoordinator`.

    The sleep between two attempts is an `asyncio.sleep()` so other tasks
    run while we wait. `owns_mutex()` and `get_record()` stay synchronous
    (they never touch the store).
    """

    _name_locks: dict[str, asyncio.Lock] = field(
        default_factory=dict, repr=False, compare=False
    )

    def _name_lock(self, name: str) -> asyncio.Lock:
        with self._records_lock:
            return self._name_locks.setdefault(name, asyncio.Lock())

    async def _attempt(self, key: str, ttl: int) -> tuple[ReadResult, float] | None:
        current = await self.store.read(key)
        if current.present and current.value != self.owner_id:
            return None
        # the store ttl starts with the write below, so does our lifetime
        claimed_at = self.clock()
        if current.version is None:
            claimed = await self.store.add(key, self.owner_id, ttl)
        else:
            # a tombstone or our own id (missed confirmation, local expiry):
            # the cas also restarts the ttl
            claimed = await self.store.cas(key, self.owner_id, current.version, ttl)
        if not claimed:
            return None
        confirmed = await self.store.read(key)
        if confirmed.value == self.owner_id:
            return confirmed, claimed_at
        return None

    async def _acquire(
        self,
        record: LockRecord,
        timeout: int,
        cancel: asyncio.Event | None,
    ) -> bool:
        key = self.get_key(record.name)
        ttl = to_store_ttl(record.lifetime)
        deadline = self._deadline(timeout)
        errors = 0
        while cancel is None or not cancel.is_set():
            logger.debug(f"Try to lock {record.name} with key: {key}...")
            try:
                result = await self._attempt(key, ttl)
            except StoreError as e:
                errors += 1
                self._check_store_errors(record, errors, e, logger)
                result = None
            else:
                errors = 0
            if result is not None:
                confirmed, claimed_at = result
                self._set_owned(record, confirmed.version, claimed_at)
                logger.info(f"Mutex {record.name} acquired")
                return True
            sleep = self._next_sleep(deadline)
            if sleep is None:
                break
            logger.debug(f"wait {sleep}s...")
            await _sleep(sleep, cancel)
        if cancel is not None and cancel.is_set():
            logger.info(f"Acquisition of mutex {record.name} cancelled")
        self._set_not_owned(record)
        return False

    async def acquire_mutex(
        self,
        name: str,
        timeout: int = DEFAULT_TIMEOUT,
        lifetime: int = DEFAULT_LIFETIME,
        *,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Acquire the given mutex.

        See `MutexCoordinator.acquire_mutex()`. Cancelling the calling task
        leaves the mutex not owned and propagates `asyncio.CancelledError`.

        Args:
            name: the mutex name to acquire.
            timeout: the maximum wait (in milliseconds), INFINITE to wait forever.
            lifetime: the mutex max lifetime (in milliseconds), INFINITE for no expiry.
            cancel: if this event is set, we stop waiting for the mutex.

        Returns:
            True if we own the mutex, False after the timeout (or a cancellation).

        """
        timeout = check_timeout(timeout)
        lifetime = check_lifetime(lifetime)
        async with self._name_lock(name):
            if self.owns_mutex(name):
                return True
            record = self._prepare(name, lifetime)
            try:
                return await self._acquire(record, timeout, cancel)
            except asyncio.CancelledError:
                self._set_not_owned(record)
                raise

    async def release_mutex(self, name: str):
        """Release the given mutex (if owned), see `MutexCoordinator.release_mutex()`."""
        async with self._name_lock(name):
            if not self.owns_mutex(name):
                return
            record = self.records[name]
            version = record.version
            # detach before the key can be claimed by someone else
            self._set_not_owned(record)
            key = self.get_key(name)
            logger.debug(f"Try to unlock {name} with key: {key}...")
            try:
                released = await self.store.delete(key, version)
            except StoreError as e:
                logger.warning(f"Can't release mutex {name}: {e}")
            else:
                if released:
                    logger.info(f"Mutex {name} released")
                else:
                    logger.warning(f"Mutex {name} already expired or reclaimed")

    @asynccontextmanager
    async def mutex(
        self,
        name: str,
        timeout: int = DEFAULT_TIMEOUT,
        lifetime: int = DEFAULT_LIFETIME,
        *,
        cancel: asyncio.Event | None = None,
    ):
        """Acquire a mutex and release it as an async context manager.

        Raises:
            NotAcquiredException: Can't acquire the mutex because it's still
                held by someone else after the timeout.

        """
        if not await self.acquire_mutex(name, timeout, lifetime, cancel=cancel):
            raise NotAcquiredException(f"can't acquire mutex {name}")
        try:
            yield
        finally:
            await self.release_mutex(name)
