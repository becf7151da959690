from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
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
from distributed_mutex.store import KeyValueStore

logger = logging.getLogger("distributed-mutex.sync")


@dataclass
class MutexCoordinator(BaseMutexCoordinator[KeyValueStore]):
    """Blocking coordinator of named mutexes stored in a key-value store.

    A coordinator represents a single "server": acquiring a mutex it already
    owns returns True immediately. Two coordinators (even in the same process)
    never share ownership, so use one coordinator per logical owner.
    """

    _name_locks: dict[str, threading.Lock] = field(
        default_factory=dict, repr=False, compare=False
    )

    def _name_lock(self, name: str) -> threading.Lock:
        with self._records_lock:
            return self._name_locks.setdefault(name, threading.Lock())

    def _attempt(self, key: str, ttl: int) -> tuple[ReadResult, float] | None:
        current = self.store.read(key)
        if current.present and current.value != self.owner_id:
            return None
        # the store ttl starts with the write below, so does our lifetime
        claimed_at = self.clock()
        if current.version is None:
            claimed = self.store.add(key, self.owner_id, ttl)
        else:
            # a tombstone or our own id (missed confirmation, local expiry):
            # the cas also restarts the ttl
            claimed = self.store.cas(key, self.owner_id, current.version, ttl)
        if not claimed:
            return None
        # someone may have overwritten our value between the claim and now
        confirmed = self.store.read(key)
        if confirmed.value == self.owner_id:
            return confirmed, claimed_at
        return None

    def _acquire(
        self,
        record: LockRecord,
        timeout: int,
        cancel: threading.Event | None,
    ) -> bool:
        key = self.get_key(record.name)
        ttl = to_store_ttl(record.lifetime)
        deadline = self._deadline(timeout)
        errors = 0
        while cancel is None or not cancel.is_set():
            logger.debug(f"Try to lock {record.name} with key: {key}...")
            try:
                result = self._attempt(key, ttl)
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
            if cancel is None:
                time.sleep(sleep)
            else:
                cancel.wait(sleep)
        if cancel is not None and cancel.is_set():
            logger.info(f"Acquisition of mutex {record.name} cancelled")
        self._set_not_owned(record)
        return False

    def acquire_mutex(
        self,
        name: str,
        timeout: int = DEFAULT_TIMEOUT,
        lifetime: int = DEFAULT_LIFETIME,
        *,
        cancel: threading.Event | None = None,
    ) -> bool:
        """Acquire the given mutex.

        Notes:
            - at least one attempt is always made (so `timeout=0` means "try once").
            - the ownership expires (locally and in the store) after `lifetime`
              milliseconds, even if `release_mutex()` is never called.
            - calls for the same name on the same coordinator are serialized.

        Args:
            name: the mutex name to acquire.
            timeout: the maximum wait (in milliseconds), INFINITE to wait forever.
            lifetime: the mutex max lifetime (in milliseconds), INFINITE for no expiry.
            cancel: if this event is set, we stop waiting for the mutex.

        Returns:
            True if we own the mutex, False after the timeout (or a cancellation).

        Raises:
            InvalidLifetimeError: the lifetime is not INFINITE or a positive integer.
            InvalidTimeoutError: the timeout is not INFINITE or a non-negative integer.
            StoreUnavailableError: `max_store_errors` consecutive store errors
                happened during the acquisition.

        """
        timeout = check_timeout(timeout)
        lifetime = check_lifetime(lifetime)
        with self._name_lock(name):
            if self.owns_mutex(name):
                return True
            record = self._prepare(name, lifetime)
            return self._acquire(record, timeout, cancel)

    def release_mutex(self, name: str):
        """Release the given mutex (if owned).

        The store key is deleted only if it still holds the version we wrote.
        A failure is logged but not raised: in any case, we don't own the
        mutex anymore after this call.
        """
        with self._name_lock(name):
            if not self.owns_mutex(name):
                return
            record = self.records[name]
            version = record.version
            # detach before the key can be claimed by someone else
            self._set_not_owned(record)
            key = self.get_key(name)
            logger.debug(f"Try to unlock {name} with key: {key}...")
            try:
                released = self.store.delete(key, version)
            except StoreError as e:
                logger.warning(f"Can't release mutex {name}: {e}")
            else:
                if released:
                    logger.info(f"Mutex {name} released")
                else:
                    logger.warning(f"Mutex {name} already expired or reclaimed")

    @contextmanager
    def mutex(
        self,
        name: str,
        timeout: int = DEFAULT_TIMEOUT,
        lifetime: int = DEFAULT_LIFETIME,
        *,
        cancel: threading.Event | None = None,
    ):
        """Acquire a mutex and release it as a context manager.

        Args:
            name: the mutex name to acquire.
            timeout: the maximum wait (in milliseconds), INFINITE to wait forever.
            lifetime: the mutex max lifetime (in milliseconds), INFINITE for no expiry.
            cancel: if this event is set, we stop waiting for the mutex.

        Raises:
            NotAcquiredException: Can't acquire the mutex because it's still
                held by someone else after the timeout.

        """
        if not self.acquire_mutex(name, timeout, lifetime, cancel=cancel):
            raise NotAcquiredException(f"can't acquire mutex {name}")
        try:
            yield
        finally:
            self.release_mutex(name)
