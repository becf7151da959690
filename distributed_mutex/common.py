from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Callable, Generic, TypeVar

from distributed_mutex.const import (
    DEFAULT_ETCD_ENDPOINT,
    DEFAULT_KEY_PREFIX,
    DEFAULT_SLEEP_INTERVAL,
    INFINITE,
)
from distributed_mutex.exception import (
    BadConfigurationError,
    InvalidLifetimeError,
    InvalidTimeoutError,
    StoreError,
    StoreUnavailableError,
)

VersionT = TypeVar("VersionT")
StoreT = TypeVar("StoreT")


@dataclass(frozen=True)
class ReadResult(Generic[VersionT]):
    """This dataclass holds the reply of a store read."""

    value: str | None = None
    """The stored value (None if the key is absent or tombstoned)."""

    version: VersionT | None = None
    """The opaque version token (None if no write was ever observed)."""

    @property
    def present(self) -> bool:
        return self.value is not None


@dataclass
class LockRecord:
    """This dataclass holds the local state of one named mutex."""

    name: str
    """The mutex name (without the key prefix)."""

    owner_id: str
    """The identifier of the current (or last) owner."""

    lifetime: int = INFINITE
    """The requested lifetime (in milliseconds, INFINITE for no expiry)."""

    acquired_at: float | None = None
    """The local clock value (in seconds) of the last acquisition."""

    version: Any = None
    """The store version token of the last acquisition (only valid when attached)."""

    attached: bool = False
    """True if we believe that we own the mutex."""

    @property
    def expires_at(self) -> float | None:
        """The local clock value (in seconds) at which the ownership expires."""
        if self.acquired_at is None or self.lifetime == INFINITE:
            return None
        return self.acquired_at + self.lifetime / 1000.0

    def is_owned(self, now: float) -> bool:
        """Return True if the mutex is attached and not expired at `now`."""
        if not self.attached or self.acquired_at is None:
            return False
        if self.lifetime == INFINITE:
            return True
        return (now - self.acquired_at) * 1000.0 < self.lifetime

    def to_dict(self) -> dict:
        """Convert a LockRecord to a dict."""
        d = asdict(self)
        if d["version"] is not None:
            d["version"] = str(d["version"])
        return d


def check_lifetime(lifetime: Any) -> int:
    """Return the lifetime if it's a positive integer or INFINITE.

    Raises:
        InvalidLifetimeError: for any other value.
    """
    if isinstance(lifetime, bool) or not isinstance(lifetime, int):
        raise InvalidLifetimeError(f"lifetime must be an integer, got {lifetime!r}")
    if lifetime != INFINITE and lifetime <= 0:
        raise InvalidLifetimeError(
            f"lifetime must be either INFINITE or a positive integer, got {lifetime}"
        )
    return lifetime


def check_timeout(timeout: Any) -> int:
    """Return the timeout if it's a non-negative integer or INFINITE.

    Raises:
        InvalidTimeoutError: for any other value.
    """
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise InvalidTimeoutError(f"timeout must be an integer, got {timeout!r}")
    if timeout != INFINITE and timeout < 0:
        raise InvalidTimeoutError(
            f"timeout must be either INFINITE or a non-negative integer, got {timeout}"
        )
    return timeout


def to_store_ttl(lifetime: int) -> int:
    """Convert a mutex lifetime to a store ttl (in milliseconds).

    Stores use 0 for "never expires" where the mutex API uses INFINITE.
    """
    if lifetime == INFINITE:
        return 0
    return lifetime


def get_owner_id() -> str:
    """Get the owner identifier from env (or generate a random one)."""
    if os.environ.get("DMUTEX_OWNER_ID"):
        return os.environ["DMUTEX_OWNER_ID"].strip()
    return str(uuid.uuid4())


def get_key_prefix() -> str:
    """Get the key prefix from env or from default."""
    if os.environ.get("DMUTEX_KEY_PREFIX"):
        return os.environ["DMUTEX_KEY_PREFIX"].strip()
    return DEFAULT_KEY_PREFIX


def _get_positive_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        raise BadConfigurationError(f"{name} must be an integer (got {raw!r})") from None
    if value <= 0:
        raise BadConfigurationError(f"{name} must be positive (got {value})")
    return value


def get_sleep_interval() -> int:
    """Get the sleep interval (in milliseconds) from env or from default.

    Raises:
        BadConfigurationError: if the env value is not a positive integer.
    """
    value = _get_positive_int("DMUTEX_SLEEP_INTERVAL")
    return DEFAULT_SLEEP_INTERVAL if value is None else value


def get_max_store_errors() -> int | None:
    """Get the max number of consecutive store errors from env (None: unbounded).

    Raises:
        BadConfigurationError: if the env value is not a positive integer.
    """
    return _get_positive_int("DMUTEX_MAX_STORE_ERRORS")


def get_etcd_endpoint() -> str:
    """Get the etcd gateway endpoint from env or from default."""
    if os.environ.get("DMUTEX_ETCD_ENDPOINT"):
        return os.environ["DMUTEX_ETCD_ENDPOINT"].strip().rstrip("/")
    return DEFAULT_ETCD_ENDPOINT


def get_etcd_token() -> str | None:
    """Get the etcd auth token from env (None if not set)."""
    if os.environ.get("DMUTEX_ETCD_TOKEN"):
        return os.environ["DMUTEX_ETCD_TOKEN"].strip()
    return None


@dataclass
class BaseMutexCoordinator(Generic[StoreT]):
    """Bookkeeping shared by the blocking and the asyncio coordinators."""

    store: StoreT
    """The key-value store used to arbitrate the mutexes."""

    owner_id: str = field(default_factory=get_owner_id)
    """The identifier written in the store when we own a mutex.

    It must be unique for each process sharing the key prefix.
    If not set, we will use the `DMUTEX_OWNER_ID` env var value (if set),
    else a random uuid.
    """

    key_prefix: str = field(default_factory=get_key_prefix)
    """The prefix of the store keys.

    If not set, we will use the `DMUTEX_KEY_PREFIX` env var value (if set),
    else default value (`DEFAULT_KEY_PREFIX`).
    """

    sleep_interval: int = field(default_factory=get_sleep_interval)
    """The sleep between two acquisition attempts (in milliseconds).

    If not set, we will use the `DMUTEX_SLEEP_INTERVAL` env var value (if set),
    else default value (`DEFAULT_SLEEP_INTERVAL`).
    """

    max_store_errors: int | None = field(default_factory=get_max_store_errors)
    """The number of consecutive store errors after which an acquisition aborts.

    None means that store errors are retried until the timeout.
    """

    clock: Callable[[], float] = time.monotonic
    """The local clock (in seconds) used for timeouts and lifetimes."""

    records: dict[str, LockRecord] = field(default_factory=dict)
    """The records of the mutexes we own or have previously owned."""

    _records_lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def get_key(self, name: str) -> str:
        """Return the store key of the given mutex name."""
        return self.key_prefix + name

    def owns_mutex(self, name: str) -> bool:
        """Return True if we currently own the given mutex.

        This is a local computation only: the store is never requested.
        """
        with self._records_lock:
            record = self.records.get(name)
            return record is not None and record.is_owned(self.clock())

    def get_record(self, name: str) -> LockRecord | None:
        """Return a copy of the record of the given mutex (if any)."""
        with self._records_lock:
            record = self.records.get(name)
            return replace(record) if record is not None else None

    def _prepare(self, name: str, lifetime: int) -> LockRecord:
        with self._records_lock:
            record = self.records.get(name)
            if record is None:
                record = LockRecord(name=name, owner_id=self.owner_id)
                self.records[name] = record
            record.lifetime = lifetime
            return record

    def _set_owned(self, record: LockRecord, version: Any, claimed_at: float):
        with self._records_lock:
            record.owner_id = self.owner_id
            record.version = version
            record.attached = True
            record.acquired_at = claimed_at

    def _set_not_owned(self, record: LockRecord):
        with self._records_lock:
            record.attached = False
            record.version = None

    def _deadline(self, timeout: int) -> float | None:
        if timeout == INFINITE:
            return None
        return self.clock() + timeout / 1000.0

    def _next_sleep(self, deadline: float | None) -> float | None:
        """Return the next sleep (in seconds) or None if the deadline is reached."""
        if deadline is None:
            return self.sleep_interval / 1000.0
        remaining = deadline - self.clock()
        if remaining <= 0:
            return None
        return min(self.sleep_interval / 1000.0, remaining)

    def _check_store_errors(
        self, record: LockRecord, errors: int, exc: StoreError, logger: logging.Logger
    ):
        logger.warning(
            f"store error during the acquisition of {record.name} "
            f"(consecutive errors: {errors}): {exc}"
        )
        if self.max_store_errors is not None and errors >= self.max_store_errors:
            self._set_not_owned(record)
            raise StoreUnavailableError(
                f"giving up on {record.name} after {errors} consecutive store errors"
            ) from exc
