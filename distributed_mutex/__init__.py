from __future__ import annotations

from distributed_mutex.aio import AsyncMutexCoordinator
from distributed_mutex.common import LockRecord, ReadResult, to_store_ttl
from distributed_mutex.const import (
    DEFAULT_ETCD_ENDPOINT,
    DEFAULT_KEY_PREFIX,
    DEFAULT_LIFETIME,
    DEFAULT_SLEEP_INTERVAL,
    DEFAULT_TIMEOUT,
    INFINITE,
)
from distributed_mutex.etcd import AsyncEtcdStore, EtcdStore
from distributed_mutex.exception import (
    BadConfigurationError,
    DistributedMutexError,
    DistributedMutexException,
    InvalidLifetimeError,
    InvalidTimeoutError,
    NotAcquiredException,
    StoreError,
    StoreUnavailableError,
)
from distributed_mutex.memory import AsyncMemoryStore, MemoryStore
from distributed_mutex.store import AsyncKeyValueStore, KeyValueStore
from distributed_mutex.sync import MutexCoordinator

__all__ = [
    "INFINITE",
    "DEFAULT_ETCD_ENDPOINT",
    "DEFAULT_KEY_PREFIX",
    "DEFAULT_LIFETIME",
    "DEFAULT_SLEEP_INTERVAL",
    "DEFAULT_TIMEOUT",
    "LockRecord",
    "ReadResult",
    "to_store_ttl",
    "KeyValueStore",
    "AsyncKeyValueStore",
    "MemoryStore",
    "AsyncMemoryStore",
    "EtcdStore",
    "AsyncEtcdStore",
    "MutexCoordinator",
    "AsyncMutexCoordinator",
    "DistributedMutexError",
    "DistributedMutexException",
    "BadConfigurationError",
    "InvalidLifetimeError",
    "InvalidTimeoutError",
    "NotAcquiredException",
    "StoreError",
    "StoreUnavailableError",
]

__pdoc__ = {
    "sync": False,
    "aio": False,
    "exception": False,
    "common": False,
    "memory": False,
    "etcd": False,
    "store": False,
}

VERSION = "v0.0.0"
