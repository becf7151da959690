from __future__ import annotations

from typing import Protocol, TypeVar, runtime_checkable

from distributed_mutex.common import ReadResult

VersionT = TypeVar("VersionT")


@runtime_checkable
class KeyValueStore(Protocol[VersionT]):
    """The key-value store capability used by `MutexCoordinator`.

    Notes:
        - version tokens are opaque: they are only compared by the store itself.
        - ttl values are in milliseconds, 0 means "never expires".
        - a lost race is reported by a False return, never by an exception.
        - transport failures must be raised as `StoreError`.
    """

    def read(self, key: str) -> ReadResult[VersionT]:
        """Atomic snapshot read of the value and of its version token."""
        ...

    def add(self, key: str, value: str, ttl: int) -> bool:
        """Create the key only if it does not exist yet."""
        ...

    def cas(self, key: str, value: str, version: VersionT, ttl: int) -> bool:
        """Write the key only if its current version is `version`."""
        ...

    def delete(self, key: str, version: VersionT) -> bool:
        """Delete the key only if its current version is `version`."""
        ...


@runtime_checkable
class AsyncKeyValueStore(Protocol[VersionT]):
    """The asyncio flavor of `KeyValueStore` used by `AsyncMutexCoordinator`."""

    async def read(self, key: str) -> ReadResult[VersionT]: ...

    async def add(self, key: str, value: str, ttl: int) -> bool: ...

    async def cas(self, key: str, value: str, version: VersionT, ttl: int) -> bool: ...

    async def delete(self, key: str, version: VersionT) -> bool: ...
