from __future__ import annotations


class DistributedMutexException(Exception):
    """Base class for mutex exceptions."""

    pass


class DistributedMutexError(Exception):
    """Base class for mutex errors."""

    pass


class BadConfigurationError(DistributedMutexError):
    """Bad configuration."""

    pass


class InvalidLifetimeError(DistributedMutexError, ValueError):
    """The lifetime is neither a positive integer nor INFINITE."""

    pass


class InvalidTimeoutError(DistributedMutexError, ValueError):
    """The timeout is neither a non-negative integer nor INFINITE."""

    pass


class StoreError(DistributedMutexError):
    """The key-value store could not be reached or sent a bad reply."""

    pass


class StoreUnavailableError(DistributedMutexError):
    """Too many consecutive store errors during the mutex acquisition."""

    pass


class NotAcquiredException(DistributedMutexException):
    """Not acquired because the mutex is still held by someone else."""

    pass
