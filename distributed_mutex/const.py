from __future__ import annotations

INFINITE = -1
"""Sentinel for an infinite timeout or an infinite lock lifetime."""

DEFAULT_KEY_PREFIX = "mutex-"
"""Default prefix of the store keys (must be the same for all processes)."""

DEFAULT_SLEEP_INTERVAL = 50
"""Default sleep between two acquisition attempts (in milliseconds)."""

DEFAULT_LIFETIME = 60_000
"""Default lock lifetime (in milliseconds)."""

DEFAULT_TIMEOUT = 10_000
"""Default acquisition timeout (in milliseconds)."""

DEFAULT_ETCD_ENDPOINT = "http://127.0.0.1:2379"
"""Default etcd gateway endpoint."""
