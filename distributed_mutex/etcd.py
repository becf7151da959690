from __future__ import annotations

import base64
import logging
import math
from dataclasses import dataclass, field
from typing import Any

import httpx

from distributed_mutex.common import ReadResult, get_etcd_endpoint, get_etcd_token
from distributed_mutex.exception import StoreError

logger = logging.getLogger("distributed-mutex.etcd")


def make_httpx_client() -> httpx.Client:
    timeout = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)
    return httpx.Client(timeout=timeout)


def make_async_httpx_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(connect=5.0, read=10.0, write=5.0, pool=5.0)
    return httpx.AsyncClient(timeout=timeout)


def _b64(s: str) -> str:
    return base64.b64encode(s.encode("utf8")).decode("ascii")


def _unb64(s: str) -> str:
    return base64.b64decode(s).decode("utf8")


def lease_seconds(ttl: int) -> int:
    """Convert a store ttl (in milliseconds) to an etcd lease TTL (in seconds)."""
    return max(1, math.ceil(ttl / 1000))


def range_body(key: str) -> dict:
    return {"key": _b64(key)}


def grant_body(ttl: int) -> dict:
    return {"TTL": lease_seconds(ttl)}


def txn_body(
    key: str,
    target: str,
    revision: int,
    operation: dict,
) -> dict:
    """Build a single compare / single operation transaction.

    Args:
        key: the key to compare.
        target: "CREATE" (compare create_revision) or "MOD" (compare mod_revision).
        revision: the expected revision (0 for a missing key).
        operation: the request to execute if the compare succeeds.
    """
    revision_field = "create_revision" if target == "CREATE" else "mod_revision"
    return {
        "compare": [
            {
                "key": _b64(key),
                "result": "EQUAL",
                "target": target,
                revision_field: str(revision),
            }
        ],
        "success": [operation],
        "failure": [],
    }


def put_operation(key: str, value: str, lease_id: str | None) -> dict:
    put: dict[str, Any] = {"key": _b64(key), "value": _b64(value)}
    if lease_id is not None:
        put["lease"] = lease_id
    return {"request_put": put}


def delete_operation(key: str) -> dict:
    return {"request_delete_range": {"key": _b64(key)}}


def parse_range(d: dict) -> ReadResult[int]:
    """Create a ReadResult from a range reply."""
    kvs = d.get("kvs") or []
    if not kvs:
        return ReadResult()
    kv = kvs[0]
    try:
        # etcd omits empty fields in its JSON replies
        return ReadResult(_unb64(kv.get("value", "")), int(kv["mod_revision"]))
    except (KeyError, ValueError) as e:
        raise StoreError("bad reply from etcd, can't decode the key value") from e


def parse_txn(d: dict) -> bool:
    return bool(d.get("succeeded", False))


def parse_grant(d: dict) -> str:
    if not d.get("ID"):
        raise StoreError(f"bad reply from etcd, no lease: {d.get('error', '')}")
    return str(d["ID"])


def _transport_error(e: httpx.HTTPError) -> StoreError:
    if isinstance(e, httpx.ConnectTimeout):
        return StoreError("timeout during connect")
    if isinstance(e, httpx.ReadTimeout):
        return StoreError("timeout during read")
    if isinstance(e, httpx.WriteTimeout):
        return StoreError("timeout during write")
    if isinstance(e, httpx.PoolTimeout):
        return StoreError("timeout in connection pool")
    return StoreError("generic http error")


def _check_response(r: httpx.Response) -> dict:
    if r.status_code in (401, 403):
        try:
            message = r.json()["message"]
        except Exception:
            raise StoreError(
                f"got an HTTP/{r.status_code} from etcd with no detail"
            ) from None
        raise StoreError(f"got an HTTP/{r.status_code} from etcd with message: {message}")
    elif r.status_code < 200 or r.status_code >= 300:
        raise StoreError(f"unexpected status code: {r.status_code}")
    try:
        d = r.json()
    except ValueError as e:
        raise StoreError("bad reply from etcd, not a json document") from e
    if not isinstance(d, dict):
        raise StoreError("bad reply from etcd, not a json object")
    return d


@dataclass
class _EtcdConfig:
    endpoint: str = field(default_factory=get_etcd_endpoint)
    """The etcd gateway endpoint (for example: http://127.0.0.1:2379).

    If not set, we will use the `DMUTEX_ETCD_ENDPOINT` env var value (if set),
    else default value (`DEFAULT_ETCD_ENDPOINT`).
    """

    token: str | None = field(default_factory=get_etcd_token)
    """The etcd auth token (see etcd /v3/auth/authenticate).

    If not set, we will use the `DMUTEX_ETCD_TOKEN` env var value (if set).
    """

    def get_url(self, path: str) -> str:
        """Return the full url of the given gateway path."""
        return f"{self.endpoint}/v3/{path}"

    def _get_headers(self) -> dict[str, str]:
        if self.token:
            return {"Authorization": self.token}
        return {}


@dataclass
class EtcdStore(_EtcdConfig):
    """Key-value store backed by the etcd v3 JSON gateway.

    Version tokens are the etcd `mod_revision` of the key. Ttls are
    implemented with leases (rounded up to the second).
    """

    _client: httpx.Client = field(default_factory=make_httpx_client, repr=False)

    def __del__(self):
        self.close()

    def close(self):
        self._client.close()

    def _request(self, path: str, body: dict) -> dict:
        url = self.get_url(path)
        try:
            r = self._client.post(url, json=body, headers=self._get_headers())
        except httpx.HTTPError as e:
            raise _transport_error(e) from e
        return _check_response(r)

    def _grant(self, ttl: int) -> str:
        return parse_grant(self._request("lease/grant", grant_body(ttl)))

    def _revoke(self, lease_id: str):
        try:
            self._request("lease/revoke", {"ID": lease_id})
        except StoreError as e:
            # the lease will expire by itself
            logger.debug(f"can't revoke lease {lease_id}: {e}")

    def _put_if(self, key: str, value: str, target: str, revision: int, ttl: int) -> bool:
        lease_id = self._grant(ttl) if ttl > 0 else None
        body = txn_body(key, target, revision, put_operation(key, value, lease_id))
        succeeded = parse_txn(self._request("kv/txn", body))
        if not succeeded and lease_id is not None:
            self._revoke(lease_id)
        return succeeded

    def read(self, key: str) -> ReadResult[int]:
        return parse_range(self._request("kv/range", range_body(key)))

    def add(self, key: str, value: str, ttl: int) -> bool:
        return self._put_if(key, value, "CREATE", 0, ttl)

    def cas(self, key: str, value: str, version: int, ttl: int) -> bool:
        return self._put_if(key, value, "MOD", version, ttl)

    def delete(self, key: str, version: int) -> bool:
        body = txn_body(key, "MOD", version, delete_operation(key))
        return parse_txn(self._request("kv/txn", body))


@dataclass
class AsyncEtcdStore(_EtcdConfig):
    """Asyncio flavor of `EtcdStore`."""

    _client: httpx.AsyncClient = field(
        default_factory=make_async_httpx_client, repr=False
    )

    async def aclose(self):
        await self._client.aclose()

    async def _request(self, path: str, body: dict) -> dict:
        url = self.get_url(path)
        try:
            r = await self._client.post(url, json=body, headers=self._get_headers())
        except httpx.HTTPError as e:
            raise _transport_error(e) from e
        return _check_response(r)

    async def _grant(self, ttl: int) -> str:
        return parse_grant(await self._request("lease/grant", grant_body(ttl)))

    async def _revoke(self, lease_id: str):
        try:
            await self._request("lease/revoke", {"ID": lease_id})
        except StoreError as e:
            logger.debug(f"can't revoke lease {lease_id}: {e}")

    async def _put_if(
        self, key: str, value: str, target: str, revision: int, ttl: int
    ) -> bool:
        lease_id = await self._grant(ttl) if ttl > 0 else None
        body = txn_body(key, target, revision, put_operation(key, value, lease_id))
        succeeded = parse_txn(await self._request("kv/txn", body))
        if not succeeded and lease_id is not None:
            await self._revoke(lease_id)
        return succeeded

    async def read(self, key: str) -> ReadResult[int]:
        return parse_range(await self._request("kv/range", range_body(key)))

    async def add(self, key: str, value: str, ttl: int) -> bool:
        return await self._put_if(key, value, "CREATE", 0, ttl)

    async def cas(self, key: str, value: str, version: int, ttl: int) -> bool:
        return await self._put_if(key, value, "MOD", version, ttl)

    async def delete(self, key: str, version: int) -> bool:
        body = txn_body(key, "MOD", version, delete_operation(key))
        return parse_txn(await self._request("kv/txn", body))
