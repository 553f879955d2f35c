from __future__ import annotations

"""
aicall • store • client

Retrying async client for the content-addressed blob store that carries
prompts, results and attestation reports. The ledger only ever sees their
digests; this client moves the bytes.

Endpoints (relative to `endpoint + base_path`, default base "/v1/minio")
------------------------------------------------------------------------
- POST {base}/object      form field `content`; body: the content key (plain text)
- GET  {base}/get/{key}   raw bytes
- GET  {base}/health      2xx when alive

Behaviour
---------
- Preconditions are checked before any network I/O and raise
  PreconditionError (never retried).
- Transport errors, timeouts, non-2xx answers and malformed bodies are
  retried up to `retries` attempts with capped exponential backoff
  (defaults: 3 attempts, 1s base, 5s cap, no jitter). Exhaustion raises
  ContentStoreError carrying op, attempts and the last error.
- An injected httpx.AsyncClient is shared across calls; otherwise each call
  opens (and closes) its own client, so concurrent operations never share
  connection state.

Usage
-----
    store = ContentStoreClient("http://127.0.0.1:8080")
    key = await store.put("summarise this")
    data = await store.get(key)
"""

import logging
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import quote

import httpx

from aicall import metrics
from aicall.config import StoreSettings
from aicall.errors import ContentStoreError, PreconditionError
from aicall.utils.retry import RetryError, RetryPolicy, aretry_call
from aicall.version import __version__

log = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class _StoreAttemptFailed(Exception):
    """One failed attempt (transport, status or shape); retried by policy."""


class ContentStoreClient:
    """
    Parameters
    ----------
    endpoint : str
        Store root, e.g. "http://127.0.0.1:8080".
    base_path : str
        Path prefix for store routes.
    timeout : float
        Per-attempt timeout, seconds.
    policy : RetryPolicy
        Attempts and backoff for put/get.
    client : httpx.AsyncClient, optional
        Shared client; when omitted each call opens its own.
    sleep : callable, optional
        Awaitable sleep used between attempts (tests pass a recorder).
    """

    def __init__(
        self,
        endpoint: str = "http://127.0.0.1:8080",
        *,
        base_path: str = "/v1/minio",
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.base_path = "/" + base_path.strip("/") if base_path.strip("/") else ""
        self.timeout = float(timeout)
        self.policy = policy or RetryPolicy()
        self._client = client
        self._sleep = sleep
        self._headers = {"User-Agent": f"aicall-store/{__version__}"}

    @classmethod
    def from_settings(cls, settings: StoreSettings, **kw: Any) -> "ContentStoreClient":
        return cls(
            settings.endpoint,
            base_path=settings.base_path,
            timeout=settings.timeout_s,
            policy=settings.retry_policy(),
            **kw,
        )

    @property
    def base_url(self) -> str:
        return self.endpoint + self.base_path

    # --- API

    async def put(self, content: Union[str, bytes]) -> str:
        """Upload `content`; returns the store key."""
        if isinstance(content, (bytes, bytearray)):
            try:
                content = bytes(content).decode("utf-8")
            except UnicodeDecodeError as e:
                raise PreconditionError("content must be UTF-8 text", details={"field": "content"}) from e
        if not isinstance(content, str) or not content:
            raise PreconditionError("content must be a non-empty string", details={"field": "content"})

        async def _once() -> str:
            resp = await self._send("POST", "/object", data={"content": content})
            key = resp.text.strip()
            if not key:
                raise _StoreAttemptFailed("empty key in upload response")
            return key

        key = await self._with_retry("put", _once)
        log.debug("stored %d chars under key %s", len(content), key)
        return key

    async def get(self, key: str) -> bytes:
        """Fetch the bytes stored under `key`."""
        if not isinstance(key, str) or not key:
            raise PreconditionError("key must be a non-empty string", details={"field": "key"})

        async def _once() -> bytes:
            resp = await self._send("GET", f"/get/{quote(key, safe='')}")
            return resp.content

        return await self._with_retry("get", _once)

    async def ping(self) -> bool:
        """Single health probe; never raises."""
        try:
            await self._send("GET", "/health")
        except _StoreAttemptFailed as e:
            log.debug("store ping failed: %s", e)
            metrics.STORE_OPS.labels(op="ping", result="error").inc()
            return False
        metrics.STORE_OPS.labels(op="ping", result="ok").inc()
        return True

    # --- plumbing

    async def _with_retry(self, op: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        kw = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            out = await aretry_call(fn, policy=self.policy, exceptions=_StoreAttemptFailed, **kw)
        except RetryError as e:
            metrics.STORE_OPS.labels(op=op, result="error").inc()
            log.warning("store %s failed after %d attempts: %s", op, e.attempts, e.last_exception)
            raise ContentStoreError(
                f"content store {op} failed",
                details={"op": op, "attempts": e.attempts, "error": str(e.last_exception)},
            ) from e
        metrics.STORE_OPS.labels(op=op, result="ok").inc()
        return out

    async def _send(self, method: str, path: str, **kw: Any) -> httpx.Response:
        url = self.base_url + path
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, headers=self._headers, timeout=self.timeout, **kw)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.request(method, url, headers=self._headers, **kw)
        except httpx.HTTPError as e:
            raise _StoreAttemptFailed(f"{method} {path}: {e!r}") from e
        if not 200 <= resp.status_code < 300:
            raise _StoreAttemptFailed(f"{method} {path}: HTTP {resp.status_code}: {resp.text[:200]}")
        return resp


__all__ = ["ContentStoreClient"]
