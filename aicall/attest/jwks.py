from __future__ import annotations

"""
Key-set (JWKS) fetching for attestation verification.

The attestation service rotates its signing keys, so the key set is fetched
on every lookup; nothing is cached across calls. Fetches are retried with
bounded backoff and surface KeySetUnavailable once attempts run out. A kid
missing from a freshly fetched set is a hard UnknownKey failure.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from aicall.config import AttestSettings
from aicall.errors import KeySetUnavailable, UnknownKey
from aicall.utils.retry import RetryError, RetryPolicy, aretry_call
from aicall.version import __version__

log = logging.getLogger(__name__)


class _FetchFailed(Exception):
    pass


class KeySetClient:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.url = url
        self.timeout = float(timeout)
        self.policy = policy or RetryPolicy(attempts=3, base=0.5, max_delay=4.0)
        self._client = client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: AttestSettings, **kw: Any) -> "KeySetClient":
        return cls(settings.jwks_url, timeout=settings.timeout_s, policy=settings.retry_policy(), **kw)

    async def fetch(self) -> List[Dict[str, Any]]:
        """Download the key set; returns its `keys` list."""
        kw = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            return await aretry_call(self._fetch_once, policy=self.policy, exceptions=_FetchFailed, **kw)
        except RetryError as e:
            log.warning("key set %s unavailable after %d attempts: %s", self.url, e.attempts, e.last_exception)
            raise KeySetUnavailable(
                "attestation key set could not be fetched",
                details={"url": self.url, "attempts": e.attempts, "error": str(e.last_exception)},
            ) from e

    async def get_key(self, kid: str) -> Dict[str, Any]:
        """Fetch the key set and return the JWK whose `kid` matches."""
        for jwk in await self.fetch():
            if jwk.get("kid") == kid:
                return jwk
        raise UnknownKey(kid)

    async def _fetch_once(self) -> List[Dict[str, Any]]:
        headers = {"Accept": "application/json", "User-Agent": f"aicall-attest/{__version__}"}
        try:
            if self._client is not None:
                resp = await self._client.get(self.url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(self.url, headers=headers)
        except httpx.HTTPError as e:
            raise _FetchFailed(repr(e)) from e
        if not 200 <= resp.status_code < 300:
            raise _FetchFailed(f"HTTP {resp.status_code}")
        try:
            doc = resp.json()
        except ValueError as e:
            raise _FetchFailed("key set is not JSON") from e
        keys = doc.get("keys") if isinstance(doc, dict) else None
        if not isinstance(keys, list):
            raise _FetchFailed("key set has no 'keys' array")
        return [k for k in keys if isinstance(k, dict)]


__all__ = ["KeySetClient"]
