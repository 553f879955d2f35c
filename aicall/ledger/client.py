from __future__ import annotations

"""
aicall.ledger.client
--------------------

Async adapters the correlation engine and CLI use to talk to a ledger.

- LedgerClient        : the protocol (submit / get / is_model_supported / list_models)
- LocalLedgerClient   : wraps an in-process RequestLedger for one caller identity
- HttpLedgerClient    : talks to `aicall.ledger.server` over HTTP (httpx)

HTTP error bodies ({"code","message","details"}) are mapped back onto the
same exception classes the in-process ledger raises, so callers handle both
transports identically. Reads are retried with bounded backoff; writes are
sent once, since a write that reached the ledger must not be replayed.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable
from urllib.parse import quote

import httpx

from aicall.digest import DigestLike, as_digest, to_hex
from aicall.errors import (AICallError, LedgerUnavailable, PreconditionError,
                           ProtocolViolation, error_from_dict)
from aicall.ledger.ledger import RequestLedger
from aicall.ledger.types import LedgerEvent, RequestRecord, TxOutcome, event_from_dict
from aicall.utils.retry import RetryError, RetryPolicy, aretry_call
from aicall.version import __version__

log = logging.getLogger(__name__)

CALLER_HEADER = "X-AICall-Caller"

T = TypeVar("T")


@runtime_checkable
class LedgerClient(Protocol):
    async def submit(self, model: str, prompt_digest: DigestLike) -> TxOutcome: ...

    async def get(self, request_id: int) -> Optional[RequestRecord]: ...

    async def is_model_supported(self, name: str) -> bool: ...

    async def list_models(self) -> List[str]: ...


class LocalLedgerClient:
    """Bind an in-process ledger to one caller identity."""

    def __init__(self, ledger: RequestLedger, caller: str) -> None:
        self.ledger = ledger
        self.caller = caller

    async def submit(self, model: str, prompt_digest: DigestLike) -> TxOutcome:
        return self.ledger.submit(self.caller, model, prompt_digest)

    async def fulfill(self, request_id: int, result_digest: DigestLike, report_digest: DigestLike) -> TxOutcome:
        return self.ledger.fulfill(self.caller, request_id, result_digest, report_digest)

    async def get(self, request_id: int) -> Optional[RequestRecord]:
        return self.ledger.get(request_id)

    async def is_model_supported(self, name: str) -> bool:
        return self.ledger.is_model_supported(name)

    async def list_models(self) -> List[str]:
        return self.ledger.list_models()

    async def events(self, since: int = 0) -> List[LedgerEvent]:
        return self.ledger.events(since)


class _Retryable(Exception):
    """Internal marker: transport failure or 5xx worth another attempt."""


class HttpLedgerClient:
    """
    httpx-backed ledger client.

    Parameters
    ----------
    base_url : str
        Ledger service root, e.g. "http://127.0.0.1:8600".
    caller : str
        Identity sent in the X-AICall-Caller header on writes.
    timeout : float
        Per-request timeout, seconds.
    policy : RetryPolicy
        Backoff used for reads.
    client : httpx.AsyncClient, optional
        Shared client (tests pass one built on ASGITransport). When omitted
        the instance owns a client and `aclose()` releases it.
    """

    def __init__(
        self,
        base_url: str,
        caller: str = "",
        *,
        timeout: float = 10.0,
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.caller = caller
        self.policy = policy or RetryPolicy(attempts=3, base=0.5, max_delay=4.0)
        self._headers = {"Accept": "application/json", "User-Agent": f"aicall-ledger/{__version__}"}
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpLedgerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --- reads

    async def get(self, request_id: int) -> Optional[RequestRecord]:
        resp = await self._read("GET", f"/requests/{int(request_id)}", allow_404=True)
        if resp is None:
            return None
        return self._parse(RequestRecord.from_dict, self._json(resp), "record")

    async def is_model_supported(self, name: str) -> bool:
        resp = await self._read("GET", f"/models/{quote(name, safe='')}")
        return bool(self._json(resp).get("supported"))

    async def list_models(self) -> List[str]:
        resp = await self._read("GET", "/models")
        return [str(m) for m in self._json(resp).get("models") or []]

    async def events(self, since: int = 0) -> List[LedgerEvent]:
        resp = await self._read("GET", "/events", params={"since": int(since)})
        evs = self._json(resp).get("events") or []
        return self._parse(lambda items: [event_from_dict(e) for e in items], evs, "event list")

    async def health(self) -> Dict[str, Any]:
        resp = await self._read("GET", "/health")
        return self._json(resp)

    # --- writes

    async def submit(self, model: str, prompt_digest: DigestLike) -> TxOutcome:
        body = {"model": model, "prompt_digest": to_hex(as_digest(prompt_digest, field="prompt_digest"))}
        resp = await self._write("POST", "/requests", body)
        return self._parse(TxOutcome.from_dict, self._json(resp), "write outcome")

    async def fulfill(self, request_id: int, result_digest: DigestLike, report_digest: DigestLike) -> TxOutcome:
        body = {
            "result_digest": to_hex(as_digest(result_digest, field="result_digest")),
            "report_digest": to_hex(as_digest(report_digest, field="report_digest")),
        }
        resp = await self._write("POST", f"/requests/{int(request_id)}/fulfill", body)
        return self._parse(TxOutcome.from_dict, self._json(resp), "write outcome")

    # --- plumbing

    async def _read(self, method: str, path: str, *, allow_404: bool = False, **kw: Any) -> Optional[httpx.Response]:
        async def _once() -> httpx.Response:
            try:
                resp = await self._client.request(method, self.base_url + path, headers=self._headers, **kw)
            except httpx.HTTPError as e:
                raise _Retryable(repr(e)) from e
            if resp.status_code >= 500:
                raise _Retryable(f"HTTP {resp.status_code}")
            return resp

        try:
            resp = await aretry_call(_once, policy=self.policy, exceptions=_Retryable)
        except RetryError as e:
            raise LedgerUnavailable(
                f"ledger {method} {path} failed",
                details={"attempts": e.attempts, "error": str(e.last_exception)},
            ) from e
        if allow_404 and resp.status_code == 404:
            return None
        self._raise_for_error(resp)
        return resp

    async def _write(self, method: str, path: str, body: Dict[str, Any]) -> httpx.Response:
        try:
            headers = dict(self._headers, **{CALLER_HEADER: self.caller})
            resp = await self._client.request(method, self.base_url + path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"ledger {method} {path} failed", details={"error": repr(e)}) from e
        if resp.status_code >= 500:
            raise LedgerUnavailable(f"ledger {method} {path} failed", details={"status": resp.status_code})
        self._raise_for_error(resp)
        return resp

    @staticmethod
    def _raise_for_error(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("code"):
            raise error_from_dict(payload)
        raise AICallError(
            f"ledger returned HTTP {resp.status_code}",
            details={"status": resp.status_code, "body": resp.text[:200]},
        )

    @staticmethod
    def _parse(build: Callable[[Any], T], data: Any, what: str) -> T:
        try:
            return build(data)
        except (KeyError, ValueError, TypeError, AttributeError, PreconditionError) as e:
            raise ProtocolViolation(
                f"ledger answered with a malformed {what}", details={"error": repr(e)}
            ) from e

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolViolation("ledger answered with non-JSON body") from e
        if not isinstance(data, dict):
            raise ProtocolViolation("ledger answered with non-object JSON")
        return data


__all__ = ["LedgerClient", "LocalLedgerClient", "HttpLedgerClient", "CALLER_HEADER"]
