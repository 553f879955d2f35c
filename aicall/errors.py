"""
aicall.errors
-------------

Exception hierarchy for the aicall request/fulfillment protocol.

Errors are grouped by how a caller should react to them:

- PreconditionError     bad input (empty content, zero digest, malformed
                        token). Surfaced immediately, never retried.
- LedgerError           ledger-state violations (unsupported/unknown model,
                        already fulfilled, invalid id, not authorized).
                        Surfaced immediately, never retried.
- TransientNetworkError store, key-set or ledger endpoint unreachable, timed
                        out or answering badly. Retried with bounded backoff,
                        then surfaced.
- RequestTimedOut /     polling stopped before the request was fulfilled.
  RequestCancelled      Resumable: the ledger may still fulfill it later.
- ProtocolViolation /   terminal engine failures that are not ledger-state
  ResultDownloadError   errors.

Every error carries a stable upper-snake `code`, a human message and a
`details` dict that is safe to log or send over HTTP (`to_dict()`).
`error_from_dict()` is the inverse used by transport clients.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional, Type


class AICallError(Exception):
    """Base class for all aicall errors."""

    code: str = "AICALL_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str = "",
        *,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.message = message or self.__class__.__name__
        self.details = dict(details or {})
        super().__init__(self.__str__())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:  # pragma: no cover - trivial
        if self.details:
            try:
                packed = json.dumps(self.details, sort_keys=True, separators=(",", ":"), default=str)
            except Exception:
                packed = str(self.details)
            return f"{self.code}: {self.message} [{packed}]"
        return f"{self.code}: {self.message}"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class PreconditionError(AICallError):
    """Bad input detected before any state change or network call."""

    code = "PRECONDITION_FAILED"


class EmptyDigest(PreconditionError):
    code = "EMPTY_DIGEST"

    def __init__(self, field: str = "digest", message: str = "digest must be non-zero") -> None:
        super().__init__(message, details={"field": field})


class ZeroAddress(PreconditionError):
    code = "ZERO_ADDRESS"

    def __init__(self, role: str, message: str = "identity must be non-empty") -> None:
        super().__init__(message, details={"role": role})


class MalformedToken(PreconditionError):
    code = "MALFORMED_TOKEN"

    def __init__(self, reason: str) -> None:
        super().__init__("malformed attestation token", details={"reason": reason})


# ---------------------------------------------------------------------------
# Ledger state
# ---------------------------------------------------------------------------


class LedgerError(AICallError):
    """The ledger rejected a write (or read) because of its current state."""

    code = "LEDGER_ERROR"


class UnsupportedModel(LedgerError):
    code = "UNSUPPORTED_MODEL"

    def __init__(self, model: str) -> None:
        super().__init__(f"model {model!r} is not whitelisted", details={"model": model})


class UnknownModel(LedgerError):
    code = "UNKNOWN_MODEL"

    def __init__(self, model: str) -> None:
        super().__init__(f"model {model!r} is not registered", details={"model": model})


class AlreadyFulfilled(LedgerError):
    code = "ALREADY_FULFILLED"

    def __init__(self, request_id: int) -> None:
        super().__init__("request already fulfilled", details={"request_id": int(request_id)})


class InvalidId(LedgerError):
    code = "INVALID_ID"

    def __init__(self, request_id: int, next_id: Optional[int] = None) -> None:
        d: Dict[str, Any] = {"request_id": int(request_id)}
        if next_id is not None:
            d["next_id"] = int(next_id)
        super().__init__("request id was never allocated", details=d)


class NotAuthorized(LedgerError):
    code = "NOT_AUTHORIZED"

    def __init__(self, role: str, caller: Optional[str] = None) -> None:
        super().__init__(f"caller is not the {role}", details={"role": role, "caller": caller})


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class TransientNetworkError(AICallError):
    """Remote endpoint unreachable, timed out, or returned a bad response."""

    code = "TRANSIENT_NETWORK_ERROR"
    retryable = True


class ContentStoreError(TransientNetworkError):
    code = "CONTENT_STORE_ERROR"


class KeySetUnavailable(TransientNetworkError):
    code = "KEY_SET_UNAVAILABLE"


class LedgerUnavailable(TransientNetworkError):
    code = "LEDGER_UNAVAILABLE"


# ---------------------------------------------------------------------------
# Attestation
# ---------------------------------------------------------------------------


class UnknownKey(AICallError):
    """The key set has no entry for the token's key identifier."""

    code = "UNKNOWN_KEY"

    def __init__(self, kid: str) -> None:
        super().__init__(f"no key with kid {kid!r} in key set", details={"kid": kid})


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ProtocolViolation(AICallError):
    """A collaborator answered successfully but not in the shape the protocol requires."""

    code = "PROTOCOL_VIOLATION"


class ResultDownloadError(AICallError):
    """Ledger says fulfilled, but result/report bytes could not be fetched."""

    code = "RESULT_DOWNLOAD_FAILED"
    retryable = True


class RequestTimedOut(AICallError):
    """Polling exceeded its maximum wait. The request may still be fulfilled later."""

    code = "REQUEST_TIMED_OUT"
    retryable = True

    def __init__(self, *, request_id: int, elapsed_s: float, attempts: int) -> None:
        super().__init__(
            f"request {request_id} not fulfilled after {elapsed_s:.1f}s",
            details={
                "request_id": int(request_id),
                "elapsed_s": round(float(elapsed_s), 3),
                "attempts": int(attempts),
            },
        )
        self.request_id = int(request_id)
        self.elapsed_s = float(elapsed_s)
        self.attempts = int(attempts)


class RequestCancelled(RequestTimedOut):
    """Polling was stopped by an external cancellation signal."""

    code = "REQUEST_CANCELLED"

    def __init__(self, *, request_id: int, elapsed_s: float, attempts: int, reason: str = "cancelled") -> None:
        super().__init__(request_id=request_id, elapsed_s=elapsed_s, attempts=attempts)
        self.message = f"polling for request {request_id} {reason}"
        self.details["reason"] = reason
        self.args = (self.__str__(),)


_BY_CODE: Dict[str, Type[AICallError]] = {
    cls.code: cls
    for cls in (
        AICallError,
        PreconditionError,
        EmptyDigest,
        ZeroAddress,
        MalformedToken,
        LedgerError,
        UnsupportedModel,
        UnknownModel,
        AlreadyFulfilled,
        InvalidId,
        NotAuthorized,
        TransientNetworkError,
        ContentStoreError,
        KeySetUnavailable,
        LedgerUnavailable,
        UnknownKey,
        ProtocolViolation,
        ResultDownloadError,
    )
}


def error_from_dict(obj: Mapping[str, Any]) -> AICallError:
    """
    Rebuild an error from its `to_dict()` form.

    Classes with bespoke constructors are rebuilt through the base constructor
    so the transported message and details survive unchanged.
    """
    code = str(obj.get("code") or AICallError.code)
    cls = _BY_CODE.get(code, AICallError)
    err = cls.__new__(cls)
    AICallError.__init__(err, str(obj.get("message") or ""), details=obj.get("details") or {})
    return err


__all__ = [
    "AICallError",
    "PreconditionError",
    "EmptyDigest",
    "ZeroAddress",
    "MalformedToken",
    "LedgerError",
    "UnsupportedModel",
    "UnknownModel",
    "AlreadyFulfilled",
    "InvalidId",
    "NotAuthorized",
    "TransientNetworkError",
    "ContentStoreError",
    "KeySetUnavailable",
    "LedgerUnavailable",
    "UnknownKey",
    "ProtocolViolation",
    "ResultDownloadError",
    "RequestTimedOut",
    "RequestCancelled",
    "error_from_dict",
]
