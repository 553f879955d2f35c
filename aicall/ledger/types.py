from __future__ import annotations

"""
aicall.ledger.types
-------------------

Record, event and write-outcome types owned by the request ledger.

Digests are carried as raw 32-byte values internally and rendered as
0x-hex in `to_dict()` forms, which are what the HTTP surface and the CLI
emit.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from aicall.digest import ZERO_DIGEST, as_digest, is_zero, to_hex


class RequestStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"


@dataclass(frozen=True)
class RequestRecord:
    """
    One request as stored on the ledger.

    `result_digest` and `report_digest` stay zero until fulfillment and are
    immutable afterwards.
    """

    id: int
    requester: str
    model: str
    prompt_digest: bytes
    result_digest: bytes = ZERO_DIGEST
    report_digest: bytes = ZERO_DIGEST

    @property
    def status(self) -> RequestStatus:
        return RequestStatus.PENDING if is_zero(self.result_digest) else RequestStatus.FULFILLED

    @property
    def is_fulfilled(self) -> bool:
        """Both digests are set. A result without a report is still pending for clients."""
        return not is_zero(self.result_digest) and not is_zero(self.report_digest)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requester": self.requester,
            "model": self.model,
            "prompt_digest": to_hex(self.prompt_digest),
            "result_digest": to_hex(self.result_digest),
            "report_digest": to_hex(self.report_digest),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RequestRecord":
        return cls(
            id=int(d["id"]),
            requester=str(d.get("requester") or ""),
            model=str(d["model"]),
            prompt_digest=as_digest(d["prompt_digest"], field="prompt_digest"),
            result_digest=as_digest(d.get("result_digest") or ZERO_DIGEST, field="result_digest"),
            report_digest=as_digest(d.get("report_digest") or ZERO_DIGEST, field="report_digest"),
        )


# ────────────────────────────────────────────────────────────────────────────────
# Events
# ────────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Requested:
    seq: int
    id: int
    requester: str
    model: str
    prompt_digest: bytes

    kind = "Requested"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "seq": self.seq,
            "id": self.id,
            "requester": self.requester,
            "model": self.model,
            "prompt_digest": to_hex(self.prompt_digest),
        }


@dataclass(frozen=True)
class Fulfilled:
    seq: int
    id: int
    result_digest: bytes
    report_digest: bytes

    kind = "Fulfilled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "seq": self.seq,
            "id": self.id,
            "result_digest": to_hex(self.result_digest),
            "report_digest": to_hex(self.report_digest),
        }


@dataclass(frozen=True)
class ModelAdded:
    seq: int
    name: str

    kind = "ModelAdded"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "seq": self.seq, "name": self.name}


@dataclass(frozen=True)
class ModelRemoved:
    seq: int
    name: str

    kind = "ModelRemoved"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "seq": self.seq, "name": self.name}


@dataclass(frozen=True)
class FulfillmentAuthorityChanged:
    seq: int
    previous: str
    new: str

    kind = "FulfillmentAuthorityChanged"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "seq": self.seq, "previous": self.previous, "new": self.new}


@dataclass(frozen=True)
class AdminChanged:
    seq: int
    previous: str
    new: str

    kind = "AdminChanged"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "seq": self.seq, "previous": self.previous, "new": self.new}


LedgerEvent = Union[
    Requested,
    Fulfilled,
    ModelAdded,
    ModelRemoved,
    FulfillmentAuthorityChanged,
    AdminChanged,
]

_EVENT_TYPES = {
    cls.kind: cls
    for cls in (Requested, Fulfilled, ModelAdded, ModelRemoved, FulfillmentAuthorityChanged, AdminChanged)
}

_DIGEST_FIELDS = ("prompt_digest", "result_digest", "report_digest")


def event_from_dict(d: Mapping[str, Any]) -> LedgerEvent:
    kind = d.get("kind")
    cls = _EVENT_TYPES.get(str(kind))
    if cls is None:
        raise ValueError(f"unknown ledger event kind: {kind!r}")
    kwargs = {k: v for k, v in d.items() if k != "kind"}
    for f in _DIGEST_FIELDS:
        if f in kwargs:
            kwargs[f] = as_digest(kwargs[f], field=f)
    return cls(**kwargs)  # type: ignore[arg-type]


@dataclass(frozen=True)
class TxOutcome:
    """Events emitted by one ledger write, plus the id it allocated (submit only)."""

    events: List[LedgerEvent] = field(default_factory=list)
    request_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "events": [e.to_dict() for e in self.events],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TxOutcome":
        rid = d.get("request_id")
        return cls(
            events=[event_from_dict(e) for e in d.get("events") or []],
            request_id=int(rid) if rid is not None else None,
        )


__all__ = [
    "RequestStatus",
    "RequestRecord",
    "Requested",
    "Fulfilled",
    "ModelAdded",
    "ModelRemoved",
    "FulfillmentAuthorityChanged",
    "AdminChanged",
    "LedgerEvent",
    "event_from_dict",
    "TxOutcome",
]
