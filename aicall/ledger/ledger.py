from __future__ import annotations

"""
aicall.ledger.ledger
--------------------

Authoritative record of AI requests and their fulfillment.

The ledger owns:
- request records, keyed by an id allocated from 1 upwards and never reused;
- the model whitelist (checked at submission time only);
- two authorities: the administrative authority (whitelist edits, authority
  changes) and the fulfillment authority (the only caller allowed to fulfill);
- an append-only event log with monotonically increasing sequence numbers.

Every write holds one re-entrant lock for its whole duration and is either
fully applied (state + events) or rejected with an AICallError and no side
effects. Writes return a TxOutcome listing the events they emitted.

Callers are plain identity strings. Signing and custody of those identities
is out of scope here; transports authenticate (or trust) them before calling
in.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from aicall import metrics
from aicall.digest import DigestLike, as_digest, is_zero
from aicall.errors import (AICallError, AlreadyFulfilled, EmptyDigest, InvalidId,
                           NotAuthorized, PreconditionError, UnknownModel,
                           UnsupportedModel, ZeroAddress)
from aicall.ledger.registry import ModelRegistry
from aicall.ledger.types import (AdminChanged, Fulfilled,
                                 FulfillmentAuthorityChanged, LedgerEvent,
                                 ModelAdded, ModelRemoved, RequestRecord,
                                 Requested, TxOutcome)

log = logging.getLogger(__name__)

Subscriber = Callable[[LedgerEvent], None]


def _require_identity(value: Optional[str], role: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ZeroAddress(role)
    return value


class RequestLedger:
    """
    In-process request ledger.

    Parameters
    ----------
    admin : str
        Administrative authority identity.
    fulfillment_authority : str
        Identity allowed to call `fulfill`.
    models : Iterable[str]
        Initial whitelist; no events are emitted for these.
    """

    def __init__(self, *, admin: str, fulfillment_authority: str, models: Iterable[str] = ()) -> None:
        self._admin = _require_identity(admin, "admin")
        self._fulfiller = _require_identity(fulfillment_authority, "fulfillment_authority")
        self._registry = ModelRegistry(m for m in models if m)
        self._records: Dict[int, RequestRecord] = {}
        self._next_id = 1
        self._events: List[LedgerEvent] = []
        self._subscribers: List[Subscriber] = []
        self._lock = threading.RLock()

    # -------------------- read accessors --------------------

    @property
    def admin(self) -> str:
        return self._admin

    @property
    def fulfillment_authority(self) -> str:
        return self._fulfiller

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def request_count(self) -> int:
        return len(self._records)

    def get(self, request_id: int) -> Optional[RequestRecord]:
        with self._lock:
            return self._records.get(int(request_id))

    def is_model_supported(self, name: str) -> bool:
        with self._lock:
            return name in self._registry

    def list_models(self) -> List[str]:
        with self._lock:
            return self._registry.names()

    def events(self, since: int = 0) -> List[LedgerEvent]:
        """Events with sequence number strictly greater than `since`."""
        with self._lock:
            return [e for e in self._events if e.seq > since]

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for every future event. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    # -------------------- writes --------------------

    def submit(self, caller: str, model: str, prompt_digest: DigestLike) -> TxOutcome:
        with self._lock, self._rejections("submit"):
            requester = _require_identity(caller, "requester")
            if model not in self._registry:
                raise UnsupportedModel(model)
            digest = as_digest(prompt_digest, field="prompt_digest")
            if is_zero(digest):
                raise EmptyDigest("prompt_digest")

            rid = self._next_id
            self._next_id += 1
            self._records[rid] = RequestRecord(
                id=rid, requester=requester, model=model, prompt_digest=digest
            )
            ev = self._emit(Requested, id=rid, requester=requester, model=model, prompt_digest=digest)
            metrics.REQUESTS_SUBMITTED.labels(model=model).inc()
            log.info("request %d submitted by %s for model %s", rid, requester, model)
            return self._outcome([ev], request_id=rid)

    def fulfill(
        self,
        caller: str,
        request_id: int,
        result_digest: DigestLike,
        report_digest: DigestLike,
    ) -> TxOutcome:
        with self._lock, self._rejections("fulfill"):
            if caller != self._fulfiller:
                raise NotAuthorized("fulfillment_authority", caller)
            rid = int(request_id)
            rec = self._records.get(rid)
            if rec is None:
                raise InvalidId(rid, self._next_id)
            if not is_zero(rec.result_digest):
                raise AlreadyFulfilled(rid)
            result = as_digest(result_digest, field="result_digest")
            report = as_digest(report_digest, field="report_digest")
            if is_zero(result):
                raise EmptyDigest("result_digest")
            if is_zero(report):
                raise EmptyDigest("report_digest")

            self._records[rid] = RequestRecord(
                id=rec.id,
                requester=rec.requester,
                model=rec.model,
                prompt_digest=rec.prompt_digest,
                result_digest=result,
                report_digest=report,
            )
            ev = self._emit(Fulfilled, id=rid, result_digest=result, report_digest=report)
            metrics.REQUESTS_FULFILLED.inc()
            log.info("request %d fulfilled", rid)
            return self._outcome([ev])

    def add_model(self, caller: str, name: str) -> TxOutcome:
        return self.add_models(caller, [name])

    def add_models(self, caller: str, names: Iterable[str]) -> TxOutcome:
        """Whitelist `names`. Names already present are skipped without an event."""
        batch = list(names)
        with self._lock, self._rejections("add_models"):
            self._require_admin(caller)
            for n in batch:
                if not isinstance(n, str) or not n:
                    raise PreconditionError("model name must be non-empty", details={"field": "name"})
            events: List[LedgerEvent] = []
            for n in batch:
                if self._registry.add(n):
                    events.append(self._emit(ModelAdded, name=n))
                    metrics.REGISTRY_CHANGES.labels(action="add").inc()
            if events:
                log.info("models added: %s", ", ".join(e.name for e in events))  # type: ignore[union-attr]
            return self._outcome(events)

    def remove_model(self, caller: str, name: str) -> TxOutcome:
        return self.remove_models(caller, [name])

    def remove_models(self, caller: str, names: Iterable[str]) -> TxOutcome:
        """De-whitelist `names`. Any absent name rejects the whole batch."""
        batch = list(dict.fromkeys(names))
        with self._lock, self._rejections("remove_models"):
            self._require_admin(caller)
            for n in batch:
                if n not in self._registry:
                    raise UnknownModel(n)
            events: List[LedgerEvent] = []
            for n in batch:
                self._registry.remove(n)
                events.append(self._emit(ModelRemoved, name=n))
                metrics.REGISTRY_CHANGES.labels(action="remove").inc()
            if events:
                log.info("models removed: %s", ", ".join(batch))
            return self._outcome(events)

    def set_fulfillment_authority(self, caller: str, new: str) -> TxOutcome:
        with self._lock, self._rejections("set_fulfillment_authority"):
            self._require_admin(caller)
            new = _require_identity(new, "fulfillment_authority")
            previous, self._fulfiller = self._fulfiller, new
            ev = self._emit(FulfillmentAuthorityChanged, previous=previous, new=new)
            log.warning("fulfillment authority changed %s -> %s", previous, new)
            return self._outcome([ev])

    def transfer_admin(self, caller: str, new: str) -> TxOutcome:
        with self._lock, self._rejections("transfer_admin"):
            self._require_admin(caller)
            new = _require_identity(new, "admin")
            previous, self._admin = self._admin, new
            ev = self._emit(AdminChanged, previous=previous, new=new)
            log.warning("admin transferred %s -> %s", previous, new)
            return self._outcome([ev])

    # -------------------- internals --------------------

    def _require_admin(self, caller: str) -> None:
        if caller != self._admin:
            raise NotAuthorized("admin", caller)

    def _emit(self, cls, **fields) -> LedgerEvent:
        ev = cls(seq=len(self._events) + 1, **fields)
        self._events.append(ev)
        return ev

    def _outcome(self, events: List[LedgerEvent], request_id: Optional[int] = None) -> TxOutcome:
        for ev in events:
            for cb in list(self._subscribers):
                try:
                    cb(ev)
                except Exception:
                    log.exception("ledger subscriber failed on %s #%d", ev.kind, ev.seq)
        return TxOutcome(events=list(events), request_id=request_id)

    def _rejections(self, op: str) -> "_RejectionCounter":
        return _RejectionCounter(op)


class _RejectionCounter:
    """Counts AICallErrors leaving a write; never suppresses them."""

    __slots__ = ("op",)

    def __init__(self, op: str) -> None:
        self.op = op

    def __enter__(self) -> "_RejectionCounter":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and isinstance(exc, AICallError):
            metrics.LEDGER_REJECTIONS.labels(op=self.op, code=exc.code).inc()
            log.debug("ledger %s rejected: %s", self.op, exc)
        return False


__all__ = ["RequestLedger", "Subscriber"]
