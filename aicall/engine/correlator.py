from __future__ import annotations

"""
aicall.engine.correlator
------------------------

Drives one AI request through its lifecycle:

    UPLOADING -> SUBMITTED -> POLLING -> RESOLVED | TIMED_OUT | CANCELLED | FAILED

1) upload the prompt to the content store and derive its digest from the key;
2) submit (model, digest) to the ledger and take the allocated id from the
   write outcome;
3) poll the ledger record on a PollSchedule until both result and report
   digests are set;
4) download result and report by digest; optionally verify the report.

The step methods (`upload`, `submit`, `wait_for_result`) raise AICallError
subclasses. `run` wraps them and always returns a RequestOutcome; timeouts
and cancellations are reported as resumable states, since the ledger may
still fulfill the request later (`resume`).

The engine keeps no per-request state, so independent requests may be run
concurrently on one instance (e.g. with asyncio.gather).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from aicall import metrics
from aicall.attest.verifier import AttestationVerifier, VerificationResult
from aicall.digest import digest_from_key, key_from_digest, to_hex
from aicall.errors import (AICallError, InvalidId, PreconditionError,
                           ProtocolViolation, RequestCancelled,
                           RequestTimedOut, ResultDownloadError,
                           TransientNetworkError)
from aicall.engine.schedule import (STOP_CANCELLED, Cancellation, Clock,
                                    MonotonicClock, PollPolicy, PollSchedule)
from aicall.ledger.client import LedgerClient
from aicall.store.client import ContentStoreClient

log = logging.getLogger(__name__)


class RequestState(str, Enum):
    UPLOADING = "uploading"
    SUBMITTED = "submitted"
    POLLING = "polling"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.RESOLVED, RequestState.TIMED_OUT, RequestState.CANCELLED, RequestState.FAILED)


@dataclass(frozen=True)
class Resolution:
    request_id: int
    result_digest: bytes
    report_digest: bytes
    result: bytes
    report: bytes
    attempts: int
    elapsed_s: float

    @property
    def result_text(self) -> str:
        return self.result.decode("utf-8", errors="replace")

    @property
    def report_text(self) -> str:
        return self.report.decode("utf-8", errors="replace")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "result_digest": to_hex(self.result_digest),
            "report_digest": to_hex(self.report_digest),
            "result": self.result_text,
            "report": self.report_text,
            "attempts": self.attempts,
            "elapsed_s": round(self.elapsed_s, 3),
        }


@dataclass
class RequestOutcome:
    state: RequestState
    request_id: Optional[int] = None
    prompt_digest: Optional[bytes] = None
    resolution: Optional[Resolution] = None
    attestation: Optional[VerificationResult] = None
    error: Optional[AICallError] = None
    elapsed_s: float = 0.0
    attempts: int = 0
    history: List[RequestState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is RequestState.RESOLVED

    @property
    def verified(self) -> bool:
        return self.attestation is not None and self.attestation.valid

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "request_id": self.request_id,
            "prompt_digest": to_hex(self.prompt_digest) if self.prompt_digest is not None else None,
            "resolution": self.resolution.to_dict() if self.resolution else None,
            "attestation": self.attestation.to_dict() if self.attestation else None,
            "error": self.error.to_dict() if self.error else None,
            "elapsed_s": round(self.elapsed_s, 3),
            "attempts": self.attempts,
            "history": [s.value for s in self.history],
        }


class CorrelationEngine:
    """
    Parameters
    ----------
    ledger : LedgerClient
        Local or HTTP ledger adapter, bound to the requesting identity.
    store : ContentStoreClient
        Content store for prompt upload and result/report download.
    verifier : AttestationVerifier, optional
        Used by `run(verify=True)`.
    policy : PollPolicy
        Default polling interval and maximum wait.
    clock : Clock
        Time source for polling; MonotonicClock by default.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: ContentStoreClient,
        *,
        verifier: Optional[AttestationVerifier] = None,
        policy: Optional[PollPolicy] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.verifier = verifier
        self.policy = policy or PollPolicy()
        self.clock: Clock = clock or MonotonicClock()

    # -------------------- steps --------------------

    async def upload(self, prompt: str) -> bytes:
        """Store `prompt`; returns the digest derived from the store key."""
        key = await self.store.put(prompt)
        try:
            digest = digest_from_key(key)
        except PreconditionError as e:
            raise ProtocolViolation(
                "content store key is not a 32-byte hex digest", details={"key": key[:80]}
            ) from e
        log.info("prompt uploaded: %s", to_hex(digest))
        return digest

    async def submit(self, model: str, prompt_digest: bytes) -> int:
        """Submit to the ledger; returns the allocated request id."""
        outcome = await self.ledger.submit(model, prompt_digest)
        if outcome.request_id is None:
            raise ProtocolViolation(
                "ledger write returned no request id",
                details={"events": [e.kind for e in outcome.events]},
            )
        log.info("request %d submitted (model=%s)", outcome.request_id, model)
        return int(outcome.request_id)

    async def wait_for_result(
        self,
        request_id: int,
        *,
        policy: Optional[PollPolicy] = None,
        cancel: Optional[Cancellation] = None,
    ) -> Resolution:
        """
        Poll until the request is fulfilled, then download result and report.

        Raises RequestTimedOut / RequestCancelled when polling stops first,
        InvalidId for an id the ledger never allocated and
        ResultDownloadError when the recorded digests cannot be fetched.
        """
        schedule = PollSchedule(policy or self.policy, self.clock, cancel)
        async for attempt in schedule:
            metrics.POLL_ATTEMPTS.inc()
            rec = await self.ledger.get(request_id)
            if rec is None:
                raise InvalidId(request_id)
            if rec.is_fulfilled:
                elapsed = schedule.elapsed
                metrics.RESOLVE_SECONDS.observe(elapsed)
                log.info("request %d fulfilled after %d checks (%.1fs)", request_id, attempt, elapsed)
                result, report = await self._download(request_id, rec.result_digest, rec.report_digest)
                return Resolution(
                    request_id=request_id,
                    result_digest=rec.result_digest,
                    report_digest=rec.report_digest,
                    result=result,
                    report=report,
                    attempts=attempt,
                    elapsed_s=elapsed,
                )
            log.debug("request %d still pending (%ds elapsed)", request_id, int(schedule.elapsed))

        if schedule.stop_reason == STOP_CANCELLED:
            reason = cancel.reason if cancel is not None and cancel.reason else "cancelled"
            raise RequestCancelled(
                request_id=request_id, elapsed_s=schedule.elapsed, attempts=schedule.attempts, reason=reason
            )
        raise RequestTimedOut(request_id=request_id, elapsed_s=schedule.elapsed, attempts=schedule.attempts)

    async def resume(
        self,
        request_id: int,
        *,
        policy: Optional[PollPolicy] = None,
        cancel: Optional[Cancellation] = None,
    ) -> Resolution:
        """Continue waiting on a request that timed out or was cancelled earlier."""
        return await self.wait_for_result(request_id, policy=policy, cancel=cancel)

    async def verify(self, report: bytes) -> VerificationResult:
        if self.verifier is None:
            raise PreconditionError("no attestation verifier configured")
        return await self.verifier.verify(report.decode("utf-8", errors="replace").strip())

    # -------------------- lifecycle --------------------

    async def run(
        self,
        prompt: str,
        model: str,
        *,
        wait: bool = True,
        verify: bool = False,
        policy: Optional[PollPolicy] = None,
        cancel: Optional[Cancellation] = None,
    ) -> RequestOutcome:
        started = self.clock.now()
        out = RequestOutcome(state=RequestState.UPLOADING, history=[RequestState.UPLOADING])

        def _enter(state: RequestState) -> None:
            out.state = state
            out.history.append(state)

        try:
            out.prompt_digest = await self.upload(prompt)
            out.request_id = await self.submit(model, out.prompt_digest)
            _enter(RequestState.SUBMITTED)
            if wait:
                _enter(RequestState.POLLING)
                out.resolution = await self.wait_for_result(out.request_id, policy=policy, cancel=cancel)
                out.attempts = out.resolution.attempts
                _enter(RequestState.RESOLVED)
        except RequestCancelled as e:
            out.error, out.attempts = e, e.attempts
            _enter(RequestState.CANCELLED)
        except RequestTimedOut as e:
            out.error, out.attempts = e, e.attempts
            _enter(RequestState.TIMED_OUT)
        except AICallError as e:
            out.error = e
            _enter(RequestState.FAILED)
            log.warning("request %s failed: %s", out.request_id, e)

        if out.resolution is not None and verify:
            try:
                out.attestation = await self.verify(out.resolution.report)
            except AICallError as e:
                out.error = e
                log.warning("attestation for request %d could not be checked: %s", out.request_id, e)

        out.elapsed_s = self.clock.now() - started
        metrics.ENGINE_OUTCOMES.labels(state=out.state.value).inc()
        return out

    # -------------------- internals --------------------

    async def _download(self, request_id: int, result_digest: bytes, report_digest: bytes) -> tuple[bytes, bytes]:
        try:
            result = await self.store.get(key_from_digest(result_digest))
            report = await self.store.get(key_from_digest(report_digest))
        except (TransientNetworkError, PreconditionError) as e:
            raise ResultDownloadError(
                "fulfilled request payloads could not be downloaded",
                details={
                    "request_id": request_id,
                    "result_digest": to_hex(result_digest),
                    "report_digest": to_hex(report_digest),
                    "error": str(e),
                },
            ) from e
        return result, report


__all__ = ["RequestState", "Resolution", "RequestOutcome", "CorrelationEngine"]
