from __future__ import annotations

"""
aicall.attest.verifier
----------------------

Verifies attestation reports: compact JWS tokens signed by a rotating key
set.

Flow
~~~~
1) parse the token; header must carry `kid` and `alg`       -> MalformedToken
2) fetch the key set and select the key by `kid`            -> KeySetUnavailable / UnknownKey
3) decode the payload without verification; its numeric
   `iat` is the reference time for claim checks             -> MalformedToken
4) verify the signature, then `exp` / `nbf` against `iat`
5) return VerificationResult

Time claims are judged at the token's own issue time, not the local clock:
reports are checked long after they were produced, and what matters is
that the key set vouches for the report as it was issued.

A bad or undecodable signature, an unusable key or a failed claim is a
normal outcome (`valid=False` with a reason). Structural and key-set
problems raise.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aicall import metrics
from aicall.attest.jwks import KeySetClient
from aicall.attest.jws import KeyLoadError, load_public_key, parse_compact, verify_signature
from aicall.errors import AICallError, MalformedToken

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    header: Dict[str, Any]
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "header": self.header, "payload": self.payload, "reason": self.reason}


def _numeric(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


class AttestationVerifier:
    def __init__(self, keys: KeySetClient, *, leeway_s: float = 0.0) -> None:
        self.keys = keys
        self.leeway_s = float(leeway_s)

    async def verify(self, token: str) -> VerificationResult:
        try:
            res = await self._verify(token)
        except AICallError:
            metrics.ATTESTATIONS.labels(result="error").inc()
            raise
        metrics.ATTESTATIONS.labels(result="valid" if res.valid else "rejected").inc()
        if not res.valid:
            log.info("attestation rejected (kid=%s): %s", res.header.get("kid"), res.reason)
        return res

    async def _verify(self, token: str) -> VerificationResult:
        jws = parse_compact(token)
        jwk = await self.keys.get_key(jws.kid)

        payload = jws.payload_unverified()
        iat = payload.get("iat")
        if not _numeric(iat):
            raise MalformedToken("payload 'iat' must be a number")
        reference = float(iat)

        try:
            signature = jws.signature()
        except MalformedToken:
            return VerificationResult(False, jws.header, None, "signature is not valid base64url")

        try:
            key = load_public_key(jwk, jws.alg)
            ok = verify_signature(key, jws.alg, jws.signing_input, signature)
        except KeyLoadError as e:
            return VerificationResult(False, jws.header, None, f"key not usable for {jws.alg}: {e}")
        if not ok:
            return VerificationResult(False, jws.header, None, "signature verification failed")

        exp = payload.get("exp")
        if exp is not None:
            if not _numeric(exp):
                return VerificationResult(False, jws.header, None, "'exp' claim must be a number")
            if float(exp) <= reference - self.leeway_s:
                return VerificationResult(False, jws.header, None, "token expired at issue time")
        nbf = payload.get("nbf")
        if nbf is not None:
            if not _numeric(nbf):
                return VerificationResult(False, jws.header, None, "'nbf' claim must be a number")
            if float(nbf) > reference + self.leeway_s:
                return VerificationResult(False, jws.header, None, "token not yet valid at issue time")

        return VerificationResult(True, jws.header, payload, None)


__all__ = ["AttestationVerifier", "VerificationResult"]
