"""
aicall.attest
=============

Attestation report verification: compact JWS checks against a rotating key set.
"""

from __future__ import annotations

from .jwks import KeySetClient
from .jws import CompactJWS, KeyLoadError, load_public_key, parse_compact, verify_signature
from .verifier import AttestationVerifier, VerificationResult

__all__ = [
    "AttestationVerifier",
    "VerificationResult",
    "KeySetClient",
    "CompactJWS",
    "KeyLoadError",
    "parse_compact",
    "load_public_key",
    "verify_signature",
]
