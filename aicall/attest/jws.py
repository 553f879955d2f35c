from __future__ import annotations

"""
Compact JWS parsing and signature checks.

Supports the algorithms an attestation service is expected to sign with:

  RS256 / RS384 / RS512   RSASSA-PKCS1-v1_5
  PS256 / PS384 / PS512   RSASSA-PSS (MGF1, salt = digest length)
  ES256 / ES384 / ES512   ECDSA on P-256 / P-384 / P-521 (raw r||s signatures)
  EdDSA                   Ed25519 or Ed448 (JWK "crv")

Public keys are built from JWKs with `cryptography`. Nothing here does
network I/O; see aicall.attest.jwks for fetching key sets.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from aicall.errors import MalformedToken

PublicKey = Union[
    rsa.RSAPublicKey,
    ec.EllipticCurvePublicKey,
    ed25519.Ed25519PublicKey,
    ed448.Ed448PublicKey,
]

_HASHES = {"256": hashes.SHA256, "384": hashes.SHA384, "512": hashes.SHA512}

_EC_CURVES = {
    "ES256": ("P-256", ec.SECP256R1, 32),
    "ES384": ("P-384", ec.SECP384R1, 48),
    "ES512": ("P-521", ec.SECP521R1, 66),
}

SUPPORTED_ALGS = frozenset(
    ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"]
)


class KeyLoadError(ValueError):
    """A JWK cannot be used for the requested algorithm."""


def b64url_decode(data: str) -> bytes:
    pad = "=" * ((4 - len(data) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(data + pad)
    except (binascii.Error, ValueError) as e:
        raise MalformedToken(f"invalid base64url segment: {e}") from e


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode_strict(data: str) -> bytes:
    """
    Decode only the canonical unpadded base64url form of `data`.

    The plain decoder ignores unused low bits in the final character, so two
    different segments can map to the same bytes. Raises MalformedToken for
    anything `b64url_encode` would not have produced.
    """
    raw = b64url_decode(data)
    if b64url_encode(raw) != data:
        raise MalformedToken("segment is not canonical base64url")
    return raw


def _decode_json_segment(seg: str, what: str) -> Any:
    raw = b64url_decode(seg)
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedToken(f"{what} is not valid JSON") from e


@dataclass(frozen=True)
class CompactJWS:
    token: str
    header: Dict[str, Any]
    payload_b64: str
    signature_b64: str

    @property
    def kid(self) -> str:
        return str(self.header["kid"])

    @property
    def alg(self) -> str:
        return str(self.header["alg"])

    @property
    def signing_input(self) -> bytes:
        head_b64, pay_b64, _ = self.token.split(".")
        return (head_b64 + "." + pay_b64).encode("ascii")

    def signature(self) -> bytes:
        """Raw signature bytes; MalformedToken unless the segment is canonical base64url."""
        return b64url_decode_strict(self.signature_b64)

    def payload_unverified(self) -> Dict[str, Any]:
        payload = _decode_json_segment(self.payload_b64, "payload")
        if not isinstance(payload, dict):
            raise MalformedToken("payload is not a JSON object")
        return payload


def parse_compact(token: str) -> CompactJWS:
    """
    Split a compact JWS and decode its header.

    Raises MalformedToken unless there are exactly three non-empty segments
    and the header is a JSON object carrying string `kid` and `alg`.
    """
    if not isinstance(token, str):
        raise MalformedToken("token must be a string")
    token = token.strip()
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise MalformedToken("expected three non-empty dot-separated segments")
    header = _decode_json_segment(parts[0], "header")
    if not isinstance(header, dict):
        raise MalformedToken("header is not a JSON object")
    kid, alg = header.get("kid"), header.get("alg")
    if not isinstance(kid, str) or not kid or not isinstance(alg, str) or not alg:
        raise MalformedToken("header must carry 'kid' and 'alg'")
    return CompactJWS(token=token, header=header, payload_b64=parts[1], signature_b64=parts[2])


def _b64_int(jwk: Mapping[str, Any], name: str) -> int:
    v = jwk.get(name)
    if not isinstance(v, str) or not v:
        raise KeyLoadError(f"JWK is missing '{name}'")
    try:
        return int.from_bytes(b64url_decode(v), "big")
    except MalformedToken as e:
        raise KeyLoadError(f"JWK member '{name}' is not base64url") from e


def load_public_key(jwk: Mapping[str, Any], alg: str) -> PublicKey:
    """Build a `cryptography` public key from `jwk`, checked against `alg`."""
    if alg not in SUPPORTED_ALGS:
        raise KeyLoadError(f"unsupported alg {alg!r}")
    declared = jwk.get("alg")
    if declared and declared != alg:
        raise KeyLoadError(f"JWK is for {declared}, token uses {alg}")
    kty = jwk.get("kty")

    if alg[:2] in ("RS", "PS"):
        if kty != "RSA":
            raise KeyLoadError(f"{alg} requires an RSA key, got kty={kty!r}")
        return rsa.RSAPublicNumbers(e=_b64_int(jwk, "e"), n=_b64_int(jwk, "n")).public_key()

    if alg in _EC_CURVES:
        crv_name, curve, _ = _EC_CURVES[alg]
        if kty != "EC" or jwk.get("crv") != crv_name:
            raise KeyLoadError(f"{alg} requires an EC {crv_name} key")
        try:
            return ec.EllipticCurvePublicNumbers(_b64_int(jwk, "x"), _b64_int(jwk, "y"), curve()).public_key()
        except ValueError as e:
            raise KeyLoadError(f"invalid EC point: {e}") from e

    # EdDSA
    if kty != "OKP":
        raise KeyLoadError(f"EdDSA requires an OKP key, got kty={kty!r}")
    x = jwk.get("x")
    if not isinstance(x, str):
        raise KeyLoadError("JWK is missing 'x'")
    try:
        raw = b64url_decode(x)
        if jwk.get("crv") == "Ed25519":
            return ed25519.Ed25519PublicKey.from_public_bytes(raw)
        if jwk.get("crv") == "Ed448":
            return ed448.Ed448PublicKey.from_public_bytes(raw)
    except (MalformedToken, ValueError) as e:
        raise KeyLoadError(f"invalid OKP key: {e}") from e
    raise KeyLoadError(f"unsupported OKP curve {jwk.get('crv')!r}")


def verify_signature(key: PublicKey, alg: str, signing_input: bytes, signature: bytes) -> bool:
    """True when `signature` over `signing_input` checks out under `key`."""
    try:
        if alg.startswith("RS"):
            key.verify(signature, signing_input, padding.PKCS1v15(), _HASHES[alg[2:]]())  # type: ignore[call-arg,union-attr]
        elif alg.startswith("PS"):
            h = _HASHES[alg[2:]]()
            pss = padding.PSS(mgf=padding.MGF1(h), salt_length=h.digest_size)
            key.verify(signature, signing_input, pss, h)  # type: ignore[call-arg,union-attr]
        elif alg in _EC_CURVES:
            size = _EC_CURVES[alg][2]
            if len(signature) != 2 * size:
                return False
            r = int.from_bytes(signature[:size], "big")
            s = int.from_bytes(signature[size:], "big")
            der = encode_dss_signature(r, s)
            key.verify(der, signing_input, ec.ECDSA(_HASHES[alg[2:]]()))  # type: ignore[call-arg,union-attr]
        elif alg == "EdDSA":
            key.verify(signature, signing_input)  # type: ignore[call-arg,union-attr]
        else:
            raise KeyLoadError(f"unsupported alg {alg!r}")
    except InvalidSignature:
        return False
    except TypeError as e:
        # key type does not match the algorithm family
        raise KeyLoadError(str(e)) from e
    return True


__all__ = [
    "CompactJWS",
    "KeyLoadError",
    "PublicKey",
    "SUPPORTED_ALGS",
    "b64url_decode",
    "b64url_encode",
    "b64url_decode_strict",
    "parse_compact",
    "load_public_key",
    "verify_signature",
]
