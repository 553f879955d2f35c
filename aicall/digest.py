"""
aicall.digest
-------------

Helpers for the fixed-size digests that reference off-ledger content.

A digest is 32 raw bytes. On the wire and in logs it is rendered as a
`0x`-prefixed lowercase hex string; the all-zero digest means "unset". The
content store addresses blobs by the same 64 hex characters without the
`0x` display prefix.
"""

from __future__ import annotations

import re
from typing import Union

from aicall.errors import PreconditionError

DIGEST_SIZE = 32
ZERO_DIGEST = b"\x00" * DIGEST_SIZE

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")

DigestLike = Union[bytes, bytearray, memoryview, str]


def strip0x(s: str) -> str:
    return s[2:] if s.startswith(("0x", "0X")) else s


def to_hex(d: bytes) -> str:
    return "0x" + bytes(d).hex()


def as_digest(value: DigestLike, *, field: str = "digest") -> bytes:
    """
    Coerce raw bytes or a (optionally 0x-prefixed) hex string into a 32-byte digest.

    Raises PreconditionError when the input has the wrong length or is not hex.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
    elif isinstance(value, str):
        s = strip0x(value.strip())
        try:
            raw = bytes.fromhex(s)
        except ValueError as e:
            raise PreconditionError(f"{field} is not valid hex", details={"field": field}) from e
    else:
        raise PreconditionError(f"{field} must be bytes or hex str", details={"field": field})
    if len(raw) != DIGEST_SIZE:
        raise PreconditionError(
            f"{field} must be {DIGEST_SIZE} bytes",
            details={"field": field, "size": len(raw)},
        )
    return raw


def is_zero(d: bytes) -> bool:
    return bytes(d) == ZERO_DIGEST


def digest_from_key(key: str) -> bytes:
    """Map a content-store key (64 hex chars) onto the digest recorded on the ledger."""
    k = strip0x(key.strip())
    if not _HEX_KEY_RE.match(k):
        raise PreconditionError("store key is not a 32-byte hex digest", details={"key": key[:80]})
    return bytes.fromhex(k)


def key_from_digest(d: DigestLike) -> str:
    """Inverse of `digest_from_key`: drop the display prefix and lowercase."""
    return as_digest(d).hex()


__all__ = [
    "DIGEST_SIZE",
    "ZERO_DIGEST",
    "DigestLike",
    "strip0x",
    "to_hex",
    "as_digest",
    "is_zero",
    "digest_from_key",
    "key_from_digest",
]
