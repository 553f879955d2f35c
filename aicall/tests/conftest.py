"""
Shared fixtures for aicall tests.

- `ledger`        : fresh RequestLedger with the "COA" model whitelisted
- `store_app`     : in-memory reference content store (FastAPI)
- `store`         : ContentStoreClient wired to `store_app` via ASGITransport,
                    recording backoff sleeps instead of waiting
- ES256 helpers   : `signing_key` / `jwks_doc` / `make_token` for attestation tests
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, List

import httpx
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from aicall.attest.jws import b64url_encode
from aicall.ledger import RequestLedger
from aicall.store import ContentStoreClient
from aicall.store.server import content_key, create_app
from aicall.utils.retry import RetryPolicy

ADMIN = "0xA11CE00000000000000000000000000000000001"
FULFILLER = "0xF0F0000000000000000000000000000000000002"
USER = "0xB0B0000000000000000000000000000000000003"
KID = "tee-key-1"
STORE_URL = "http://store.test"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def ledger() -> RequestLedger:
    return RequestLedger(admin=ADMIN, fulfillment_authority=FULFILLER, models=["COA"])


@pytest.fixture
def store_app():
    return create_app()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
async def store(store_app, sleeps):
    async def _record(d: float) -> None:
        sleeps.append(d)

    transport = httpx.ASGITransport(app=store_app)
    async with httpx.AsyncClient(transport=transport) as client:
        yield ContentStoreClient(STORE_URL, client=client, sleep=_record)


def seed_blob(store_app, data: bytes) -> bytes:
    """Put `data` straight into the reference store; returns its digest."""
    key = content_key(data)
    store_app.state.blobs[key] = data
    return bytes.fromhex(key)


# ---------------------------------------------------------------------------
# Attestation tokens (ES256)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _jwk(key: ec.EllipticCurvePrivateKey, kid: str = KID) -> Dict[str, Any]:
    nums = key.public_key().public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "alg": "ES256",
        "use": "sig",
        "kid": kid,
        "x": b64url_encode(nums.x.to_bytes(32, "big")),
        "y": b64url_encode(nums.y.to_bytes(32, "big")),
    }


@pytest.fixture(scope="session")
def jwks_doc(signing_key) -> Dict[str, Any]:
    other = ec.generate_private_key(ec.SECP256R1())
    return {"keys": [_jwk(other, "rotated-out"), _jwk(signing_key)]}


def sign_es256(key: ec.EllipticCurvePrivateKey, header: Dict[str, Any], payload: Dict[str, Any]) -> str:
    h = b64url_encode(json.dumps(header, separators=(",", ":")).encode())
    p = b64url_encode(json.dumps(payload, separators=(",", ":")).encode())
    der = key.sign(f"{h}.{p}".encode("ascii"), ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    return f"{h}.{p}.{b64url_encode(r.to_bytes(32, 'big') + s.to_bytes(32, 'big'))}"


@pytest.fixture
def make_token(signing_key):
    def _make(payload: Dict[str, Any] | None = None, *, kid: str = KID, **header: Any) -> str:
        body = {"iat": int(time.time()) - 3600, "sub": "inference-report"} if payload is None else payload
        return sign_es256(signing_key, {"alg": "ES256", "typ": "JWT", "kid": kid, **header}, body)

    return _make


def jwks_transport(doc: Dict[str, Any], calls: List[int] | None = None) -> httpx.MockTransport:
    def _handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(1)
        return httpx.Response(200, json=doc)

    return httpx.MockTransport(_handler)


def fast_policy(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(attempts=attempts, base=0.0, max_delay=0.0)
