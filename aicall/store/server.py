from __future__ import annotations

"""
aicall • store • reference service (FastAPI)

In-memory content store speaking the same HTTP surface as the production
store, for local development (`aicall serve-store`) and tests.

Endpoints (under `base_path`, default "/v1/minio")
--------------------------------------------------
POST {base}/object
    Content-Type: application/x-www-form-urlencoded
    Body : content=<text>
    Resp : text/plain, the key (sha256 hex of the UTF-8 content)

GET {base}/get/{key}
    Resp : application/octet-stream, 404 when unknown

GET {base}/health
    Resp : {"ok": true, "objects": N}

Blobs live in `app.state.blobs` (dict key -> bytes).
"""

import hashlib
import logging
from typing import Dict, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse

from aicall.version import __version__

log = logging.getLogger(__name__)


def content_key(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def create_app(base_path: str = "/v1/minio", blobs: Optional[Dict[str, bytes]] = None) -> FastAPI:
    """Build the reference store app. Pass `blobs` to share or pre-seed storage."""
    store: Dict[str, bytes] = blobs if blobs is not None else {}
    prefix = "/" + base_path.strip("/") if base_path.strip("/") else ""

    app = FastAPI(
        title="aicall content store (reference)",
        version=__version__,
        description="In-memory content-addressed blob store.",
    )
    app.state.blobs = store
    router = APIRouter()

    @router.post("/object", response_class=PlainTextResponse)
    async def put_object(request: Request) -> str:
        body = await request.body()
        fields = parse_qs(body.decode("utf-8", errors="replace"), keep_blank_values=True)
        content = (fields.get("content") or [""])[0]
        if not content:
            raise HTTPException(status_code=400, detail="content must be a non-empty string")
        data = content.encode("utf-8")
        key = content_key(data)
        store[key] = data
        log.debug("stored %d bytes under %s", len(data), key)
        return key

    @router.get("/get/{key}")
    async def get_object(key: str) -> Response:
        data = store.get(key.lower())
        if data is None:
            raise HTTPException(status_code=404, detail="not found")
        return Response(content=data, media_type="application/octet-stream")

    @router.get("/health")
    async def health() -> dict:
        return {"ok": True, "objects": len(store)}

    app.include_router(router, prefix=prefix, tags=["store"])
    return app


__all__ = ["create_app", "content_key"]
