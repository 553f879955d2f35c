from __future__ import annotations

"""
aicall • ledger • HTTP service (FastAPI)

Endpoints
---------
GET    /health                       liveness + counters
GET    /models                       {"models": [...]}
GET    /models/{name}                {"name": ..., "supported": bool}
POST   /models                       {"names": [...]}          (admin)
POST   /models/remove                {"names": [...]}          (admin, all-or-nothing)
DELETE /models/{name}                                          (admin)
POST   /requests                     {"model", "prompt_digest"}
GET    /requests/{id}                request record
POST   /requests/{id}/fulfill        {"result_digest", "report_digest"} (fulfiller)
PUT    /authority/fulfiller          {"identity": ...}          (admin)
PUT    /authority/admin              {"identity": ...}          (admin)
GET    /events?since=N               {"events": [...], "last_seq": N}
GET    /metrics                      Prometheus exposition

The caller identity of a write travels in the X-AICall-Caller header. Writes
answer with the TxOutcome JSON form ({"request_id", "events"}).

Errors are JSON {"code","message","details","retryable"} with:
  400 precondition failures, 403 not authorized,
  404 unknown request id or model, 409 other ledger-state violations.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aicall import metrics
from aicall.errors import (AICallError, InvalidId, LedgerError, NotAuthorized,
                           PreconditionError, UnknownModel)
from aicall.ledger.client import CALLER_HEADER
from aicall.ledger.ledger import RequestLedger
from aicall.version import __version__

log = logging.getLogger(__name__)


# -------------------------- Models --------------------------


class SubmitBody(BaseModel):
    model: str = Field(..., description="Whitelisted model name")
    prompt_digest: str = Field(..., description="0x-hex digest of the uploaded prompt")


class FulfillBody(BaseModel):
    result_digest: str = Field(..., description="0x-hex digest of the stored result")
    report_digest: str = Field(..., description="0x-hex digest of the stored attestation report")


class ModelsBody(BaseModel):
    names: List[str] = Field(default_factory=list)


class IdentityBody(BaseModel):
    identity: str = Field(..., description="New authority identity")


# -------------------------- Helpers --------------------------


def _status_for(err: AICallError) -> int:
    if isinstance(err, PreconditionError):
        return 400
    if isinstance(err, NotAuthorized):
        return 403
    if isinstance(err, (InvalidId, UnknownModel)):
        return 404
    if isinstance(err, LedgerError):
        return 409
    return 500


# -------------------------- App factory --------------------------


def create_app(ledger: RequestLedger) -> FastAPI:
    """Build a FastAPI app serving `ledger`."""
    app = FastAPI(
        title="aicall ledger",
        version=__version__,
        description="Request/fulfillment ledger with model whitelist and authority control.",
    )

    @app.exception_handler(AICallError)
    async def _on_aicall_error(request: Request, exc: AICallError) -> JSONResponse:
        status = _status_for(exc)
        log.info("%s %s -> %d %s", request.method, request.url.path, status, exc.code)
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/health", tags=["ledger"])
    def health() -> dict:
        return {
            "ok": True,
            "version": __version__,
            "next_id": ledger.next_id,
            "request_count": ledger.request_count,
            "models": len(ledger.list_models()),
            "admin": ledger.admin,
            "fulfillment_authority": ledger.fulfillment_authority,
        }

    @app.get("/models", tags=["models"])
    def list_models() -> dict:
        return {"models": ledger.list_models()}

    @app.get("/models/{name:path}", tags=["models"])
    def get_model(name: str) -> dict:
        return {"name": name, "supported": ledger.is_model_supported(name)}

    @app.post("/models", tags=["models"])
    def add_models(body: ModelsBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.add_models(caller, body.names).to_dict()

    @app.post("/models/remove", tags=["models"])
    def remove_models(body: ModelsBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.remove_models(caller, body.names).to_dict()

    @app.delete("/models/{name:path}", tags=["models"])
    def remove_model(name: str, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.remove_model(caller, name).to_dict()

    @app.post("/requests", status_code=201, tags=["requests"])
    def submit(body: SubmitBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.submit(caller, body.model, body.prompt_digest).to_dict()

    @app.get("/requests/{request_id}", tags=["requests"])
    def get_request(request_id: int) -> dict:
        rec = ledger.get(request_id)
        if rec is None:
            raise InvalidId(request_id, ledger.next_id)
        return rec.to_dict()

    @app.post("/requests/{request_id}/fulfill", tags=["requests"])
    def fulfill(request_id: int, body: FulfillBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.fulfill(caller, request_id, body.result_digest, body.report_digest).to_dict()

    @app.put("/authority/fulfiller", tags=["authority"])
    def set_fulfiller(body: IdentityBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.set_fulfillment_authority(caller, body.identity).to_dict()

    @app.put("/authority/admin", tags=["authority"])
    def set_admin(body: IdentityBody, caller: str = Header("", alias=CALLER_HEADER)) -> dict:
        return ledger.transfer_admin(caller, body.identity).to_dict()

    @app.get("/events", tags=["events"])
    def events(since: int = Query(0, ge=0), limit: Optional[int] = Query(None, ge=1)) -> dict:
        evs = ledger.events(since)
        if limit is not None:
            evs = evs[:limit]
        return {
            "events": [e.to_dict() for e in evs],
            "last_seq": evs[-1].seq if evs else since,
        }

    @app.get("/metrics", include_in_schema=False)
    def prometheus() -> Response:
        body, content_type = metrics.render_latest()
        return Response(content=body, media_type=content_type)

    return app


__all__ = ["create_app"]
