"""
aicall.ledger
=============

Request/fulfillment ledger: records, model whitelist, authorities, events,
plus the HTTP service and client adapters that expose it.
"""

from __future__ import annotations

from .client import CALLER_HEADER, HttpLedgerClient, LedgerClient, LocalLedgerClient
from .ledger import RequestLedger
from .registry import ModelRegistry
from .types import (AdminChanged, Fulfilled, FulfillmentAuthorityChanged,
                    LedgerEvent, ModelAdded, ModelRemoved, RequestRecord,
                    Requested, RequestStatus, TxOutcome)

__all__ = [
    "RequestLedger",
    "ModelRegistry",
    "RequestRecord",
    "RequestStatus",
    "TxOutcome",
    "LedgerEvent",
    "Requested",
    "Fulfilled",
    "ModelAdded",
    "ModelRemoved",
    "FulfillmentAuthorityChanged",
    "AdminChanged",
    "LedgerClient",
    "LocalLedgerClient",
    "HttpLedgerClient",
    "CALLER_HEADER",
]
