"""
aicall
======

Request/fulfillment coordination for attested off-chain AI inference.

A client uploads a prompt to a content-addressed store, submits its digest
to a ledger, waits for the fulfillment authority to record result and
report digests, downloads both, and verifies the report's attestation.

Subpackages
-----------
- aicall.ledger  : request ledger, model whitelist, HTTP service and clients
- aicall.store   : content store client and reference service
- aicall.engine  : upload/submit/poll/resolve engine
- aicall.attest  : JWS attestation verification against a key set
- aicall.cli     : command-line entry point
"""

from __future__ import annotations

from .errors import AICallError
from .version import __version__

__all__ = ["AICallError", "__version__"]
