from __future__ import annotations

"""
Prometheus metrics for aicall.

Covered:
- ledger: requests submitted/fulfilled, registry edits, rejected writes
- store: put/get/ping calls by result
- engine: poll attempts, terminal outcomes, submit→resolve latency
- attestation: verification outcomes

A dedicated registry is used so embedding apps can choose to merge or
expose it directly (see `render_latest`).
"""

from prometheus_client import (CONTENT_TYPE_LATEST, CollectorRegistry, Counter,
                               Histogram, generate_latest)

REGISTRY = CollectorRegistry()

# ────────────────────────────────────────────────────────────────────────────────
# Label conventions
#   op:      "put" | "get" | "ping"
#   result:  "ok" | "error"  (store) ; "valid" | "rejected" (attestation)
#   state:   engine terminal state value
#   code:    AICallError.code of a rejected ledger write
# ────────────────────────────────────────────────────────────────────────────────

REQUESTS_SUBMITTED = Counter(
    "aicall_ledger_requests_submitted_total",
    "Requests accepted by the ledger, by model.",
    labelnames=("model",),
    registry=REGISTRY,
)

REQUESTS_FULFILLED = Counter(
    "aicall_ledger_requests_fulfilled_total",
    "Requests fulfilled on the ledger.",
    registry=REGISTRY,
)

LEDGER_REJECTIONS = Counter(
    "aicall_ledger_rejections_total",
    "Ledger writes rejected, by operation and error code.",
    labelnames=("op", "code"),
    registry=REGISTRY,
)

REGISTRY_CHANGES = Counter(
    "aicall_ledger_registry_changes_total",
    "Model registry edits by action.",
    labelnames=("action",),
    registry=REGISTRY,
)

STORE_OPS = Counter(
    "aicall_store_ops_total",
    "Content store operations by op and result.",
    labelnames=("op", "result"),
    registry=REGISTRY,
)

POLL_ATTEMPTS = Counter(
    "aicall_engine_poll_attempts_total",
    "Ledger reads issued while polling for fulfillment.",
    registry=REGISTRY,
)

ENGINE_OUTCOMES = Counter(
    "aicall_engine_outcomes_total",
    "Terminal engine states.",
    labelnames=("state",),
    registry=REGISTRY,
)

RESOLVE_SECONDS = Histogram(
    "aicall_engine_resolve_seconds",
    "Time from first poll to resolution.",
    buckets=(1, 5, 10, 20, 30, 60, 120, 300, 600),
    registry=REGISTRY,
)

ATTESTATIONS = Counter(
    "aicall_attestations_total",
    "Attestation verifications by result.",
    labelnames=("result",),
    registry=REGISTRY,
)


def render_latest() -> tuple[bytes, str]:
    """Return (body, content_type) suitable for a /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST


__all__ = [
    "REGISTRY",
    "REQUESTS_SUBMITTED",
    "REQUESTS_FULFILLED",
    "LEDGER_REJECTIONS",
    "REGISTRY_CHANGES",
    "STORE_OPS",
    "POLL_ATTEMPTS",
    "ENGINE_OUTCOMES",
    "RESOLVE_SECONDS",
    "ATTESTATIONS",
    "render_latest",
]
