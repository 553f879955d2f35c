"""Small shared helpers (retry/backoff)."""

from .retry import RetryError, RetryPolicy, aretry_call, backoff_delay  # noqa: F401

__all__ = ["RetryError", "RetryPolicy", "aretry_call", "backoff_delay"]
