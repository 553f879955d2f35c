"""
aicall.store
============

Content-addressed blob store: the retrying client and an in-memory reference
service with the same HTTP surface.
"""

from __future__ import annotations

from .client import ContentStoreClient

__all__ = ["ContentStoreClient"]
