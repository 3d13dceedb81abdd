"""Public interface for the document store REST adapter."""

from __future__ import annotations

from .client import AppwriteStore, StoreAPIError, default_resilience_config
from .operations import AppwriteOperationStore

__all__ = [
    "AppwriteOperationStore",
    "AppwriteStore",
    "StoreAPIError",
    "default_resilience_config",
]
