"""Domain port definitions for adapters."""

from __future__ import annotations

from .operations import OperationStore
from .sources import SourceLoader
from .store import DocumentStore, IdentityStore

__all__ = [
    "DocumentStore",
    "IdentityStore",
    "OperationStore",
    "SourceLoader",
]
