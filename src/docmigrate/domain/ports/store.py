"""Ports for the target document store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping

    from docmigrate.domain.model import Bucket, Document, Identity, StoredFile


@runtime_checkable
class DocumentStore(Protocol):
    """Document, bucket and file operations the migration needs from the store."""

    async def find_collection(self, database_id: str, name_or_id: str) -> str | None:
        """Return the id of the collection named or identified by ``name_or_id``."""
        ...

    async def document_exists(
        self, database_id: str, collection_id: str, payload: Mapping[str, Any]
    ) -> Document | None:
        """Return a stored document whose scalar fields match ``payload``."""
        ...

    async def get_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> Document | None: ...

    async def list_documents(
        self,
        database_id: str,
        collection_id: str,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Document]: ...

    async def create_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document: ...

    async def update_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document: ...

    async def delete_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> None: ...

    async def get_bucket(self, bucket_id: str) -> Bucket | None: ...

    async def create_bucket(self, bucket_id: str, name: str) -> Bucket: ...

    async def create_file(
        self, bucket_id: str, file_id: str, filename: str, content: bytes
    ) -> StoredFile: ...


@runtime_checkable
class IdentityStore(Protocol):
    """Account/identity operations used for identity-bearing collections."""

    async def list_all_identities(self) -> list[Identity]: ...

    async def get_identity(self, identity_id: str) -> Identity | None: ...

    async def create_identity(self, identity: Identity) -> Identity: ...


__all__ = ["DocumentStore", "IdentityStore"]
