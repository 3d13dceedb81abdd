"""Translate REST payloads into domain records and back."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Final

from docmigrate.domain.model import Bucket, Document, Identity, StoredFile

if TYPE_CHECKING:
    from .schema import BucketPayload, DocumentPayload, FilePayload, UserPayload

# the store rejects longer values in equality queries
MAX_QUERY_VALUE_LENGTH: Final[int] = 255
MAX_QUERIES: Final[int] = 100


def to_document(payload: DocumentPayload) -> Document:
    return Document(
        id=payload.id,
        collection_id=payload.collection_id,
        database_id=payload.database_id,
        data=payload.data,
    )


def to_identity(payload: UserPayload) -> Identity:
    return Identity(
        id=payload.id,
        email=payload.email,
        phone=payload.phone,
        name=payload.name,
        labels=list(payload.labels),
        prefs=dict(payload.prefs),
    )


def to_bucket(payload: BucketPayload) -> Bucket:
    return Bucket(id=payload.id, name=payload.name)


def to_stored_file(payload: FilePayload) -> StoredFile:
    return StoredFile(
        id=payload.id, bucket_id=payload.bucket_id, name=payload.name, size=payload.size
    )


def query(method: str, attribute: str | None = None, values: list[Any] | None = None) -> str:
    """Encode one query in the store's JSON query syntax."""

    encoded: dict[str, Any] = {"method": method}
    if attribute is not None:
        encoded["attribute"] = attribute
    if values is not None:
        encoded["values"] = values
    return json.dumps(encoded, separators=(",", ":"))


def equal(attribute: str, value: Any) -> str:
    return query("equal", attribute, value if isinstance(value, list) else [value])


def limit(count: int) -> str:
    return query("limit", values=[count])


def cursor_after(document_id: str) -> str:
    return query("cursorAfter", values=[document_id])


def equality_queries(payload: Mapping[str, Any]) -> list[str]:
    """Equality queries over the scalar fields of ``payload`` usable for a lookup."""

    queries: list[str] = []
    for key, value in payload.items():
        if key.startswith("$") or value is None:
            continue
        if isinstance(value, str):
            if not value or len(value) > MAX_QUERY_VALUE_LENGTH:
                continue
        elif not isinstance(value, bool | int | float):
            continue
        queries.append(equal(key, value))
        if len(queries) >= MAX_QUERIES:
            break
    return queries


def identity_create_body(identity: Identity) -> dict[str, Any]:
    body: dict[str, Any] = {"userId": identity.id}
    if identity.email:
        body["email"] = identity.email
    if identity.phone:
        body["phone"] = identity.phone
    if identity.name:
        body["name"] = identity.name
    return body
