"""Pydantic models describing the document store's REST payloads."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _blank_to_none(value: object) -> object:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


class AppwriteBaseModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ErrorResponse(AppwriteBaseModel):
    message: str
    code: int | None = None
    type: str | None = None


class CollectionPayload(AppwriteBaseModel):
    id: str = Field(alias="$id")
    name: str
    database_id: str | None = Field(default=None, alias="databaseId")


class CollectionList(AppwriteBaseModel):
    total: int = 0
    collections: list[CollectionPayload] = Field(default_factory=list)


class DocumentPayload(BaseModel):
    """A stored document; every non-system key is document data."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(alias="$id")
    collection_id: str = Field(alias="$collectionId")
    database_id: str = Field(alias="$databaseId")

    @property
    def data(self) -> dict[str, Any]:
        extra = self.model_extra or {}
        return {key: value for key, value in extra.items() if not key.startswith("$")}


class DocumentList(AppwriteBaseModel):
    total: int = 0
    documents: list[DocumentPayload] = Field(default_factory=list)


class UserPayload(AppwriteBaseModel):
    id: str = Field(alias="$id")
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    labels: list[str] = Field(default_factory=list)
    prefs: dict[str, Any] = Field(default_factory=dict)

    _normalize_email = field_validator("email", mode="before")(_blank_to_none)
    _normalize_phone = field_validator("phone", mode="before")(_blank_to_none)
    _normalize_name = field_validator("name", mode="before")(_blank_to_none)


class UserList(AppwriteBaseModel):
    total: int = 0
    users: list[UserPayload] = Field(default_factory=list)


class BucketPayload(AppwriteBaseModel):
    id: str = Field(alias="$id")
    name: str


class FilePayload(AppwriteBaseModel):
    id: str = Field(alias="$id")
    bucket_id: str = Field(alias="bucketId")
    name: str
    size: int = Field(default=0, alias="sizeOriginal")
