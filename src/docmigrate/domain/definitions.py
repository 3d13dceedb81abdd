"""Pydantic models describing a migration project file.

The models accept the camelCase keys used in project YAML files (``importDefs``,
``attributeMappings``, ``$id`` ...) through aliases while exposing snake_case
attributes to the rest of the code base.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MIGRATIONS_DATABASE_NAME = "migrations"


def normalize_name(value: str) -> str:
    """Lower-case ``value`` and drop all whitespace."""

    return "".join(value.split()).lower()


class DefinitionModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ImportType(StrEnum):
    CREATE = "create"
    UPDATE = "update"


class AttributeType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    EMAIL = "email"
    URL = "url"
    IP = "ip"
    ENUM = "enum"
    RELATIONSHIP = "relationship"


class FileData(DefinitionModel):
    name: str
    path: str


class ActionSpec(DefinitionModel):
    """Named action with positional parameters (templates allowed)."""

    action: str
    params: list[Any] = Field(default_factory=list)


class AttributeMapping(DefinitionModel):
    old_key: str | None = Field(default=None, alias="oldKey")
    old_keys: list[str] = Field(default_factory=list, alias="oldKeys")
    target_key: str = Field(alias="targetKey")
    value_to_set: Any = Field(default=None, alias="valueToSet")
    file_data: FileData | None = Field(default=None, alias="fileData")
    converters: list[str] = Field(default_factory=list)
    validation_actions: list[ActionSpec] = Field(default_factory=list, alias="validationActions")
    post_import_actions: list[ActionSpec] = Field(default_factory=list, alias="postImportActions")


class IdMapping(DefinitionModel):
    """Cross-collection reference resolved after every collection was imported."""

    source_field: str = Field(alias="sourceField")
    target_field: str = Field(alias="targetField")
    target_collection: str = Field(alias="targetCollection")
    field_to_set: str | None = Field(default=None, alias="fieldToSet")

    @property
    def destination(self) -> str:
        return self.field_to_set or self.source_field


class UpdateMapping(DefinitionModel):
    original_id_field: str = Field(alias="originalIdField")
    target_field: str = Field(alias="targetField")


class ImportDef(DefinitionModel):
    type: ImportType = ImportType.CREATE
    file_path: str = Field(alias="filePath")
    base_path: str | None = Field(default=None, alias="basePath")
    primary_key_field: str = Field(default="id", alias="primaryKeyField")
    attribute_mappings: list[AttributeMapping] = Field(
        default_factory=list, alias="attributeMappings"
    )
    id_mappings: list[IdMapping] = Field(default_factory=list, alias="idMappings")
    update_mapping: UpdateMapping | None = Field(default=None, alias="updateMapping")

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value: object) -> object:
        return ImportType.CREATE if value in (None, "") else value


class AttributeDefinition(DefinitionModel):
    key: str
    type: AttributeType = AttributeType.STRING
    size: int | None = None
    required: bool = False
    array: bool = False
    elements: list[str] = Field(default_factory=list)
    min: float | None = None
    max: float | None = None
    related_collection: str | None = Field(default=None, alias="relatedCollection")


class CollectionDefinition(DefinitionModel):
    id: str | None = Field(default=None, alias="$id")
    name: str
    attributes: list[AttributeDefinition] = Field(default_factory=list)
    import_defs: list[ImportDef] = Field(default_factory=list, alias="importDefs")

    @property
    def key(self) -> str:
        return normalize_name(self.name)

    @property
    def create_defs(self) -> list[ImportDef]:
        return [d for d in self.import_defs if d.type is ImportType.CREATE]

    @property
    def update_defs(self) -> list[ImportDef]:
        return [d for d in self.import_defs if d.type is ImportType.UPDATE]

    def attribute(self, key: str) -> AttributeDefinition | None:
        for attribute in self.attributes:
            if attribute.key == key:
                return attribute
        return None

    def is_array_attribute(self, key: str) -> bool:
        attribute = self.attribute(key)
        return attribute is not None and attribute.array


class DatabaseDefinition(DefinitionModel):
    id: str | None = Field(default=None, alias="$id")
    name: str

    @property
    def key(self) -> str:
        return normalize_name(self.name)

    @property
    def identifier(self) -> str:
        return self.id or self.key


class ProjectDefinition(DefinitionModel):
    databases: list[DatabaseDefinition] = Field(default_factory=list)
    collections: list[CollectionDefinition] = Field(default_factory=list)
    users_collection_name: str = Field(default="Members", alias="usersCollectionName")
    document_bucket_id: str = Field(default="documents", alias="documentBucketId")

    @model_validator(mode="after")
    def _check_unique_collections(self) -> ProjectDefinition:
        seen: set[str] = set()
        for collection in self.collections:
            if collection.key in seen:
                raise ValueError(f"Duplicate collection name: {collection.name}")
            seen.add(collection.key)
        return self

    @property
    def identity_collection_key(self) -> str:
        return normalize_name(self.users_collection_name)

    def is_identity_collection(self, name: str) -> bool:
        return normalize_name(name) == self.identity_collection_key

    def collection(self, name: str) -> CollectionDefinition | None:
        key = normalize_name(name)
        for collection in self.collections:
            if collection.key == key or collection.id == name:
                return collection
        return None

    def databases_to_run(self, names: list[str] | None = None) -> list[DatabaseDefinition]:
        """Return the target databases, skipping the bookkeeping database."""

        wanted = {normalize_name(name) for name in names} if names else None
        selected: list[DatabaseDefinition] = []
        for database in self.databases:
            if database.key == MIGRATIONS_DATABASE_NAME:
                continue
            if wanted is not None and database.key not in wanted and database.id not in wanted:
                continue
            selected.append(database)
        return selected
