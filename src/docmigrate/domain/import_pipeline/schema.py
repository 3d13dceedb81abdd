"""Validate transformed payloads against a collection's declared attributes."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from docmigrate.domain.definitions import AttributeDefinition, AttributeType

if TYPE_CHECKING:
    from collections.abc import Mapping

    from docmigrate.domain.definitions import CollectionDefinition

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_URL_PATTERN = r"^[a-zA-Z][a-zA-Z0-9+.-]*://\S+$"


class PayloadModel(BaseModel):
    model_config = ConfigDict(extra="allow")


def _scalar_type(attribute: AttributeDefinition) -> Any:
    match attribute.type:
        case AttributeType.STRING:
            if attribute.size:
                return Annotated[str, Field(max_length=attribute.size)]
            return str
        case AttributeType.INTEGER:
            return Annotated[int, Field(ge=attribute.min, le=attribute.max)]
        case AttributeType.FLOAT | AttributeType.DOUBLE:
            return Annotated[float, Field(ge=attribute.min, le=attribute.max)]
        case AttributeType.BOOLEAN:
            return bool
        case AttributeType.EMAIL:
            return Annotated[str, Field(pattern=_EMAIL_PATTERN)]
        case AttributeType.URL:
            return Annotated[str, Field(pattern=_URL_PATTERN)]
        case AttributeType.ENUM if attribute.elements:
            return Literal[tuple(attribute.elements)]
        case AttributeType.DATETIME | AttributeType.IP | AttributeType.ENUM:
            return str
        case AttributeType.RELATIONSHIP:
            return Any
    return Any


def _field_definition(attribute: AttributeDefinition) -> tuple[Any, Any]:
    annotation = _scalar_type(attribute)
    # relationships are only filled in after every collection was staged
    if annotation is Any:
        return Any, None
    if attribute.array:
        annotation = list[annotation]
    if attribute.required:
        return annotation, ...
    return annotation | None, None


_MODELS: dict[tuple[str, str], type[PayloadModel]] = {}


def payload_model(collection: CollectionDefinition) -> type[PayloadModel]:
    """Return (and cache) the dynamic payload model for ``collection``."""

    signature = json.dumps(
        [attribute.model_dump(mode="json") for attribute in collection.attributes],
        sort_keys=True,
    )
    cache_key = (collection.key, signature)
    model = _MODELS.get(cache_key)
    if model is None:
        fields: dict[str, Any] = {
            attribute.key: _field_definition(attribute) for attribute in collection.attributes
        }
        model = create_model(f"{collection.key}Payload", __base__=PayloadModel, **fields)
        _MODELS[cache_key] = model
    return model


def validate_payload(
    collection: CollectionDefinition | None,
    payload: Mapping[str, Any],
    *,
    partial: bool = False,
) -> list[str]:
    """Return human-readable validation errors; an empty list means valid.

    ``partial`` skips the required-field check, used for update payloads that only
    carry the fields being changed.
    """

    if collection is None or not collection.attributes:
        return []
    model = payload_model(collection)
    try:
        model.model_validate(dict(payload))
    except ValidationError as exc:
        errors: list[str] = []
        for error in exc.errors():
            if partial and error["type"] == "missing":
                continue
            location = ".".join(str(part) for part in error["loc"])
            errors.append(f"{location}: {error['msg']}")
        return errors
    return []

