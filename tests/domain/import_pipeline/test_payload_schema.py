from __future__ import annotations

from docmigrate.domain.definitions import CollectionDefinition
from docmigrate.domain.import_pipeline.schema import payload_model, validate_payload

MEMBERS = CollectionDefinition.model_validate(
    {
        "name": "Members",
        "attributes": [
            {"key": "firstName", "type": "string", "size": 5, "required": True},
            {"key": "age", "type": "integer", "min": 0, "max": 150},
            {"key": "role", "type": "enum", "elements": ["admin", "member"]},
            {"key": "contact", "type": "email"},
            {"key": "tags", "type": "string", "array": True},
            {"key": "club", "type": "relationship", "relatedCollection": "Clubs"},
        ],
    }
)


def test_valid_payload_has_no_errors() -> None:
    errors = validate_payload(
        MEMBERS,
        {
            "firstName": "Ada",
            "age": 36,
            "role": "admin",
            "contact": "ada@example.com",
            "tags": ["chess"],
            "club": "7",
            "unknownField": "kept",
        },
    )

    assert errors == []


def test_invalid_payload_lists_every_problem() -> None:
    errors = validate_payload(
        MEMBERS, {"firstName": "Adelheid", "age": -1, "role": "owner", "contact": "nope"}
    )

    failed = {error.split(":", 1)[0] for error in errors}
    assert failed == {"firstName", "age", "role", "contact"}


def test_partial_payload_skips_required_fields() -> None:
    assert validate_payload(MEMBERS, {"age": 40}, partial=True) == []
    assert validate_payload(MEMBERS, {"age": 40}) == ["firstName: Field required"]


def test_collections_without_attributes_accept_anything() -> None:
    bare = CollectionDefinition.model_validate({"name": "Notes"})

    assert validate_payload(bare, {"anything": object()}) == []
    assert validate_payload(None, {"x": 1}) == []


def test_payload_model_is_cached_per_attribute_set() -> None:
    assert payload_model(MEMBERS) is payload_model(MEMBERS)
