from __future__ import annotations

import pytest

from docmigrate.domain.definitions import AttributeMapping
from docmigrate.domain.import_pipeline import UnknownConverterError, transform_record
from docmigrate.domain.import_pipeline.transform import (
    MISSING,
    any_to_boolean,
    any_to_date,
    any_to_number,
    apply_converter,
    get_path,
    resolve_template,
    try_split_by_different_separators,
    validate_item,
)


def _mappings(*raw: dict[str, object]) -> list[AttributeMapping]:
    return [AttributeMapping.model_validate(item) for item in raw]


def test_transform_renames_and_converts() -> None:
    mappings = _mappings(
        {"oldKey": "Full Name", "targetKey": "name", "converters": ["trim"]},
        {"oldKey": "details.age", "targetKey": "age", "converters": ["anyToInteger"]},
        {"oldKey": "missing", "targetKey": "skipped"},
        {"targetKey": "source", "valueToSet": "legacy"},
    )

    payload = transform_record({"Full Name": "  Ada ", "details": {"age": "36"}}, mappings)

    assert payload == {"name": "Ada", "age": 36, "source": "legacy"}


def test_old_keys_gather_values_into_a_list() -> None:
    mappings = _mappings({"oldKeys": ["phone1", "phone2", "phone3"], "targetKey": "phones"})

    payload = transform_record({"phone1": "1", "phone3": ["3", "4"]}, mappings)

    assert payload == {"phones": ["1", "3", "4"]}


def test_converters_apply_per_element_on_lists() -> None:
    assert apply_converter("uppercase", ["a", "b"]) == ["A", "B"]
    assert apply_converter("joinValues", ["a", None, "b"]) == "a,b"


def test_unknown_converter_raises() -> None:
    with pytest.raises(UnknownConverterError):
        apply_converter("doesNotExist", "x")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("yes", True), ("0", False), (1, True), ("maybe", None)],
)
def test_any_to_boolean(value: object, expected: bool | None) -> None:
    assert any_to_boolean(value) is expected


def test_any_to_number_parses_strings() -> None:
    assert any_to_number(" 3.5 ") == 3.5
    assert any_to_number("12") == 12
    assert any_to_number("n/a") is None


def test_any_to_date_returns_iso_string() -> None:
    result = any_to_date("2024-03-01")

    assert result is not None
    assert result.startswith("2024-03-01")
    assert any_to_date("not a date") is None


def test_try_split_by_different_separators() -> None:
    assert try_split_by_different_separators("a;b;c") == ["a", "b", "c"]
    assert try_split_by_different_separators("plain") == ["plain"]


def test_get_path_flattens_list_segments() -> None:
    data = {"items": [{"name": "a"}, {"name": "b"}]}

    assert get_path(data, "items[].name") == ["a", "b"]
    assert get_path(data, "items[].missing") is MISSING


def test_resolve_template_keeps_raw_values_for_single_placeholders() -> None:
    context = {"docId": "abc", "tags": ["x"]}

    assert resolve_template("{tags}", context, {}) == ["x"]
    assert resolve_template("files/{docId}/{name}", context, {"name": "cv"}) == "files/abc/cv"
    assert resolve_template("{unknown}", context, {}) == "{unknown}"


def test_validate_item_reports_failed_rules() -> None:
    mappings = _mappings(
        {
            "oldKey": "mail",
            "targetKey": "email",
            "validationActions": [{"action": "isEmail", "params": ["{email}"]}],
        },
        {
            "oldKey": "nick",
            "targetKey": "nickname",
            "validationActions": [{"action": "lengthBetween", "params": ["{nickname}", 2, 8]}],
        },
    )
    payload = {"email": "not-an-email", "nickname": "ok"}

    errors = validate_item(payload, mappings, payload)

    assert errors == ["email: isEmail failed"]
