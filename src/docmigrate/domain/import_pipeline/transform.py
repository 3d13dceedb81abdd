"""Declarative record transformation: key renaming, converters, validation, templates."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Any, Final, cast

from dateutil import parser as date_parser

if TYPE_CHECKING:
    from docmigrate.domain.definitions import AttributeMapping

log = getLogger(__name__)

type Converter = Callable[[Any], Any]
type ValidationRule = Callable[..., bool]


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()

SEPARATORS: Final[tuple[str, ...]] = (",", ";", "|", ":", "/", "\\")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TEMPLATE_PATTERN = re.compile(r"\{([^{}]+)\}")


class UnknownConverterError(KeyError):
    """Raised when an attribute mapping names a converter that does not exist."""


class UnknownValidationRuleError(KeyError):
    """Raised when an attribute mapping names a validation rule that does not exist."""


# Dotted paths ---------------------------------------------------------------


def get_path(data: Mapping[str, Any], path: str) -> Any:
    """Read ``path`` (``a.b`` or ``items[].name``) from ``data``.

    Returns :data:`MISSING` when any segment is absent. Segments suffixed with ``[]``
    flatten list values, in which case a list of all reachable values is returned.
    """

    current: list[Any] = [data]
    flattened = False
    for raw_segment in path.split("."):
        is_list = raw_segment.endswith("[]")
        segment = raw_segment[:-2] if is_list else raw_segment
        found: list[Any] = []
        for value in current:
            if not isinstance(value, Mapping):
                continue
            mapping = cast(Mapping[str, Any], value)
            if segment not in mapping:
                continue
            item = mapping[segment]
            if is_list and isinstance(item, list):
                found.extend(cast(list[Any], item))
            else:
                found.append(item)
        if not found:
            return MISSING
        current = found
        flattened = flattened or is_list
    return current if flattened else current[0]


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    segments = [segment.removesuffix("[]") for segment in path.split(".")]
    target = data
    for segment in segments[:-1]:
        child = target.get(segment)
        if not isinstance(child, dict):
            child = {}
            target[segment] = child
        target = cast(dict[str, Any], child)
    target[segments[-1]] = value


# Converters -----------------------------------------------------------------


def any_to_string(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def any_to_number(value: Any) -> int | float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return None


def any_to_float(value: Any) -> float | None:
    number = any_to_number(value)
    return None if number is None else float(number)


def any_to_integer(value: Any) -> int | None:
    number = any_to_number(value)
    if number is None:
        return None
    try:
        return int(number)
    except (ValueError, OverflowError):
        return None


def any_to_boolean(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
        return None
    return bool(value)


def try_split_by_different_separators(value: Any) -> Any:
    """Split ``value`` on the separator giving the most uniform segment lengths."""

    if not isinstance(value, str):
        return value
    best: list[str] = []
    best_score = 0.0
    for separator in SEPARATORS:
        parts = value.split(separator)
        if len(parts) <= 1:
            continue
        lengths = [len(part) for part in parts]
        average = sum(lengths) / len(lengths)
        score = sum(abs(length - average) for length in lengths)
        if not best or score < best_score:
            best = parts
            best_score = score
    return best or [value]


def any_to_array(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return [any_to_string(element) for element in cast(list[Any], value)]
    if isinstance(value, str):
        return try_split_by_different_separators(value)
    return [value]


def safe_parse_date(value: Any) -> datetime | None:
    """Parse dates given as ISO/free-form strings, epoch milliseconds or datetimes."""

    if value is None or value == "":
        return None
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        try:
            if isinstance(value, int | float) and not isinstance(value, bool):
                parsed = datetime.fromtimestamp(value / 1000, tz=UTC)
            elif text.isdigit():
                parsed = datetime.fromtimestamp(int(text) / 1000, tz=UTC)
            else:
                parsed = date_parser.parse(text)
        except (ValueError, OverflowError, OSError):
            log.error("Failed to parse date from input: %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def any_to_date(value: Any) -> str | None:
    parsed = safe_parse_date(value)
    return parsed.isoformat() if parsed else None


def _strip(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _remove_invalid_elements(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    invalid = (None, "", "null", "undefined")
    return [element for element in cast(list[Any], value) if element not in invalid]


def _join_values(value: Any) -> Any:
    if not isinstance(value, list):
        return value
    return ",".join(str(element) for element in cast(list[Any], value) if element is not None)


def _split_by_comma(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    return [part.strip() for part in value.split(",") if part.strip()]


def _stringify_object(value: Any) -> Any:
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return value


CONVERTERS: Final[dict[str, Converter]] = {
    "anyToString": any_to_string,
    "anyToNumber": any_to_number,
    "anyToFloat": any_to_float,
    "anyToInteger": any_to_integer,
    "anyToBoolean": any_to_boolean,
    "anyToDate": any_to_date,
    "anyToArray": any_to_array,
    "anyToAnyArray": any_to_array,
    "trySplitByDifferentSeparators": try_split_by_different_separators,
    "trim": _strip,
    "lowercase": _lower,
    "uppercase": _upper,
    "removeInvalidElements": _remove_invalid_elements,
    "joinValues": _join_values,
    "splitByComma": _split_by_comma,
    "stringifyObject": _stringify_object,
}

# converters that operate on a list as a whole instead of per element
_WHOLE_VALUE_CONVERTERS: Final[frozenset[str]] = frozenset(
    {
        "anyToArray",
        "anyToAnyArray",
        "anyToString",
        "removeInvalidElements",
        "joinValues",
        "stringifyObject",
    }
)


def apply_converter(name: str, value: Any) -> Any:
    converter = CONVERTERS.get(name)
    if converter is None:
        raise UnknownConverterError(name)
    if isinstance(value, list) and name not in _WHOLE_VALUE_CONVERTERS:
        return [converter(element) for element in cast(list[Any], value)]
    return converter(value)


# Mapping application ---------------------------------------------------------


def convert_by_attribute_mappings(
    item: Mapping[str, Any], mappings: Sequence[AttributeMapping]
) -> dict[str, Any]:
    """Rename source keys to target keys; keys absent from ``item`` are skipped.

    ``oldKey`` copies a single value. ``oldKeys`` gathers every present value into a
    list. ``valueToSet`` writes a constant regardless of the source record.
    """

    result: dict[str, Any] = {}
    for mapping in mappings:
        if mapping.value_to_set is not None:
            set_path(result, mapping.target_key, mapping.value_to_set)
            continue
        if mapping.old_key:
            value = get_path(item, mapping.old_key)
            if value is not MISSING:
                set_path(result, mapping.target_key, value)
            continue
        gathered: list[Any] = []
        for key in mapping.old_keys:
            value = get_path(item, key)
            if value is MISSING:
                continue
            if isinstance(value, list):
                gathered.extend(cast(list[Any], value))
            else:
                gathered.append(value)
        if gathered:
            set_path(result, mapping.target_key, gathered)
    return result


def run_converters(
    converted: Mapping[str, Any], mappings: Sequence[AttributeMapping]
) -> dict[str, Any]:
    result = dict(converted)
    for mapping in mappings:
        if not mapping.converters:
            continue
        value = get_path(result, mapping.target_key)
        if value is MISSING:
            continue
        for name in mapping.converters:
            value = apply_converter(name, value)
        set_path(result, mapping.target_key, value)
    return result


def transform_record(
    item: Mapping[str, Any], mappings: Sequence[AttributeMapping]
) -> dict[str, Any]:
    return run_converters(convert_by_attribute_mappings(item, mappings), mappings)


# Templates -------------------------------------------------------------------


def _lookup(name: str, context: Mapping[str, Any], item: Mapping[str, Any]) -> Any:
    value = get_path(context, name)
    if value is MISSING:
        value = get_path(item, name)
    return value


def resolve_template(template: Any, context: Mapping[str, Any], item: Mapping[str, Any]) -> Any:
    """Substitute ``{name}`` placeholders from ``context`` then ``item``.

    A template consisting of exactly one placeholder yields the raw value so that
    non-string values (lists, numbers) survive. Unknown placeholders stay verbatim.
    """

    if isinstance(template, list):
        return [resolve_template(part, context, item) for part in cast(list[Any], template)]
    if not isinstance(template, str):
        return template
    whole = _TEMPLATE_PATTERN.fullmatch(template)
    if whole is not None:
        value = _lookup(whole.group(1), context, item)
        return template if value is MISSING else value

    def substitute(match: re.Match[str]) -> str:
        value = _lookup(match.group(1), context, item)
        return match.group(0) if value is MISSING else str(value)

    return _TEMPLATE_PATTERN.sub(substitute, template)


# Validation ------------------------------------------------------------------


def _is_present(value: Any) -> bool:
    if value is None or value is MISSING:
        return False
    if isinstance(value, str | list | dict):
        return len(cast(Any, value)) > 0
    return True


def _is_email(value: Any) -> bool:
    return isinstance(value, str) and _EMAIL_PATTERN.match(value.strip()) is not None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int | float):
        return True
    return isinstance(value, str) and any_to_number(value) is not None


def _matches_pattern(value: Any, pattern: str) -> bool:
    return isinstance(value, str) and re.search(pattern, value) is not None


def _length_between(value: Any, minimum: Any, maximum: Any) -> bool:
    if not isinstance(value, str | list):
        return False
    return int(minimum) <= len(cast(Any, value)) <= int(maximum)


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.lower().startswith(("http://", "https://"))


def _resolve_argument(param: Any, context: Mapping[str, Any], item: Mapping[str, Any]) -> Any:
    if isinstance(param, str):
        whole = _TEMPLATE_PATTERN.fullmatch(param)
        if whole is not None:
            value = _lookup(whole.group(1), context, item)
            return None if value is MISSING else value
    return resolve_template(param, context, item)


VALIDATION_RULES: Final[dict[str, ValidationRule]] = {
    "isRequired": _is_present,
    "isNonEmpty": _is_present,
    "isEmail": _is_email,
    "isNumber": _is_number,
    "isString": lambda value: isinstance(value, str),
    "isBoolean": lambda value: isinstance(value, bool),
    "isArray": lambda value: isinstance(value, list),
    "isURL": _is_url,
    "matchesPattern": _matches_pattern,
    "lengthBetween": _length_between,
    "equals": lambda value, other: value == other,
}


def validate_item(
    item: Mapping[str, Any],
    mappings: Sequence[AttributeMapping],
    context: Mapping[str, Any],
) -> list[str]:
    """Run each mapping's validation actions and return the failure messages.

    Parameters are resolved as templates, so ``{"action": "isEmail", "params":
    ["{email}"]}`` checks the value of ``email``. Without parameters the rule is
    applied to the mapping's target value.
    """

    errors: list[str] = []
    for mapping in mappings:
        for rule_spec in mapping.validation_actions:
            rule = VALIDATION_RULES.get(rule_spec.action)
            if rule is None:
                raise UnknownValidationRuleError(rule_spec.action)
            if rule_spec.params:
                args = [_resolve_argument(param, context, item) for param in rule_spec.params]
            else:
                args = [get_path(item, mapping.target_key)]
            if not rule(*args):
                errors.append(f"{mapping.target_key}: {rule_spec.action} failed")
    return errors
