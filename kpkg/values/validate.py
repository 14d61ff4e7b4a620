"""Validation of package values against the value definitions of a manifest."""

from collections.abc import Callable
import logging
import re

from kpkg.exceptions import ValueValidationError
from kpkg.manifest import PackageManifest, ValueConfiguration, ValueDefinition, ValueType

__all__ = [
    "validate_resolved_values",
    "validate_package_values",
    "validate_single",
]

_LOGGER = logging.getLogger(__name__)

_BOOLEAN_VALUES = {"1", "t", "T", "TRUE", "true", "True", "0", "f", "F", "FALSE", "false", "False"}
_NUMBER_RE = re.compile(r"^[+-]?\d+$")

CONSTRAINT_VIOLATION = "constraint violation"


class _ValidationFailure(Exception):
    """A single validation failure of a value."""


def _constraint_error(constraint: str, limit: int | None = None) -> _ValidationFailure:
    if limit is None:
        return _ValidationFailure(f"{CONSTRAINT_VIOLATION}: {constraint}")
    return _ValidationFailure(f"{CONSTRAINT_VIOLATION}: {constraint}: {limit}")


def _parse_number(value: str) -> int:
    if not _NUMBER_RE.match(value):
        raise _ValidationFailure(f"invalid syntax: {value!r}")
    return int(value)


def _validate_min_length(definition: ValueDefinition, value: str) -> None:
    if (min_length := definition.constraints.min_length) is not None and len(value) < min_length:
        raise _constraint_error("MinLength", min_length)


def _validate_max_length(definition: ValueDefinition, value: str) -> None:
    if (max_length := definition.constraints.max_length) is not None and len(value) > max_length:
        raise _constraint_error("MaxLength", max_length)


def _validate_format_number(definition: ValueDefinition, value: str) -> None:
    try:
        _parse_number(value)
    except _ValidationFailure as err:
        raise _ValidationFailure(f"value must be a number: {err}") from err


def _validate_format_boolean(definition: ValueDefinition, value: str) -> None:
    if value not in _BOOLEAN_VALUES:
        raise _ValidationFailure(f"value must be a boolean: invalid syntax: {value!r}")


def _validate_min(definition: ValueDefinition, value: str) -> None:
    if (minimum := definition.constraints.min) is not None and _parse_number(value) < minimum:
        raise _constraint_error("Min", minimum)


def _validate_max(definition: ValueDefinition, value: str) -> None:
    if (maximum := definition.constraints.max) is not None and _parse_number(value) > maximum:
        raise _constraint_error("Max", maximum)


def _validate_options(definition: ValueDefinition, value: str) -> None:
    if value not in definition.options:
        raise _ValidationFailure(f"value must be one of: {', '.join(definition.options)}")


def _validate_pattern(definition: ValueDefinition, value: str) -> None:
    if (pattern := definition.constraints.pattern) is None:
        return
    try:
        regex = re.compile(pattern)
    except re.error as err:
        raise _ValidationFailure(f"invalid pattern '{pattern}': {err}") from err
    if not regex.search(value):
        raise _ValidationFailure(f"value must match '{pattern}'")


_Validator = Callable[[ValueDefinition, str], None]

_VALIDATORS: dict[ValueType, list[_Validator]] = {
    ValueType.TEXT: [_validate_max_length, _validate_min_length, _validate_pattern],
    ValueType.NUMBER: [_validate_format_number, _validate_min, _validate_max, _validate_pattern],
    ValueType.OPTIONS: [_validate_options],
    ValueType.BOOLEAN: [_validate_format_boolean],
}


def _validation_error(name: str, cause: str) -> _ValidationFailure:
    return _ValidationFailure(f"validation error for value {name}: {cause}")


def validate_single(name: str, definition: ValueDefinition, value: str) -> list[Exception]:
    """Run all validators for the type of a definition on a value.

    Returns the validation errors, an empty list if the value is valid.
    """
    if (validators := _VALIDATORS.get(definition.type)) is None:
        return [_validation_error(name, f"unhandled type: {definition.type} (this is a bug)")]
    causes: list[str] = []
    for validator in validators:
        try:
            validator(definition, value)
        except _ValidationFailure as err:
            causes.append(str(err))
    if causes:
        return [_validation_error(name, "; ".join(causes))]
    return []


def _validate(manifest: PackageManifest, values: dict[str, str | None]) -> None:
    """Validate values where None marks a value that exists but is not checked."""
    errors: list[Exception] = []
    for name, definition in sorted(manifest.value_definitions.items()):
        if name in values:
            if (value := values[name]) is not None:
                errors.extend(validate_single(name, definition, value))
        elif definition.constraints.required:
            errors.append(_validation_error(name, str(_constraint_error("Required"))))
    for name in sorted(values):
        if name not in manifest.value_definitions:
            errors.append(_validation_error(name, "no value definition found"))
    if errors:
        _LOGGER.debug("Values of %s are invalid: %s", manifest.name, errors)
        raise ValueValidationError(errors)


def validate_resolved_values(manifest: PackageManifest, values: dict[str, str]) -> None:
    """Validate resolved values, raising ValueValidationError on failure."""
    _validate(manifest, dict(values))


def validate_package_values(
    manifest: PackageManifest, values: dict[str, ValueConfiguration]
) -> None:
    """Validate the literal values of a package.

    References can only be checked after resolution and are skipped, but still
    need a matching definition.
    """
    _validate(manifest, {name: config.value for name, config in values.items()})

