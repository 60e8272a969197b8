"""
Run-time validation schema generation.

generate_schema() walks the flattened field tree and builds, for the
current values snapshot, one FieldRule per leaf plus a Pydantic model that
enforces those rules. A field is required only while it is declared
required AND visible, so the schema must be regenerated whenever values
change.

Base validators are picked from a fixed dispatch table keyed by field
kind. Validation failures surface as per-field messages, never as
exceptions from the generator itself.
"""

import math
import re
from datetime import date
from typing import Annotated, Any, Callable, Mapping, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
    create_model,
)
from pydantic_core import PydanticCustomError

from dynaform.core.errors import FormValidationError
from dynaform.core.schema import FieldKind, FieldOption, flatten
from dynaform.core.utils import is_blank, parse_calendar_date
from dynaform.core.visibility import is_field_visible


class FieldRule(BaseModel):
    """Structural description of how one leaf field is validated.

    ``choices`` is None when the field's value is not restricted to a set.
    An empty tuple means the option set resolved to nothing, so only a
    blank value passes.
    """

    model_config = ConfigDict(frozen=True)

    field_id: str
    kind: FieldKind
    label: str
    required: bool
    visible: bool
    minimum: float | None = None
    maximum: float | None = None
    pattern: str | None = None
    choices: tuple[str, ...] | None = None
    message: str | None = None


# -----------------------------------------------------------------
# Validator functions
# -----------------------------------------------------------------


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)


def _require(rule: FieldRule) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if is_blank(value) or (isinstance(value, str) and not value.strip()):
            raise PydanticCustomError("required", "{label} is required", {"label": rule.label})
        return value

    return check


def _blank_to_none(value: Any) -> Any:
    return None if isinstance(value, str) and value == "" else value


def _coerce_number(rule: FieldRule) -> Callable[[Any], Any]:
    def coerce(value: Any) -> Any:
        if isinstance(value, bool):
            raise PydanticCustomError(
                "invalid_number", "{label} must be a valid number", {"label": rule.label}
            )
        if isinstance(value, int):
            return value
        if isinstance(value, float) and math.isfinite(value):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                number = float(text)
            except ValueError:
                number = None
            if number is not None and math.isfinite(number):
                return number
        raise PydanticCustomError(
            "invalid_number", "{label} must be a valid number", {"label": rule.label}
        )

    return coerce


def _check_bounds(rule: FieldRule) -> Callable[[Any], Any]:
    def check(value: Any) -> Any:
        if rule.minimum is not None and value < rule.minimum:
            raise PydanticCustomError(
                "number_too_small",
                rule.message or "{label} must be at least {min}",
                {"label": rule.label, "min": _fmt(rule.minimum)},
            )
        if rule.maximum is not None and value > rule.maximum:
            raise PydanticCustomError(
                "number_too_large",
                rule.message or "{label} must be at most {max}",
                {"label": rule.label, "max": _fmt(rule.maximum)},
            )
        return value

    return check


def _match_pattern(rule: FieldRule) -> Callable[[str], str]:
    compiled = re.compile(rule.pattern)

    def check(value: str) -> str:
        if not compiled.search(value):
            raise PydanticCustomError(
                "pattern_mismatch",
                rule.message or "{label} has an invalid format",
                {"label": rule.label},
            )
        return value

    return check


def _date_to_iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, date) else value


def _check_calendar_date(rule: FieldRule) -> Callable[[str], str]:
    def check(value: str) -> str:
        if parse_calendar_date(value) is None:
            raise PydanticCustomError(
                "invalid_date",
                "{label} must be a valid date (YYYY-MM-DD)",
                {"label": rule.label},
            )
        return value

    return check


def _check_choice(rule: FieldRule) -> Callable[[str], str]:
    def check(value: str) -> str:
        if rule.choices is not None and value not in rule.choices:
            raise PydanticCustomError(
                "invalid_choice",
                "'{value}' is not a valid option for {label}",
                {"label": rule.label, "value": value},
            )
        return value

    return check


def _check_choices(rule: FieldRule) -> Callable[[list[str]], list[str]]:
    def check(value: list[str]) -> list[str]:
        if rule.choices is not None:
            invalid = [item for item in value if item not in rule.choices]
            if invalid:
                raise PydanticCustomError(
                    "invalid_choice",
                    "Invalid options for {label}: {invalid}",
                    {"label": rule.label, "invalid": ", ".join(invalid)},
                )
        return value

    return check


# -----------------------------------------------------------------
# Dispatch table: field kind -> base validator type
# -----------------------------------------------------------------


def _text_type(rule: FieldRule) -> Any:
    if rule.pattern is None:
        return str
    return Annotated[str, AfterValidator(_match_pattern(rule))]


def _number_type(rule: FieldRule) -> Any:
    return Annotated[
        int | float,
        BeforeValidator(_coerce_number(rule)),
        AfterValidator(_check_bounds(rule)),
    ]


def _date_type(rule: FieldRule) -> Any:
    return Annotated[
        str,
        BeforeValidator(_date_to_iso),
        AfterValidator(_check_calendar_date(rule)),
    ]


def _choice_type(rule: FieldRule) -> Any:
    return Annotated[str, AfterValidator(_check_choice(rule))]


def _multi_choice_type(rule: FieldRule) -> Any:
    return Annotated[list[str], AfterValidator(_check_choices(rule))]


BASE_VALIDATORS: dict[FieldKind, Callable[[FieldRule], Any]] = {
    FieldKind.TEXT: _text_type,
    FieldKind.NUMBER: _number_type,
    FieldKind.DATE: _date_type,
    FieldKind.SELECT: _choice_type,
    FieldKind.RADIO: _choice_type,
    FieldKind.CHECKBOX: _multi_choice_type,
}


def _annotation_for(rule: FieldRule) -> Any:
    # Hidden values are never submitted, so nothing about them is checked
    if not rule.visible:
        return Any
    base = BASE_VALIDATORS[rule.kind](rule)
    if rule.required:
        return Annotated[base, BeforeValidator(_require(rule))]
    return Annotated[Optional[base], BeforeValidator(_blank_to_none)]


# -----------------------------------------------------------------
# Generated schema
# -----------------------------------------------------------------


class GeneratedSchema:
    """The validation ruleset for one values snapshot.

    Two schemas are equal when their rules are equal. ``model`` is the
    Pydantic model built from the rules; inputs and outputs use flattened
    field IDs as keys.
    """

    def __init__(self, rules: dict[str, FieldRule], model: type[BaseModel]):
        self.rules = rules
        self.model = model
        self._field_ids = {_model_field_name(i): field_id for i, field_id in enumerate(rules)}

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GeneratedSchema):
            return NotImplemented
        return self.rules == other.rules

    __hash__ = None

    def __repr__(self) -> str:
        return f"GeneratedSchema(required={self.required_fields})"

    @property
    def required_fields(self) -> list[str]:
        return [rule.field_id for rule in self.rules.values() if rule.required]

    @property
    def visible_fields(self) -> list[str]:
        return [rule.field_id for rule in self.rules.values() if rule.visible]

    def json_schema(self) -> dict[str, Any]:
        return self.model.model_json_schema(by_alias=True)

    def collect_errors(self, values: Mapping[str, Any]) -> dict[str, list[str]]:
        """Return messages per field ID; empty when the values pass."""
        try:
            self.model.model_validate(dict(values))
        except ValidationError as e:
            return _errors_by_field(e, self._field_ids)
        return {}

    def validate(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Validate values and return the cleaned values of visible fields.

        Hidden fields are left out of the result whatever their value.

        Raises:
            FormValidationError: With messages keyed by field ID.
        """
        try:
            cleaned = self.model.model_validate(dict(values)).model_dump(by_alias=True)
        except ValidationError as e:
            raise FormValidationError(_errors_by_field(e, self._field_ids)) from e
        return {
            field_id: cleaned.get(field_id)
            for field_id, rule in self.rules.items()
            if rule.visible
        }


def _model_field_name(index: int) -> str:
    return f"field_{index}"


def _errors_by_field(error: ValidationError, field_ids: Mapping[str, str]) -> dict[str, list[str]]:
    # Defaults are validated under the model field name, input under the alias
    errors: dict[str, list[str]] = {}
    for detail in error.errors():
        loc = str(detail["loc"][0]) if detail["loc"] else "__form__"
        field_id = field_ids.get(loc, loc)
        errors.setdefault(field_id, []).append(detail["msg"])
    return errors


def build_rule(field, values: Mapping[str, Any], options: list[FieldOption] | None = None) -> FieldRule:
    """Derive the FieldRule for one flattened leaf field.

    Args:
        field: A flattened leaf field.
        values: Current values snapshot.
        options: Resolved dynamic options for this field, if any.
    """
    visible = is_field_visible(field, values)
    validation = field.validation
    kind = field.kind

    choices = None
    if kind in (FieldKind.SELECT, FieldKind.RADIO, FieldKind.CHECKBOX):
        source = field.options if field.options is not None else options
        # A dynamic select with no lookup finished yet accepts any string
        if source is not None:
            choices = tuple(option.value for option in source)

    return FieldRule(
        field_id=field.id,
        kind=kind,
        label=field.label,
        required=field.required and visible,
        visible=visible,
        minimum=validation.min if validation and kind is FieldKind.NUMBER else None,
        maximum=validation.max if validation and kind is FieldKind.NUMBER else None,
        pattern=validation.pattern if validation and kind is FieldKind.TEXT else None,
        choices=choices,
        message=validation.message if validation else None,
    )


def generate_schema(
    fields: list,
    values: Mapping[str, Any],
    options: Mapping[str, list[FieldOption]] | None = None,
) -> GeneratedSchema:
    """Build the validation schema for a field tree and a values snapshot.

    Args:
        fields: The field tree (groups allowed) or its flattened leaves.
        values: Current values keyed by flattened field ID.
        options: Resolved dynamic options keyed by field ID.

    Returns:
        A new GeneratedSchema. Never raises for any values snapshot.
    """
    options = options or {}
    rules = {
        leaf.id: build_rule(leaf, values, options.get(leaf.id))
        for leaf in flatten(fields)
    }

    model_fields: dict[str, Any] = {}
    for index, rule in enumerate(rules.values()):
        model_fields[_model_field_name(index)] = (
            _annotation_for(rule),
            Field(default=None, alias=rule.field_id, validate_default=True),
        )

    model = create_model(
        "FormValues",
        __config__=ConfigDict(extra="ignore"),
        **model_fields,
    )
    return GeneratedSchema(rules, model)
