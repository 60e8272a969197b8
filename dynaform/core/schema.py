"""
Form configuration models and field-tree helpers.

These Pydantic models describe a form entirely as data: the field tree,
validation rules, visibility conditions and option sources. A field is a
closed tagged union discriminated on ``type``; each variant carries only
the attributes that make sense for its kind.

Field IDs are unique among siblings. Flattening joins ancestor group IDs
with SEPARATOR to build the identifier used in form values, which must be
unique across the whole form.
"""

import logging
import re
from enum import Enum
from functools import cached_property
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator

logger = logging.getLogger(__name__)

SEPARATOR = "."


# --- Enums ---


class FieldKind(str, Enum):
    """Supported form field kinds."""

    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    GROUP = "group"


LEAF_KINDS = frozenset(kind for kind in FieldKind if kind is not FieldKind.GROUP)


class ConditionOperator(str, Enum):
    """Known operators for visibility conditions.

    Conditions carrying any other operator string still load; the
    evaluator treats them as passing.
    """

    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"


class _ConfigModel(BaseModel):
    """Base for config models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(populate_by_name=True)


# --- Field building blocks ---


class FieldOption(_ConfigModel):
    """A label/value pair offered by a selection field.

    A bare string is accepted and used as both label and value.
    """

    label: str
    value: str

    @model_validator(mode="before")
    @classmethod
    def coerce_plain_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"label": data, "value": data}
        return data


class VisibilityCondition(_ConfigModel):
    """Shows the owning field only when another field's value matches."""

    depends_on: str = Field(
        ...,
        alias="dependsOn",
        min_length=1,
        description="Flattened ID of the field whose value is tested",
    )
    condition: ConditionOperator | str = Field(
        ...,
        union_mode="left_to_right",
        description="Comparison to apply (unknown kinds evaluate as visible)",
    )
    value: str | int | float | bool | None = Field(
        default=None,
        description="Value compared against the dependency's current value",
    )


class ValidationRule(_ConfigModel):
    """Kind-specific constraints: min/max for numbers, pattern for text."""

    min: float | None = None
    max: float | None = None
    pattern: str | None = None
    message: str | None = Field(
        default=None,
        description="Custom message used in place of the default one",
    )

    @field_validator("pattern")
    @classmethod
    def pattern_compiles(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as e:
                raise ValueError(f"Invalid pattern '{value}': {e}") from e
        return value


class DynamicOptionsConfig(_ConfigModel):
    """Fetch a select field's options keyed by another field's value."""

    depends_on: str = Field(..., alias="dependsOn", min_length=1)
    endpoint: str = Field(..., min_length=1)
    method: Literal["GET", "POST"] = "GET"


# --- Field variants ---


class _BaseField(_ConfigModel):
    id: str = Field(..., min_length=1, description="Identifier unique among siblings")
    label: str
    required: bool = False
    placeholder: str | None = None
    validation: ValidationRule | None = None
    visibility: VisibilityCondition | None = None
    # Conditions of enclosing groups, filled in by flatten()
    _inherited_visibility: list[VisibilityCondition] = PrivateAttr(default_factory=list)

    @field_validator("id")
    @classmethod
    def id_has_no_separator(cls, value: str) -> str:
        if SEPARATOR in value:
            raise ValueError(f"Field ID '{value}' must not contain '{SEPARATOR}'")
        return value

    @property
    def kind(self) -> FieldKind:
        return FieldKind(self.type)

    @property
    def conditions(self) -> list[VisibilityCondition]:
        """Every condition gating this field: enclosing groups first, then its own."""
        own = [self.visibility] if self.visibility is not None else []
        return [*self._inherited_visibility, *own]


class TextField(_BaseField):
    type: Literal["text"] = "text"


class NumberField(_BaseField):
    type: Literal["number"] = "number"


class DateField(_BaseField):
    type: Literal["date"] = "date"


class SelectField(_BaseField):
    """Dropdown with static options or options fetched by dependency."""

    type: Literal["select"] = "select"
    options: list[FieldOption] | None = None
    dynamic_options: DynamicOptionsConfig | None = Field(default=None, alias="dynamicOptions")

    @model_validator(mode="after")
    def validate_option_source(self) -> "SelectField":
        if self.options is not None and self.dynamic_options is not None:
            raise ValueError(
                f"Field '{self.id}' must define either 'options' or 'dynamicOptions', not both"
            )
        if not self.options and self.dynamic_options is None:
            raise ValueError(
                f"Field '{self.id}' of type 'select' must have 'options' or 'dynamicOptions'"
            )
        return self


class RadioField(_BaseField):
    type: Literal["radio"] = "radio"
    options: list[FieldOption] = Field(..., min_length=1)


class CheckboxField(_BaseField):
    type: Literal["checkbox"] = "checkbox"
    options: list[FieldOption] = Field(..., min_length=1)


class GroupField(_BaseField):
    """Structural node: holds child fields, never a value of its own."""

    type: Literal["group"] = "group"
    fields: list["FormField"] = Field(..., min_length=1)


LeafField = Union[TextField, NumberField, DateField, SelectField, RadioField, CheckboxField]

FormField = Annotated[
    Union[TextField, NumberField, DateField, SelectField, RadioField, CheckboxField, GroupField],
    Field(discriminator="type"),
]

GroupField.model_rebuild()


# --- Form configuration ---


class FormSection(_ConfigModel):
    """A named block of top-level fields."""

    id: str
    title: str
    fields: list[FormField] = Field(default_factory=list)


class FormConfig(_ConfigModel):
    """A complete, immutable form description.

    Fields may be given directly or grouped into sections; when only
    sections are given they are folded into ``fields`` in declaration
    order. Validates ID uniqueness, dependency references and visibility
    cycles.
    """

    form_id: str = Field(..., alias="formId", min_length=1)
    title: str
    type: str | None = Field(default=None, description="Product tag, e.g. 'health' or 'car'")
    fields: list[FormField] = Field(default_factory=list)
    sections: list[FormSection] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_field_tree(self) -> "FormConfig":
        if self.sections and not self.fields:
            self.fields = [field for section in self.sections for field in section.fields]
        if not self.fields:
            raise ValueError(f"Form '{self.form_id}' must define at least one field")

        _check_sibling_ids(self.fields, prefix="")

        leaves = flatten(self.fields)
        seen: set[str] = set()
        for leaf in leaves:
            if leaf.id in seen:
                raise ValueError(f"Duplicate flattened field ID: '{leaf.id}'")
            seen.add(leaf.id)

        for leaf in leaves:
            for condition in leaf.conditions:
                if condition.depends_on not in seen:
                    raise ValueError(
                        f"Field '{leaf.id}' has visibility referencing "
                        f"non-existent field '{condition.depends_on}'"
                    )
                if not isinstance(condition.condition, ConditionOperator):
                    logger.warning(
                        "Field '%s' uses unknown visibility condition '%s'; it will always pass",
                        leaf.id,
                        condition.condition,
                    )
            if isinstance(leaf, SelectField) and leaf.dynamic_options is not None:
                source = leaf.dynamic_options.depends_on
                if source not in seen:
                    raise ValueError(
                        f"Field '{leaf.id}' has dynamicOptions referencing "
                        f"non-existent field '{source}'"
                    )
                if source == leaf.id:
                    raise ValueError(f"Field '{leaf.id}' has dynamicOptions depending on itself")

        _check_visibility_cycles(leaves)
        return self

    @cached_property
    def leaf_fields(self) -> list[LeafField]:
        """The flattened, data-bearing fields of this form."""
        return flatten(self.fields)


def _check_sibling_ids(fields: list, prefix: str) -> None:
    ids: set[str] = set()
    for field in fields:
        if field.id in ids:
            raise ValueError(f"Duplicate field ID '{field.id}' in '{prefix or '<root>'}'")
        ids.add(field.id)
        if isinstance(field, GroupField):
            _check_sibling_ids(field.fields, prefix=f"{prefix}{field.id}{SEPARATOR}")


def _check_visibility_cycles(leaves: list[LeafField]) -> None:
    """Reject fields whose visibility (transitively) depends on themselves."""
    edges = {leaf.id: [c.depends_on for c in leaf.conditions] for leaf in leaves}
    done: set[str] = set()

    def visit(node: str, path: list[str]) -> None:
        if node in path:
            cycle = " -> ".join(path[path.index(node):] + [node])
            raise ValueError(f"Visibility dependency cycle: {cycle}")
        if node in done:
            return
        for target in edges.get(node, []):
            visit(target, path + [node])
        done.add(node)

    for leaf_id in edges:
        visit(leaf_id, [])


# --- Tree helpers ---


def flatten(
    fields: list,
    prefix: str = "",
    inherited: list[VisibilityCondition] | None = None,
) -> list[LeafField]:
    """Return leaf fields in declaration order with fully-qualified IDs.

    Groups are descended into and never emitted. Each emitted copy carries
    the visibility conditions of its enclosing groups.
    """
    inherited = inherited or []
    leaves: list[LeafField] = []
    for field in fields:
        qualified = f"{prefix}{field.id}"
        if isinstance(field, GroupField):
            group_conditions = inherited + ([field.visibility] if field.visibility is not None else [])
            leaves.extend(flatten(field.fields, f"{qualified}{SEPARATOR}", group_conditions))
        else:
            leaf = field.model_copy(update={"id": qualified})
            leaf._inherited_visibility = [*inherited, *field._inherited_visibility]
            leaves.append(leaf)
    return leaves


def lookup(fields: list, field_id: str) -> LeafField | None:
    """Find a leaf field by its flattened ID, or None."""
    for leaf in flatten(fields):
        if leaf.id == field_id:
            return leaf
    return None


def initial_values(fields: list) -> dict[str, Any]:
    """Blank value for every leaf: an empty list for checkboxes, else ''."""
    return {
        leaf.id: [] if leaf.kind is FieldKind.CHECKBOX else ""
        for leaf in flatten(fields)
    }


def get_value(values: dict[str, Any], field_id: str) -> Any:
    """Read a value by flattened ID from flat or group-nested values."""
    if field_id in values:
        return values[field_id]
    current: Any = values
    for part in field_id.split(SEPARATOR):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def normalize_values(fields: list, values: dict[str, Any]) -> dict[str, Any]:
    """Convert flat or nested input values to a flat mapping of known leaf IDs.

    Keys that name no leaf field are dropped.
    """
    flat: dict[str, Any] = {}
    for leaf in flatten(fields):
        value = get_value(values, leaf.id)
        if value is not None or leaf.id in values:
            flat[leaf.id] = value
    return flat
