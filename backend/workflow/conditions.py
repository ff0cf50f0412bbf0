"""Condition evaluation for conditional dependency edges.

A condition is either simple::

    {"type": "simple", "field": "step.data.amount", "operator": ">", "value": 500}

or compound::

    {"type": "compound", "logic": "AND", "conditions": [...]}

Fields are dot paths resolved against a context built from the source step
and its instance (see ``build_condition_context``). Evaluation never raises:
malformed conditions or operator errors come back as an unsuccessful
``ConditionResult`` whose value is ``False``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
import structlog
from pydantic import BaseModel, Field, TypeAdapter, model_validator

from core.exceptions import ValidationError, WorkflowError

logger = structlog.get_logger(__name__)

_MISSING = object()


class ConditionValidationError(ValidationError):
    """Condition config is malformed."""


class ConditionEvaluationError(WorkflowError):
    """Operator could not be applied to the resolved values."""

    def __init__(self, message: str):
        super().__init__(message, 422)


class ConditionOperator(str, Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    NOT_IN = "notIn"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"
    IS_EMPTY = "isEmpty"
    IS_NOT_EMPTY = "isNotEmpty"


NO_VALUE_OPERATORS = frozenset(
    {
        ConditionOperator.EXISTS,
        ConditionOperator.NOT_EXISTS,
        ConditionOperator.IS_EMPTY,
        ConditionOperator.IS_NOT_EMPTY,
    }
)


class SimpleCondition(BaseModel):
    type: Literal["simple"] = "simple"
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def _value_required(self):
        if self.operator not in NO_VALUE_OPERATORS and "value" not in self.model_fields_set:
            raise ValueError(f"Operator '{self.operator.value}' requires a 'value' to be specified")
        return self


class CompoundCondition(BaseModel):
    type: Literal["compound"] = "compound"
    logic: Literal["AND", "OR"]
    conditions: list["Condition"] = Field(min_length=1)


Condition = Annotated[Union[SimpleCondition, CompoundCondition], Field(discriminator="type")]
CompoundCondition.model_rebuild()

_condition_adapter = TypeAdapter(Condition)


@dataclass
class ConditionResult:
    success: bool
    value: bool
    error: Optional[str] = None


def is_condition(config: Optional[dict]) -> bool:
    """Edge configs that carry a ``type`` key are conditions."""
    return isinstance(config, dict) and config.get("type") in ("simple", "compound")


def parse_condition(config: Any) -> Union[SimpleCondition, CompoundCondition]:
    if isinstance(config, (SimpleCondition, CompoundCondition)):
        return config
    if not isinstance(config, dict):
        raise ConditionValidationError("Condition must be an object")
    try:
        return _condition_adapter.validate_python(config)
    except pydantic.ValidationError as e:
        raise ConditionValidationError(f"Invalid condition: {e.errors()[0]['msg']}") from e


def resolve_field(path: str, context: Any) -> Any:
    """Follow a dot path through nested mappings; ``_MISSING`` when absent."""
    value = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def build_condition_context(step, instance=None) -> dict[str, Any]:
    """Context a condition sees when gating an edge out of ``step``."""
    context: dict[str, Any] = {
        "step": {
            "id": step.id,
            "data": step.data,
            "config": step.config,
            "order": step.order,
            "actionType": step.action_type.value,
            "state": step.action_state.value,
        },
        "workflow": {"context": {}, "instance": {}},
    }
    if instance is not None:
        context["workflow"] = {
            "context": instance.context,
            "instance": {
                "id": instance.id,
                "status": instance.status.value,
                "matterId": instance.matter_id,
                "contactId": instance.contact_id,
            },
        }
    return context


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def _numeric(operator: ConditionOperator, left: Any, right: Any) -> tuple[float, float]:
    for operand in (left, right):
        if isinstance(operand, bool) or not isinstance(operand, (int, float)):
            raise ConditionEvaluationError(f"Operator '{operator.value}' requires numeric values")
    return left, right


def apply_operator(operator: ConditionOperator, field_value: Any, compare_value: Any) -> bool:
    if operator == ConditionOperator.EQ:
        return field_value is not _MISSING and field_value == compare_value
    if operator == ConditionOperator.NE:
        return field_value is _MISSING or field_value != compare_value
    if operator in (ConditionOperator.GT, ConditionOperator.LT, ConditionOperator.GE, ConditionOperator.LE):
        left, right = _numeric(operator, field_value, compare_value)
        return {
            ConditionOperator.GT: left > right,
            ConditionOperator.LT: left < right,
            ConditionOperator.GE: left >= right,
            ConditionOperator.LE: left <= right,
        }[operator]
    if operator == ConditionOperator.CONTAINS:
        if isinstance(field_value, (list, tuple, set)):
            return compare_value in field_value
        return str(compare_value) in _as_text(field_value)
    if operator == ConditionOperator.STARTS_WITH:
        return _as_text(field_value).startswith(str(compare_value))
    if operator == ConditionOperator.ENDS_WITH:
        return _as_text(field_value).endswith(str(compare_value))
    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        if not isinstance(compare_value, (list, tuple, set)):
            raise ConditionEvaluationError(
                f"Operator '{operator.value}' requires an array as comparison value"
            )
        found = field_value is not _MISSING and field_value in compare_value
        return found if operator == ConditionOperator.IN else not found
    if operator == ConditionOperator.EXISTS:
        return field_value is not _MISSING and field_value is not None
    if operator == ConditionOperator.NOT_EXISTS:
        return field_value is _MISSING or field_value is None
    if operator == ConditionOperator.IS_EMPTY:
        return _is_empty(field_value)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(field_value)
    raise ConditionEvaluationError(f"Unknown operator: {operator}")


def _as_text(value: Any) -> str:
    return "" if value is _MISSING or value is None else str(value)


class ConditionEvaluator:
    """Evaluates simple and compound conditions against a context dict."""

    def evaluate(self, condition: Any, context: dict[str, Any]) -> ConditionResult:
        try:
            parsed = parse_condition(condition)
            return ConditionResult(success=True, value=self._evaluate(parsed, context))
        except (ConditionValidationError, ConditionEvaluationError) as e:
            logger.warning("condition_evaluation_failed", error=e.message)
            return ConditionResult(success=False, value=False, error=e.message)

    def validate(self, condition: Any) -> None:
        """Raise ``ConditionValidationError`` if the condition is malformed."""
        parse_condition(condition)

    def _evaluate(self, condition, context: dict[str, Any]) -> bool:
        if isinstance(condition, SimpleCondition):
            return apply_operator(
                condition.operator,
                resolve_field(condition.field, context),
                condition.value,
            )
        results = (self._evaluate(nested, context) for nested in condition.conditions)
        if condition.logic == "AND":
            return all(results)
        return any(results)
