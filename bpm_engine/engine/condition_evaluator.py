"""Condition Evaluator - Safe evaluation of declarative conditions

Conditions are a closed tagged union (see ``domain.models.Condition``);
operators are a name -> predicate registry. Nothing is ever ``eval``'d.
Evaluation fails closed: any error is logged and yields ``False``.
"""
import inspect
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from ..domain.models import (
    AutoTransitionConfig,
    AutoTransitionMatch,
    Condition,
    ConditionTransition,
    CustomCondition,
    EventTransition,
    ExpressionCondition,
    ImmediateTransition,
    PermissionCondition,
    ProcessInstance,
    StateCondition,
    TimeCondition,
    TimerTransition,
    VariableCondition,
)
from ..domain.enums import LogicalOperator
from ..utils.time import coerce_datetime, duration_to_ms, elapsed_ms
from ..utils.logger import get_logger
from .permission_guard import has_permission

logger = get_logger(__name__)

OperatorFn = Callable[..., bool]
Predicate = Callable[[ProcessInstance, Dict[str, Any]], Any]
ConditionLike = Union[Condition, Dict[str, Any]]

_condition_adapter: TypeAdapter = TypeAdapter(Condition)


def _ordered(compare: Callable[[Any, Any], bool]) -> OperatorFn:
    """Ordering comparison; incomparable or missing values are False"""
    def op(a: Any, b: Any = None) -> bool:
        if a is None or b is None:
            return False
        try:
            return bool(compare(a, b))
        except TypeError:
            return False
    return op


def _contains(a: Any, b: Any = None) -> bool:
    if a is None:
        return False
    if isinstance(a, (list, tuple, set, frozenset, dict)):
        return b in a
    return str(b) in str(a)


def _starts_with(a: Any, b: Any = None) -> bool:
    return a is not None and str(a).startswith(str(b))


def _ends_with(a: Any, b: Any = None) -> bool:
    return a is not None and str(a).endswith(str(b))


def _matches(a: Any, pattern: Any = None) -> bool:
    if a is None or pattern is None:
        return False
    try:
        return re.search(str(pattern), str(a)) is not None
    except re.error:
        logger.warning(f"Invalid regular expression: {pattern}")
        return False


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


BUILTIN_OPERATORS: Dict[str, OperatorFn] = {
    # Comparison
    "eq": lambda a, b=None: a == b,
    "ne": lambda a, b=None: a != b,
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    # String
    "contains": _contains,
    "startsWith": _starts_with,
    "endsWith": _ends_with,
    "matches": _matches,
    # Collection
    "in": lambda a, b=None: _is_collection(b) and a in b,
    "notIn": lambda a, b=None: _is_collection(b) and a not in b,
    # Existence
    "exists": lambda a, *_: a is not None,
    "notExists": lambda a, *_: a is None,
    # Type predicates
    "isString": lambda a, *_: isinstance(a, str),
    "isNumber": lambda a, *_: _is_number(a),
    "isBoolean": lambda a, *_: isinstance(a, bool),
    "isArray": lambda a, *_: isinstance(a, (list, tuple)),
    "isObject": lambda a, *_: isinstance(a, dict),
    # Logical (variadic)
    "and": lambda *args: all(arg is True for arg in args),
    "or": lambda *args: any(arg is True for arg in args),
    "not": lambda a, *_: not a,
}


def get_nested_value(obj: Any, path: Optional[str]) -> Any:
    """
    Get value using dot notation

    Example: "customer.address.city" -> obj["customer"]["address"]["city"].
    Numeric segments index into lists.
    """
    if not path or obj is None:
        return None

    value = obj
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            value = value[index] if index < len(value) else None
        else:
            return None
    return value


def parse_condition(condition: ConditionLike) -> Condition:
    """
    Parse a raw dict into the condition union

    Raises:
        pydantic.ValidationError: unknown type or missing fields
    """
    if isinstance(condition, (VariableCondition, StateCondition, TimeCondition,
                              CustomCondition, PermissionCondition, ExpressionCondition)):
        return condition
    return _condition_adapter.validate_python(condition)


class ConditionEvaluator:
    """
    Evaluate conditions against a process instance and an ambient context

    The context is a plain dict supplied by the caller (``userRole``,
    ``userId``, event payloads, ...).
    """

    def __init__(self):
        self._operators: Dict[str, OperatorFn] = dict(BUILTIN_OPERATORS)
        self._predicates: Dict[str, Predicate] = {}

    # ------------------------------------------------------------------
    # Registries
    # ------------------------------------------------------------------

    def register_operator(self, name: str, fn: OperatorFn) -> None:
        """Register (or replace) an operator"""
        if not callable(fn):
            raise TypeError("Operator must be callable")
        self._operators[name] = fn
        logger.info(f"Custom operator registered: {name}")

    def get_operators(self) -> List[str]:
        return list(self._operators.keys())

    def has_operator(self, name: str) -> bool:
        return name in self._operators

    def register_predicate(self, name: str, fn: Predicate) -> None:
        """Register a named predicate for ``custom`` conditions"""
        if not callable(fn):
            raise TypeError("Predicate must be callable")
        self._predicates[name] = fn
        logger.info(f"Custom predicate registered: {name}")

    def has_predicate(self, name: str) -> bool:
        return name in self._predicates

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_condition(
        self,
        condition: ConditionLike,
        instance: ProcessInstance,
        context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Evaluate a single condition; never raises"""
        context = context or {}
        try:
            parsed = parse_condition(condition)
        except PydanticValidationError as e:
            logger.warning(
                f"Invalid condition, evaluating to false: {e.errors()[0].get('msg', e)}",
                extra={"process_id": instance.id}
            )
            return False

        try:
            return self._dispatch(parsed, instance, context)
        except Exception as e:
            logger.warning(
                f"Condition evaluation failed: {e}",
                extra={"process_id": instance.id}
            )
            return False  # Fail closed

    def evaluate_conditions(
        self,
        conditions: Optional[Iterable[ConditionLike]],
        instance: ProcessInstance,
        context: Optional[Dict[str, Any]] = None,
        operator: Union[LogicalOperator, str] = LogicalOperator.AND
    ) -> bool:
        """
        Evaluate a list of conditions combined with and / or / not

        An empty list is vacuously true. ``not`` negates the first result.
        """
        conditions = list(conditions or [])
        if not conditions:
            return True

        results = [self.evaluate_condition(c, instance, context) for c in conditions]
        return self._combine(getattr(operator, "value", operator), results)

    def can_transition(
        self,
        instance: ProcessInstance,
        target_state: str,
        conditions: Optional[Iterable[ConditionLike]],
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Check guard conditions for a transition (all must hold)"""
        if self.evaluate_conditions(conditions, instance, context, LogicalOperator.AND):
            return {"allowed": True}
        return {
            "allowed": False,
            "reason": f"Transition conditions not met for {target_state}"
        }

    def find_matching_auto_transition(
        self,
        config: Optional[Union[AutoTransitionConfig, Dict[str, Any]]],
        instance: ProcessInstance,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[AutoTransitionMatch]:
        """
        First auto-transition entry (declared order) whose predicate holds

        Timer entries belong to the scheduler and event entries to event
        subscriptions; both are skipped. Immediate entries always hold.
        """
        if not config:
            return None
        if isinstance(config, dict):
            try:
                config = AutoTransitionConfig.model_validate(config)
            except PydanticValidationError as e:
                logger.warning(f"Invalid auto-transition config: {e}")
                return None

        for entry in config.conditions:
            if isinstance(entry, (TimerTransition, EventTransition)):
                continue
            if isinstance(entry, ImmediateTransition):
                matched = True
            elif isinstance(entry, ConditionTransition):
                matched = self.evaluate_conditions(entry.conditions, instance, context, entry.operator)
            else:
                logger.warning(f"Unknown auto-transition type: {getattr(entry, 'type', entry)}")
                matched = False

            if matched:
                return AutoTransitionMatch(to_state=entry.to_state, condition=entry)

        return None

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_condition(self, condition: ConditionLike) -> Dict[str, Any]:
        """Structural check of a condition: {valid, error}"""
        if not isinstance(condition, (dict, VariableCondition, StateCondition, TimeCondition,
                                      CustomCondition, PermissionCondition, ExpressionCondition)):
            return {"valid": False, "error": "Condition must be an object"}
        if isinstance(condition, dict) and not condition.get("type"):
            return {"valid": False, "error": "Condition must have a type"}

        try:
            parsed = parse_condition(condition)
        except PydanticValidationError as e:
            first = e.errors()[0]
            location = ".".join(str(part) for part in first.get("loc", ()))
            return {"valid": False, "error": f"{location}: {first.get('msg')}".strip(": ")}

        error = self._semantic_error(parsed)
        if error:
            return {"valid": False, "error": error}
        return {"valid": True, "error": None}

    def _semantic_error(self, condition: Condition) -> Optional[str]:
        if isinstance(condition, (VariableCondition, StateCondition, TimeCondition)):
            if not self.has_operator(condition.operator):
                return f"Unknown operator: {condition.operator}"
        if isinstance(condition, StateCondition) and condition.value is None:
            return "State condition must have a value"
        if isinstance(condition, CustomCondition) and condition.fn is None and not condition.name:
            return "Custom condition must have a function or a predicate name"
        if isinstance(condition, ExpressionCondition):
            if not condition.conditions:
                return "Expression condition must have conditions"
            for sub in condition.conditions:
                error = self._semantic_error(sub)
                if error:
                    return error
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dispatch(self, condition: Condition, instance: ProcessInstance, context: Dict[str, Any]) -> bool:
        if isinstance(condition, VariableCondition):
            return self._evaluate_variable(condition, instance)
        if isinstance(condition, StateCondition):
            return self._apply(condition.operator, instance.current_state, condition.value)
        if isinstance(condition, TimeCondition):
            return self._evaluate_time(condition, instance)
        if isinstance(condition, CustomCondition):
            return self._evaluate_custom(condition, instance, context)
        if isinstance(condition, PermissionCondition):
            user_role = context.get("userRole", context.get("user_role"))
            return has_permission(user_role, condition.required_role)
        if isinstance(condition, ExpressionCondition):
            results = [self.evaluate_condition(c, instance, context) for c in condition.conditions]
            if not results:
                logger.warning("Expression condition without sub-conditions")
                return False
            return self._combine(condition.expression.value, results)

        logger.warning(f"Unknown condition type: {getattr(condition, 'type', condition)}")
        return False

    def _evaluate_variable(self, condition: VariableCondition, instance: ProcessInstance) -> bool:
        field_value = get_nested_value(instance.variables, condition.field)
        compare_value = condition.value
        if condition.compare_field:
            compare_value = get_nested_value(instance.variables, condition.compare_field)
        return self._apply(condition.operator, field_value, compare_value)

    def _evaluate_time(self, condition: TimeCondition, instance: ProcessInstance) -> bool:
        raw = get_nested_value(instance.model_dump(by_alias=True), condition.field)
        if raw is None:
            raw = get_nested_value(instance.model_dump(), condition.field)
        timestamp = coerce_datetime(raw)
        if timestamp is None:
            return False

        threshold = duration_to_ms(condition.value, condition.unit)
        return self._apply(condition.operator, elapsed_ms(timestamp), threshold)

    def _evaluate_custom(
        self,
        condition: CustomCondition,
        instance: ProcessInstance,
        context: Dict[str, Any]
    ) -> bool:
        fn = condition.fn
        if fn is None and condition.name:
            fn = self._predicates.get(condition.name)
            if fn is None:
                logger.warning(f"Unknown predicate: {condition.name}")
                return False
        if fn is None:
            logger.warning("Custom condition must have a function")
            return False

        result = fn(instance, context)
        if inspect.isawaitable(result):
            if inspect.iscoroutine(result):
                result.close()
            logger.warning("Custom predicates must be synchronous")
            return False
        return bool(result)

    def _apply(self, operator: str, left: Any, right: Any) -> bool:
        fn = self._operators.get(operator)
        if fn is None:
            logger.warning(f"Unknown operator: {operator}")
            return False
        return bool(fn(left, right))

    def _combine(self, operator: str, results: List[bool]) -> bool:
        if operator == LogicalOperator.AND.value:
            return all(results)
        if operator == LogicalOperator.OR.value:
            return any(results)
        if operator == LogicalOperator.NOT.value:
            return not results[0]
        logger.warning(f"Unknown logical operator: {operator}")
        return False
