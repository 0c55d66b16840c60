"""Variable Schema - Validate process variables against a definition"""
import copy
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from ..domain.models import VariableSpec
from ..domain.enums import VariableType
from ..domain.errors import VariableValidationError
from ..utils.time import parse_iso
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, str):
        try:
            parse_iso(value)
            return True
        except (ValueError, OverflowError):
            return False
    return False


_TYPE_CHECKS = {
    VariableType.STRING: lambda v: isinstance(v, str),
    VariableType.NUMBER: _is_number,
    VariableType.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
    VariableType.BOOLEAN: lambda v: isinstance(v, bool),
    VariableType.DATE: _is_date,
    VariableType.ARRAY: lambda v: isinstance(v, (list, tuple)),
    VariableType.OBJECT: lambda v: isinstance(v, dict),
    VariableType.ANY: lambda v: True,
}


class VariableSchemaValidator:
    """
    Apply defaults and validate variables at process creation

    Only declared variables are checked; undeclared keys pass through.
    ``min``/``max`` bound numbers by value and strings/arrays by length.
    """

    def apply_defaults(
        self,
        schema: Dict[str, VariableSpec],
        variables: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Return a copy of variables with schema defaults filled in"""
        result = dict(variables or {})
        for name, spec in schema.items():
            if result.get(name) is None and spec.default is not None:
                result[name] = copy.deepcopy(spec.default)
        return result

    def validate(
        self,
        schema: Dict[str, VariableSpec],
        variables: Optional[Dict[str, Any]],
        definition_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Validate and return variables with defaults applied

        Raises:
            VariableValidationError: with every problem listed in details["errors"]
        """
        values = self.apply_defaults(schema, variables)
        errors: List[Dict[str, Any]] = []
        for name, spec in schema.items():
            self._check(name, spec, values.get(name), errors)

        if errors:
            logger.info(
                f"Variable validation failed with {len(errors)} error(s)",
                extra={"definition_id": definition_id, "status": "invalid"}
            )
            raise VariableValidationError(
                "Process variables do not match the definition schema",
                details={"definition_id": definition_id, "errors": errors}
            )
        return values

    def _check(self, path: str, spec: VariableSpec, value: Any, errors: List[Dict[str, Any]]) -> None:
        if value is None or value == "":
            if spec.required:
                errors.append({"field": path, "message": f"{path} is required"})
            return

        type_check = _TYPE_CHECKS.get(spec.type, _TYPE_CHECKS[VariableType.ANY])
        if not type_check(value):
            errors.append({"field": path, "message": f"{path} must be of type {spec.type.value}"})
            return

        if spec.enum is not None and value not in spec.enum:
            errors.append({"field": path, "message": f"{path} must be one of {spec.enum}"})

        measure = value
        if isinstance(value, (str, list, tuple)) and spec.type != VariableType.DATE:
            measure = len(value)
        if _is_number(measure):
            if spec.min is not None and measure < spec.min:
                errors.append({"field": path, "message": f"{path} must be at least {spec.min}"})
            if spec.max is not None and measure > spec.max:
                errors.append({"field": path, "message": f"{path} must be at most {spec.max}"})

        if spec.pattern and isinstance(value, str):
            try:
                if not re.search(spec.pattern, value):
                    errors.append({"field": path, "message": f"{path} has invalid format"})
            except re.error:
                errors.append({"field": path, "message": f"{path} has an invalid pattern"})

        if spec.items is not None and isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                self._check(f"{path}[{index}]", spec.items, item, errors)

        if spec.properties and isinstance(value, dict):
            for key, sub_spec in spec.properties.items():
                self._check(f"{path}.{key}", sub_spec, value.get(key), errors)
