"""Process Registry - Registered definitions and their state machines"""
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import ProcessDefinition
from ..domain.errors import DefinitionValidationError, UnknownDefinitionError
from ..utils.logger import get_logger
from .audit_writer import AuditWriter
from .condition_evaluator import ConditionEvaluator
from .hooks import HookRegistry
from .state_machine import StateMachine

logger = get_logger(__name__)


class ProcessRegistry:
    """Owns process definitions; re-registering an id replaces it"""

    def __init__(
        self,
        evaluator: Optional[ConditionEvaluator] = None,
        hooks: Optional[HookRegistry] = None,
        audit: Optional[AuditWriter] = None
    ):
        self.evaluator = evaluator or ConditionEvaluator()
        self.hooks = hooks or HookRegistry()
        self.audit = audit or AuditWriter()
        self._machines: Dict[str, StateMachine] = {}
        self._on_registered: List[Callable[[ProcessDefinition], None]] = []

    def register_definition(self, definition: Union[ProcessDefinition, Dict[str, Any]]) -> StateMachine:
        """
        Validate and store a definition

        Raises:
            DefinitionValidationError: malformed shape or state graph
        """
        if not isinstance(definition, ProcessDefinition):
            try:
                definition = ProcessDefinition.model_validate(definition)
            except PydanticValidationError as e:
                errors = [
                    {"path": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
                    for err in e.errors()
                ]
                raise DefinitionValidationError(
                    f"Invalid process definition: {errors[0]['path']}: {errors[0]['message']}",
                    details={"errors": errors}
                ) from e

        machine = StateMachine(definition, self.evaluator, self.hooks, self.audit)
        replaced = definition.id in self._machines
        self._machines[definition.id] = machine

        logger.info(
            f"Process definition {'re-registered' if replaced else 'registered'}: {definition.id} v{definition.version}",
            extra={"definition_id": definition.id}
        )
        for callback in list(self._on_registered):
            try:
                callback(definition)
            except Exception as e:
                logger.error(
                    f"Definition registration listener failed: {e}",
                    exc_info=True,
                    extra={"definition_id": definition.id}
                )
        return machine

    def on_registered(self, callback: Callable[[ProcessDefinition], None]) -> Callable[[], None]:
        """Call ``callback(definition)`` after every registration; returns an unsubscribe callable"""
        self._on_registered.append(callback)

        def unsubscribe() -> None:
            if callback in self._on_registered:
                self._on_registered.remove(callback)

        return unsubscribe

    def unregister_definition(self, definition_id: str) -> bool:
        return self._machines.pop(definition_id, None) is not None

    def has_definition(self, definition_id: str) -> bool:
        return definition_id in self._machines

    def get_state_machine(self, definition_id: str) -> StateMachine:
        """Raises UnknownDefinitionError if not registered"""
        machine = self._machines.get(definition_id)
        if machine is None:
            raise UnknownDefinitionError(
                f"Process definition not found: {definition_id}",
                details={"definition_id": definition_id}
            )
        return machine

    def get_definition(self, definition_id: str) -> ProcessDefinition:
        return self.get_state_machine(definition_id).definition

    def list_definitions(self) -> List[ProcessDefinition]:
        return [machine.definition for machine in self._machines.values()]

    def clear(self) -> None:
        self._machines.clear()
