"""State Machine - Definition validation and single-step transitions

The state machine is the only component that changes ``current_state`` and
the only one that fires ``onEnter``/``onExit`` hooks.
"""
from typing import Any, Dict, List, Optional

from ..domain.models import (
    AuditEntry,
    ConditionTransition,
    EventTransition,
    ProcessDefinition,
    ProcessInstance,
    StateConfig,
    StateHistoryEntry,
    TransitionDescriptor,
)
from ..domain.enums import AuditAction, CLOSED_STATUSES, ProcessStatus, SyncStatus
from ..domain.errors import (
    DefinitionValidationError,
    HookExecutionError,
    IllegalTransitionError,
    TransitionGuardError,
    UnknownStateError,
)
from ..utils.logger import get_logger
from .audit_writer import AuditWriter
from .condition_evaluator import ConditionEvaluator
from .hooks import HookRegistry

logger = get_logger(__name__)

# Terminal state names that map to a non-"completed" status
TERMINAL_STATUS_BY_NAME = {
    "cancelled": ProcessStatus.CANCELLED,
    "canceled": ProcessStatus.CANCELLED,
    "failed": ProcessStatus.FAILED,
}


class StateMachine:
    """
    State machine bound to one process definition

    Construction validates the state graph and raises
    DefinitionValidationError listing every problem found.
    """

    def __init__(
        self,
        definition: ProcessDefinition,
        evaluator: Optional[ConditionEvaluator] = None,
        hooks: Optional[HookRegistry] = None,
        audit: Optional[AuditWriter] = None
    ):
        self.definition = definition
        self.evaluator = evaluator or ConditionEvaluator()
        self.hooks = hooks or HookRegistry()
        self.audit = audit or AuditWriter()
        self.validate_definition()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_definition(self) -> None:
        """Validate the state graph; raises DefinitionValidationError"""
        errors = self.collect_errors()
        if errors:
            raise DefinitionValidationError(
                f"Invalid process definition {self.definition.id}: {errors[0]['message']}",
                details={"definition_id": self.definition.id, "errors": errors}
            )

    def collect_errors(self) -> List[Dict[str, Any]]:
        """All structural problems of the definition"""
        definition = self.definition
        states = definition.states
        errors: List[Dict[str, Any]] = []

        def add(path: str, message: str) -> None:
            errors.append({"path": path, "message": message})

        if not states:
            add("states", "Process definition must declare at least one state")
        if definition.initial_state not in states:
            add("initialState", f'Initial state "{definition.initial_state}" not found in states definition')

        for state_name, config in states.items():
            base = f"states.{state_name}"

            for target in config.transitions:
                if target not in states:
                    add(f"{base}.transitions", f'State "{state_name}" has invalid transition to "{target}"')

            for target, guard_conditions in config.guards.items():
                if target not in config.transitions:
                    add(f"{base}.guards.{target}", f'Guard for undeclared transition "{state_name}" -> "{target}"')
                for index, condition in enumerate(guard_conditions):
                    self._check_condition(condition, f"{base}.guards.{target}[{index}]", add)

            if config.auto_transition:
                for index, entry in enumerate(config.auto_transition.conditions):
                    path = f"{base}.autoTransition.conditions[{index}]"
                    if entry.to_state not in config.transitions:
                        add(path, f'Auto-transition target "{entry.to_state}" is not a declared transition of "{state_name}"')
                    if isinstance(entry, (ConditionTransition, EventTransition)):
                        for sub_index, condition in enumerate(entry.conditions):
                            self._check_condition(condition, f"{path}.conditions[{sub_index}]", add)

            for hook_name, spec in (("onEnter", config.on_enter), ("onExit", config.on_exit)):
                for action in (spec if isinstance(spec, list) else [spec] if spec is not None else []):
                    if isinstance(action, str) and not self.hooks.has(action):
                        logger.warning(
                            f"{base}.{hook_name} refers to unregistered hook handler {action}",
                            extra={"definition_id": definition.id}
                        )

        return errors

    def _check_condition(self, condition: Any, path: str, add) -> None:
        result = self.evaluator.validate_condition(condition)
        if not result["valid"]:
            add(path, result["error"])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_definition(self) -> ProcessDefinition:
        return self.definition

    def get_initial_state(self) -> str:
        return self.definition.initial_state

    def has_state(self, state_name: str) -> bool:
        return state_name in self.definition.states

    def get_state_config(self, state_name: str) -> StateConfig:
        """Get a state's configuration; raises UnknownStateError"""
        config = self.definition.states.get(state_name)
        if config is None:
            raise UnknownStateError(
                f"State not found: {state_name}",
                details={"definition_id": self.definition.id, "state": state_name}
            )
        return config

    def get_available_transitions(self, current_state: str) -> List[TransitionDescriptor]:
        """Legal next states in declared order"""
        config = self.definition.states.get(current_state)
        if config is None:
            return []
        return [
            TransitionDescriptor(target_state=target, target_config=self.definition.states[target])
            for target in config.transitions
        ]

    def is_terminal_state(self, state_name: str) -> bool:
        """True iff the state declares no outgoing transitions"""
        return self.get_state_config(state_name).is_terminal

    def get_terminal_states(self) -> List[str]:
        return [name for name, config in self.definition.states.items() if config.is_terminal]

    def can_transition(
        self,
        current_state: str,
        target_state: str,
        instance: Optional[ProcessInstance] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Check a transition without raising

        Guards are evaluated only when an instance is given.
        """
        config = self.definition.states.get(current_state)
        if config is None:
            return {"valid": False, "reason": f'Current state "{current_state}" does not exist'}

        if target_state not in config.transitions:
            return {
                "valid": False,
                "reason": f'Transition from "{current_state}" to "{target_state}" is not allowed'
            }

        guards = config.guards.get(target_state)
        if instance is not None and guards:
            check = self.evaluator.can_transition(instance, target_state, guards, context)
            if not check["allowed"]:
                return {"valid": False, "reason": check["reason"], "guard": True}

        return {"valid": True}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def execute_transition(
        self,
        instance: ProcessInstance,
        target_state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ProcessInstance:
        """
        Move the instance to target_state

        Validate-then-commit: illegal targets and failing guards raise before
        any mutation. Hook failures are audited and never undo the commit.

        Raises:
            IllegalTransitionError: target not declared from the current state
            TransitionGuardError: target declared but guard conditions not met
        """
        context = context or {}
        current_state = instance.current_state

        check = self.can_transition(current_state, target_state, instance, context)
        if not check["valid"]:
            details = {
                "process_id": instance.id,
                "from": current_state,
                "to": target_state,
                "reason": check["reason"],
            }
            if check.get("guard"):
                raise TransitionGuardError(check["reason"], details=details)
            raise IllegalTransitionError(check["reason"], details=details)

        current_config = self.definition.states[current_state]
        target_config = self.definition.states[target_state]

        await self._run_hook(current_config.on_exit, instance, context, "onExit", current_state,
                             AuditAction.EXIT_HOOK_ERROR)

        timestamp = instance.touch()
        instance.current_state = target_state
        self.audit.write_transition(instance, current_state, target_state, context, timestamp=timestamp)
        instance.sync_status = SyncStatus.PENDING

        if target_config.is_terminal:
            self._close(instance, target_state, context)

        ran_enter = await self._run_hook(target_config.on_enter, instance, context, "onEnter", target_state,
                                         AuditAction.ENTER_HOOK_ERROR)
        if ran_enter:
            instance.touch()

        logger.info(
            f"Transition {current_state} -> {target_state}",
            extra={
                "process_id": instance.id,
                "definition_id": self.definition.id,
                "from_state": current_state,
                "to_state": target_state,
            }
        )
        return instance

    async def enter_initial_state(
        self,
        instance: ProcessInstance,
        context: Optional[Dict[str, Any]] = None
    ) -> ProcessInstance:
        """Run the initial state's onEnter hook (errors are audited)"""
        config = self.get_state_config(instance.current_state)
        ran = await self._run_hook(config.on_enter, instance, context or {}, "onEnter",
                                   instance.current_state, AuditAction.INITIAL_STATE_HOOK_ERROR)
        if config.is_terminal:
            self._close(instance, instance.current_state, context or {})
        if ran:
            instance.touch()
        return instance

    def _close(self, instance: ProcessInstance, state_name: str, context: Dict[str, Any]) -> None:
        """Derive the closing status when a terminal state is entered"""
        if instance.status in CLOSED_STATUSES:
            return
        status = TERMINAL_STATUS_BY_NAME.get(state_name.lower(), ProcessStatus.COMPLETED)
        instance.status = status
        instance.completed_at = instance.updated_at
        if status == ProcessStatus.CANCELLED:
            instance.cancelled_at = instance.updated_at
            instance.cancellation_reason = context.get("reason")
        self.audit.write_process_completed(instance)

    async def _run_hook(
        self,
        spec: Any,
        instance: ProcessInstance,
        context: Dict[str, Any],
        hook: str,
        state_name: str,
        error_action: AuditAction
    ) -> bool:
        """Run a hook best-effort; returns whether a hook was configured"""
        if spec is None:
            return False
        try:
            await self.hooks.run(spec, instance, context, hook=hook, state=state_name)
        except HookExecutionError as e:
            logger.warning(
                f"{hook} hook failed: {e.message}",
                extra={"process_id": instance.id, "definition_id": self.definition.id, "action": error_action.value}
            )
            self.audit.write_hook_error(instance, error_action, e)
        return True

    # ------------------------------------------------------------------
    # Audit accessors
    # ------------------------------------------------------------------

    def add_audit_entry(
        self,
        instance: ProcessInstance,
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None
    ) -> AuditEntry:
        return self.audit.write_event(instance, action, details)

    def get_audit_log(self, instance: ProcessInstance) -> List[AuditEntry]:
        return list(instance.audit_log)

    def get_state_history(self, instance: ProcessInstance) -> List[StateHistoryEntry]:
        return list(instance.state_history)
