"""Process Service - Definition registration and process lifecycle

Public entry point of the engine. Mutating operations are serialized per
process id with an ``asyncio.Lock``; events are published on the bus after
the lock is released so that listeners (e.g. the transition engine) may
call back into the service for the same process.
"""
import asyncio
import weakref
from typing import Any, Dict, List, Optional, Tuple, Union

from ..domain.models import (
    AuditEntry,
    ProcessDefinition,
    ProcessInstance,
    ProcessPage,
    ProcessQuery,
    StateHistoryEntry,
    TransitionDescriptor,
)
from ..domain.enums import CLOSED_STATUSES, ProcessEvent, ProcessStatus, SyncStatus
from ..domain.errors import InvalidStateError, TransitionGuardError, UnknownDefinitionError
from ..engine.audit_writer import AuditWriter, sanitize
from ..engine.registry import ProcessRegistry
from ..engine.state_machine import StateMachine
from ..engine.variable_schema import VariableSchemaValidator
from ..repositories.process_store import ProcessStore
from ..utils.events import EventBus
from ..utils.idgen import generate_process_id
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)

CANCELLED_STATE = "cancelled"


def _diff(before: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Changed keys as {key: {old, new}}"""
    return {
        key: {"old": before.get(key), "new": value}
        for key, value in updates.items()
        if key not in before or before[key] != value
    }


class ProcessService:
    """Service for process definitions and instances"""

    def __init__(
        self,
        registry: ProcessRegistry,
        store: ProcessStore,
        bus: EventBus,
        schema_validator: Optional[VariableSchemaValidator] = None,
        audit: Optional[AuditWriter] = None,
        org_id: Optional[str] = None
    ):
        self.registry = registry
        self.store = store
        self.bus = bus
        self.schema = schema_validator or VariableSchemaValidator()
        self.audit = audit or registry.audit
        self.org_id = org_id
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    # =========================================================================
    # Definitions
    # =========================================================================

    def register_definition(self, definition: Union[ProcessDefinition, Dict[str, Any]]) -> ProcessDefinition:
        """Validate and register a definition (re-registration overwrites)"""
        return self.registry.register_definition(definition).definition

    def get_definition(self, definition_id: str) -> ProcessDefinition:
        return self.registry.get_definition(definition_id)

    def get_definitions(self) -> List[ProcessDefinition]:
        return self.registry.list_definitions()

    def get_state_machine(self, definition_id: str) -> StateMachine:
        return self.registry.get_state_machine(definition_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create_process(
        self,
        definition_id: str,
        process_type: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ProcessInstance:
        """
        Create a process instance in the definition's initial state

        Raises:
            UnknownDefinitionError: definition not registered
            VariableValidationError: variables violate the definition schema
        """
        machine = self.registry.get_state_machine(definition_id)
        definition = machine.definition

        values = self.schema.validate(definition.variables, variables, definition.id)
        process_type = process_type or definition.type or definition.id
        metadata = dict(metadata or {})
        now = utc_now()

        instance = ProcessInstance(
            id=generate_process_id(process_type),
            definition_id=definition.id,
            process_type=process_type,
            category=definition.category or metadata.get("category"),
            org_id=self.org_id,
            current_state=definition.initial_state,
            status=ProcessStatus.ACTIVE,
            variables=values,
            metadata=metadata,
            sync_status=SyncStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.audit.write_process_created(instance, definition)
        await machine.enter_initial_state(instance, context)

        async with self._lock(instance.id):
            await self.store.add(instance)

        logger.info(
            f"Process created: {instance.id}",
            extra={
                "process_id": instance.id,
                "definition_id": definition.id,
                "to_state": instance.current_state,
                "org_id": self.org_id,
            }
        )
        await self._emit(ProcessEvent.CREATED, instance, {"to": instance.current_state})
        if instance.status in CLOSED_STATUSES:
            await self._emit_closed(instance)
        return self.store.require(instance.id)

    async def transition_state(
        self,
        process_id: str,
        target_state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ProcessInstance:
        """
        Move a process to target_state

        Returns the stored instance after listeners ran, so chained
        immediate transitions are already reflected.

        Raises:
            ProcessNotFoundError, IllegalTransitionError, TransitionGuardError
        """
        return await self._transition(process_id, target_state, context)

    async def transition_if_current(
        self,
        process_id: str,
        target_state: str,
        expected_state: str,
        expected_generation: int,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[ProcessInstance]:
        """
        Automatic transition that only applies to the state entry it was armed for

        The check runs under the process lock, so a transition that was
        waiting on the lock sees the state the previous holder left behind.
        Returns None (nothing changed) when the process is no longer active
        or has left ``expected_state`` / ``expected_generation``.
        """
        return await self._transition(
            process_id,
            target_state,
            context,
            expected=(expected_state, expected_generation)
        )

    async def _transition(
        self,
        process_id: str,
        target_state: str,
        context: Optional[Dict[str, Any]],
        expected: Optional[Tuple[str, int]] = None
    ) -> Optional[ProcessInstance]:
        context = context or {}
        async with self._lock(process_id):
            instance = self.store.require(process_id)
            if expected is not None:
                if (
                    instance.status != ProcessStatus.ACTIVE
                    or (instance.current_state, instance.state_entry) != expected
                ):
                    logger.debug(
                        f"Stale {context.get('trigger', 'auto')} transition dropped",
                        extra={"process_id": process_id, "from_state": expected[0], "to_state": target_state}
                    )
                    return None
            machine = self.registry.get_state_machine(instance.definition_id)
            from_state = instance.current_state
            was_closed = instance.status in CLOSED_STATUSES

            await machine.execute_transition(instance, target_state, context)
            await self.store.update(instance)

        await self._emit(
            ProcessEvent.STATE_CHANGED,
            instance,
            {"from": from_state, "to": target_state, "context": sanitize(context)}
        )
        if not was_closed and instance.status in CLOSED_STATUSES:
            await self._emit_closed(instance)
        return self.store.require(process_id)

    async def cancel_process(
        self,
        process_id: str,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> ProcessInstance:
        """
        Cancel a process

        Uses the declared ``cancelled`` transition when it is legal from the
        current state, otherwise forces ``status=cancelled`` and
        ``current_state='cancelled'`` with a ``force_cancelled`` audit entry.

        Raises:
            InvalidStateError: process already closed or in a terminal state
        """
        ctx = {"trigger": "cancel", "reason": reason, **(context or {})}

        async with self._lock(process_id):
            instance = self.store.require(process_id)
            machine: Optional[StateMachine] = None
            config = None
            try:
                machine = self.registry.get_state_machine(instance.definition_id)
                config = machine.definition.states.get(instance.current_state)
            except UnknownDefinitionError:
                logger.warning(
                    f"Definition {instance.definition_id} not registered; forcing cancel",
                    extra={"process_id": process_id, "definition_id": instance.definition_id}
                )

            if instance.status in CLOSED_STATUSES:
                raise InvalidStateError(
                    f"Process {process_id} is already {instance.status.value}",
                    details={"process_id": process_id, "status": instance.status.value}
                )
            if config is not None and config.is_terminal:
                raise InvalidStateError(
                    f"Cannot cancel process in terminal state: {instance.current_state}",
                    details={"process_id": process_id, "state": instance.current_state}
                )

            from_state = instance.current_state
            forced = True
            if config is not None and CANCELLED_STATE in config.transitions:
                try:
                    await machine.execute_transition(instance, CANCELLED_STATE, ctx)
                    forced = False
                except TransitionGuardError as e:
                    logger.info(
                        f"Cancel transition blocked by guard, forcing: {e.message}",
                        extra={"process_id": process_id}
                    )

            if forced:
                now = instance.touch()
                instance.current_state = CANCELLED_STATE
                instance.state_history.append(
                    StateHistoryEntry(from_state=from_state, to_state=CANCELLED_STATE, timestamp=now, context=sanitize(ctx))
                )
                self.audit.write_force_cancelled(instance, from_state, reason)

            if instance.status != ProcessStatus.CANCELLED:
                instance.status = ProcessStatus.CANCELLED
                instance.cancelled_at = instance.updated_at
                instance.cancellation_reason = reason
            instance.sync_status = SyncStatus.PENDING
            await self.store.update(instance)

        logger.info(
            f"Process cancelled{' (forced)' if forced else ''}: {process_id}",
            extra={"process_id": process_id, "from_state": from_state, "to_state": CANCELLED_STATE, "action": "cancel"}
        )
        await self._emit(
            ProcessEvent.STATE_CHANGED,
            instance,
            {"from": from_state, "to": instance.current_state, "context": sanitize(ctx), "forced": forced}
        )
        await self._emit(ProcessEvent.CANCELLED, instance, {"reason": reason, "forced": forced})
        return self.store.require(process_id)

    async def suspend_process(self, process_id: str, reason: Optional[str] = None) -> ProcessInstance:
        """Pause auto-transitions; raises InvalidStateError unless active"""
        async with self._lock(process_id):
            instance = self.store.require(process_id)
            if instance.status != ProcessStatus.ACTIVE:
                raise InvalidStateError(
                    f"Only active processes can be suspended (status: {instance.status.value})",
                    details={"process_id": process_id, "status": instance.status.value}
                )
            instance.status = ProcessStatus.SUSPENDED
            instance.suspended_at = utc_now()
            instance.suspension_reason = reason
            self.audit.write_suspended(instance, reason)
            instance.mark_dirty()
            await self.store.update(instance)

        logger.info(f"Process suspended: {process_id}", extra={"process_id": process_id, "status": "suspended"})
        await self._emit(ProcessEvent.SUSPENDED, instance, {"reason": reason})
        return self.store.require(process_id)

    async def resume_process(self, process_id: str) -> ProcessInstance:
        """Resume a suspended process; raises InvalidStateError otherwise"""
        async with self._lock(process_id):
            instance = self.store.require(process_id)
            if instance.status != ProcessStatus.SUSPENDED:
                raise InvalidStateError(
                    f"Only suspended processes can be resumed (status: {instance.status.value})",
                    details={"process_id": process_id, "status": instance.status.value}
                )
            instance.status = ProcessStatus.ACTIVE
            instance.resumed_at = utc_now()
            instance.suspended_at = None
            instance.suspension_reason = None
            self.audit.write_resumed(instance)
            instance.mark_dirty()
            await self.store.update(instance)

        logger.info(f"Process resumed: {process_id}", extra={"process_id": process_id, "status": "active"})
        await self._emit(ProcessEvent.RESUMED, instance, {})
        return self.store.require(process_id)

    async def update_process_variables(
        self,
        process_id: str,
        updates: Dict[str, Any]
    ) -> ProcessInstance:
        """Shallow-merge variables (not re-validated); no-op if nothing changes"""
        return await self._merge(process_id, "variables", updates)

    async def update_process_metadata(
        self,
        process_id: str,
        updates: Dict[str, Any]
    ) -> ProcessInstance:
        """Shallow-merge metadata; no-op if nothing changes"""
        return await self._merge(process_id, "metadata", updates)

    async def _merge(self, process_id: str, attr: str, updates: Dict[str, Any]) -> ProcessInstance:
        async with self._lock(process_id):
            instance = self.store.require(process_id)
            target: Dict[str, Any] = getattr(instance, attr)
            changes = _diff(target, updates or {})
            if not changes:
                return instance
            target.update(updates)
            if attr == "variables":
                self.audit.write_variables_updated(instance, changes)
            else:
                self.audit.write_metadata_updated(instance, changes)
            instance.mark_dirty()
            await self.store.update(instance)

        logger.info(
            f"Process {attr} updated: {', '.join(changes)}",
            extra={"process_id": process_id, "action": f"update_{attr}"}
        )
        await self._emit(ProcessEvent.UPDATED, instance, {"field": attr, "changes": sanitize(changes)})
        return self.store.require(process_id)

    async def record_auto_transition_error(
        self,
        process_id: str,
        target_state: str,
        error: Exception,
        trigger: str
    ) -> None:
        """Audit a dropped automatic transition"""
        async with self._lock(process_id):
            instance = self.store.get(process_id)
            if instance is None:
                return
            self.audit.write_transition_error(instance, target_state, error, trigger)
            instance.mark_dirty()
            await self.store.update(instance)

    async def clear_all(self) -> None:
        """Drop every instance from memory (test/reset tooling)"""
        await self.store.clear()
        logger.warning("All processes cleared from the store", extra={"org_id": self.org_id})

    # =========================================================================
    # Queries
    # =========================================================================

    def get_process(self, process_id: str) -> ProcessInstance:
        """Raises ProcessNotFoundError"""
        return self.store.require(process_id)

    def get_all_processes(self) -> List[ProcessInstance]:
        return self.store.get_all()

    def get_processes_by_type(self, process_type: str) -> List[ProcessInstance]:
        return self.store.get_by_type(process_type)

    def get_processes_by_status(self, status: Union[ProcessStatus, str]) -> List[ProcessInstance]:
        return self.store.get_by_status(status)

    def get_processes_by_definition(self, definition_id: str) -> List[ProcessInstance]:
        return self.store.get_by_definition(definition_id)

    def get_processes_by_state(self, current_state: str) -> List[ProcessInstance]:
        return self.store.get_by_state(current_state)

    def get_active_processes(self) -> List[ProcessInstance]:
        return self.store.get_active()

    def search_processes(self, criteria: Dict[str, Any]) -> List[ProcessInstance]:
        return self.store.search(criteria)

    def query_processes(self, query: Optional[ProcessQuery] = None) -> ProcessPage:
        return self.store.query(query)

    def get_available_transitions(self, process_id: str) -> List[TransitionDescriptor]:
        instance = self.store.require(process_id)
        machine = self.registry.get_state_machine(instance.definition_id)
        return machine.get_available_transitions(instance.current_state)

    def get_process_history(self, process_id: str) -> List[StateHistoryEntry]:
        return self.store.require(process_id).state_history

    def get_process_audit_log(self, process_id: str) -> List[AuditEntry]:
        return self.store.require(process_id).audit_log

    def get_statistics(self) -> Dict[str, int]:
        return self.store.get_statistics()

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock(self, process_id: str) -> asyncio.Lock:
        lock = self._locks.get(process_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[process_id] = lock
        return lock

    async def _emit(self, event: ProcessEvent, instance: ProcessInstance, extra: Dict[str, Any]) -> None:
        payload = {
            "processId": instance.id,
            "definitionId": instance.definition_id,
            "processType": instance.process_type,
            "state": instance.current_state,
            "status": instance.status.value,
            "timestamp": format_iso(instance.updated_at),
            **extra,
        }
        await self.bus.emit(event.value, payload)

    async def _emit_closed(self, instance: ProcessInstance) -> None:
        if instance.status == ProcessStatus.COMPLETED:
            await self._emit(ProcessEvent.COMPLETED, instance, {})
        elif instance.status == ProcessStatus.FAILED:
            await self._emit(ProcessEvent.FAILED, instance, {})
        elif instance.status == ProcessStatus.CANCELLED:
            await self._emit(ProcessEvent.CANCELLED, instance, {"reason": instance.cancellation_reason, "forced": False})
