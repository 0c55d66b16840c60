"""Audit Writer - Append-only audit and state history entries

Entries are appended to the instance itself (``audit_log`` and
``state_history``); nothing is ever removed or rewritten.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python

from ..domain.models import AuditEntry, ProcessDefinition, ProcessInstance, StateHistoryEntry
from ..domain.enums import AuditAction
from ..domain.errors import HookExecutionError
from ..utils.logger import get_correlation_id
from ..utils.time import utc_now


def sanitize(value: Any) -> Any:
    """JSON-safe copy of arbitrary caller data"""
    return to_jsonable_python(value, fallback=str)


class AuditWriter:
    """
    Write audit entries (append-only)

    Every state change and significant action produces an entry.
    """

    def write_event(
        self,
        instance: ProcessInstance,
        action: AuditAction,
        details: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> AuditEntry:
        """Append a single audit entry"""
        payload = sanitize(details or {})
        correlation_id = get_correlation_id()
        if correlation_id:
            payload.setdefault("correlationId", correlation_id)

        entry = AuditEntry(
            action=action.value,
            timestamp=timestamp or utc_now(),
            details=payload
        )
        instance.audit_log.append(entry)
        return entry

    def write_process_created(self, instance: ProcessInstance, definition: ProcessDefinition) -> AuditEntry:
        """Write process creation entry"""
        return self.write_event(
            instance,
            AuditAction.PROCESS_CREATED,
            details={
                "definitionId": definition.id,
                "definitionVersion": definition.version,
                "initialState": instance.current_state,
            },
            timestamp=instance.created_at
        )

    def write_transition(
        self,
        instance: ProcessInstance,
        from_state: Optional[str],
        to_state: str,
        context: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> StateHistoryEntry:
        """Append the state history entry and its matching audit entry"""
        timestamp = timestamp or utc_now()
        safe_context = sanitize(context or {})
        history_entry = StateHistoryEntry(
            from_state=from_state,
            to_state=to_state,
            timestamp=timestamp,
            context=safe_context
        )
        instance.state_history.append(history_entry)
        self.write_event(
            instance,
            AuditAction.STATE_TRANSITION,
            details={"from": from_state, "to": to_state, "context": safe_context},
            timestamp=timestamp
        )
        return history_entry

    def write_hook_error(
        self,
        instance: ProcessInstance,
        action: AuditAction,
        error: HookExecutionError
    ) -> AuditEntry:
        """Write a downgraded hook failure"""
        return self.write_event(
            instance,
            action,
            details={"state": error.state, "hook": error.hook, "error": error.message, **error.details}
        )

    def write_transition_error(
        self,
        instance: ProcessInstance,
        target_state: str,
        error: Exception,
        trigger: Optional[str] = None
    ) -> AuditEntry:
        """Write a failed automatic transition attempt"""
        return self.write_event(
            instance,
            AuditAction.TRANSITION_ERROR,
            details={
                "from": instance.current_state,
                "to": target_state,
                "trigger": trigger,
                "error": str(error),
            }
        )

    def write_variables_updated(
        self,
        instance: ProcessInstance,
        changes: Dict[str, Dict[str, Any]]
    ) -> AuditEntry:
        """Write variable diff {name: {old, new}}"""
        return self.write_event(instance, AuditAction.VARIABLES_UPDATED, details={"changes": changes})

    def write_metadata_updated(
        self,
        instance: ProcessInstance,
        changes: Dict[str, Dict[str, Any]]
    ) -> AuditEntry:
        """Write metadata diff {name: {old, new}}"""
        return self.write_event(instance, AuditAction.METADATA_UPDATED, details={"changes": changes})

    def write_suspended(self, instance: ProcessInstance, reason: Optional[str]) -> AuditEntry:
        return self.write_event(
            instance,
            AuditAction.SUSPENDED,
            details={"state": instance.current_state, "reason": reason}
        )

    def write_resumed(self, instance: ProcessInstance) -> AuditEntry:
        return self.write_event(instance, AuditAction.RESUMED, details={"state": instance.current_state})

    def write_force_cancelled(
        self,
        instance: ProcessInstance,
        from_state: str,
        reason: Optional[str]
    ) -> AuditEntry:
        """Write forced cancellation (transition graph bypassed)"""
        return self.write_event(
            instance,
            AuditAction.FORCE_CANCELLED,
            details={"from": from_state, "to": instance.current_state, "reason": reason}
        )

    def write_process_completed(self, instance: ProcessInstance) -> AuditEntry:
        """Write closing entry when a terminal state is reached"""
        return self.write_event(
            instance,
            AuditAction.PROCESS_COMPLETED,
            details={"state": instance.current_state, "status": instance.status.value}
        )
