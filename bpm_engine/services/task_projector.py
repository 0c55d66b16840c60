"""Task Projector - Human tasks derived from current process state

Tasks are never stored: each active instance's current state contributes
one task per ``requiredActions`` entry. Completing a task is nothing more
than ``update_process_variables`` followed by ``transition_state``.
"""
import re
from typing import Any, Dict, List, Optional

from ..domain.models import ProcessInstance, Task, TaskCompletionResult
from ..domain.enums import ProcessEvent, ProcessStatus, TaskType
from ..domain.errors import (
    InvalidStateError,
    NotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from ..engine.permission_guard import PermissionGuard, has_permission
from ..utils.events import EventBus
from ..utils.idgen import generate_task_id
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger
from .process_service import ProcessService

logger = get_logger(__name__)

REJECTION_STATES = ("cancelled", "rejected")


def parse_task_id(task_id: str) -> Dict[str, Any]:
    """Split ``task:{process_id}:{state}:{index}``"""
    if not task_id.startswith("task:"):
        raise TaskNotFoundError(f"Invalid task ID: {task_id}", details={"task_id": task_id})
    parts = task_id[len("task:"):].rsplit(":", 2)
    if len(parts) != 3 or not parts[2].isdigit():
        raise TaskNotFoundError(f"Invalid task ID: {task_id}", details={"task_id": task_id})
    return {"process_id": parts[0], "state": parts[1], "index": int(parts[2])}


class TaskProjector:
    """Read-only task view over the process service"""

    def __init__(
        self,
        service: ProcessService,
        bus: Optional[EventBus] = None,
        guard: Optional[PermissionGuard] = None
    ):
        self.service = service
        self.bus = bus or service.bus
        self.guard = guard or PermissionGuard()

    # =========================================================================
    # Projection
    # =========================================================================

    def get_process_tasks(self, process_id: str) -> List[Task]:
        """Tasks of one process (empty unless active)"""
        instance = self.service.get_process(process_id)
        return self._project(instance)

    def _project(self, instance: ProcessInstance) -> List[Task]:
        if instance.status != ProcessStatus.ACTIVE:
            return []
        machine = self.service.get_state_machine(instance.definition_id)
        config = machine.definition.states.get(instance.current_state)
        if config is None:
            return []

        return [
            Task(
                id=generate_task_id(instance.id, instance.current_state, index),
                process_id=instance.id,
                process_type=instance.process_type,
                definition_id=instance.definition_id,
                current_state=instance.current_state,
                type=action.type,
                role=action.role,
                message=action.message,
                action_label=action.action_label,
                metadata=action.metadata,
                created_at=instance.state_entered_at,
            )
            for index, action in enumerate(config.required_actions)
        ]

    def get_all_tasks(self) -> List[Task]:
        tasks: List[Task] = []
        for instance in self.service.get_active_processes():
            tasks.extend(self._project(instance))
        return tasks

    def get_user_tasks(self, user_id: Optional[str], user_role: Optional[str] = None) -> List[Task]:
        """Tasks of processes the user can access, filtered by task role"""
        tasks: List[Task] = []
        for instance in self.service.get_active_processes():
            if not self.guard.can_access_process(instance, user_id, user_role):
                continue
            for task in self._project(instance):
                if not task.role or has_permission(user_role, task.role):
                    tasks.append(task)
        return tasks

    def get_tasks_by_type(self, task_type: str) -> List[Task]:
        return [task for task in self.get_all_tasks() if task.type == task_type]

    def get_task(self, task_id: str) -> Task:
        """Raises TaskNotFoundError"""
        parsed = parse_task_id(task_id)
        try:
            tasks = self.get_process_tasks(parsed["process_id"])
        except NotFoundError as e:
            raise TaskNotFoundError(f"Task not found: {task_id}", details={"task_id": task_id}) from e
        for task in tasks:
            if task.id == task_id:
                return task
        raise TaskNotFoundError(f"Task not found: {task_id}", details={"task_id": task_id})

    def get_task_statistics(self, user_id: Optional[str] = None, user_role: Optional[str] = None) -> Dict[str, Any]:
        tasks = self.get_user_tasks(user_id, user_role) if user_id else self.get_all_tasks()
        by_type: Dict[str, int] = {}
        by_process: Dict[str, int] = {}
        for task in tasks:
            by_type[task.type] = by_type.get(task.type, 0) + 1
            key = task.process_type or task.definition_id
            by_process[key] = by_process.get(key, 0) + 1
        return {"total": len(tasks), "byType": by_type, "byProcess": by_process}

    # =========================================================================
    # Completion
    # =========================================================================

    async def complete_task(
        self,
        task_id: str,
        user_id: Optional[str],
        user_role: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> TaskCompletionResult:
        """
        Complete a projected task

        Raises:
            TaskNotFoundError: task no longer projected (state moved on)
            PermissionDeniedError: role below the task's role
            ValidationError: missing or invalid completion data
        """
        data = dict(data or {})
        task = self.get_task(task_id)
        self.guard.ensure_can_complete_task(task.role, user_role, details={"task_id": task_id})

        if task.type == TaskType.APPROVAL.value:
            result = await self._complete_approval(task, user_id, data)
        elif task.type == TaskType.MANUAL.value:
            result = await self._complete_manual(task, user_id, data)
        elif task.type == TaskType.FORM.value:
            result = await self._complete_form(task, user_id, data)
        elif task.type == TaskType.REVIEW.value:
            result = await self._complete_review(task, user_id, data)
        else:
            result = await self._complete_generic(task, user_id, data)

        logger.info(
            f"Task completed: {task_id}",
            extra={"process_id": task.process_id, "action": "complete_task", "status": task.type}
        )
        await self.bus.emit(ProcessEvent.UPDATED.value, {
            "processId": task.process_id,
            "taskId": task_id,
            "taskType": task.type,
            "completedBy": user_id,
            "timestamp": format_iso(utc_now()),
        })
        result.process = self.service.get_process(task.process_id)
        return result

    async def _complete_approval(self, task: Task, user_id: Optional[str], data: Dict[str, Any]) -> TaskCompletionResult:
        if "approved" not in data:
            raise ValidationError('Approval task requires "approved" field', details={"task_id": task.id})
        approved = bool(data["approved"])
        reason = data.get("reason")
        state = task.current_state

        await self.service.update_process_variables(task.process_id, {
            f"{state}_approved": approved,
            f"{state}_approvedBy": user_id,
            f"{state}_approvalReason": reason or "",
            f"{state}_approvedAt": format_iso(utc_now()),
        })

        targets = [t.target_state for t in self.service.get_available_transitions(task.process_id)]
        if approved:
            target = next((t for t in targets if t not in REJECTION_STATES), None)
            context = {"approvedBy": user_id, "approved": True, "reason": reason}
        else:
            target = next((t for t in targets if t in REJECTION_STATES), None)
            context = {"rejectedBy": user_id, "approved": False, "reason": reason}

        if target:
            await self.service.transition_state(task.process_id, target, context)
        return TaskCompletionResult(
            approved=approved,
            message="Approved successfully" if approved else "Rejected"
        )

    async def _complete_manual(self, task: Task, user_id: Optional[str], data: Dict[str, Any]) -> TaskCompletionResult:
        state = task.current_state
        await self.service.update_process_variables(task.process_id, {
            f"{state}_completed": True,
            f"{state}_completedBy": user_id,
            f"{state}_completedAt": format_iso(utc_now()),
            **data,
        })
        await self._advance(task, {"completedBy": user_id, **data})
        return TaskCompletionResult(message="Task completed successfully")

    async def _complete_form(self, task: Task, user_id: Optional[str], data: Dict[str, Any]) -> TaskCompletionResult:
        rules = task.metadata.get("validation")
        if rules:
            errors = validate_form_data(data, rules)
            if errors:
                raise ValidationError(
                    f"Form validation failed: {', '.join(errors)}",
                    details={"task_id": task.id, "errors": errors}
                )

        state = task.current_state
        await self.service.update_process_variables(task.process_id, {
            f"{state}_formData": data,
            f"{state}_submittedBy": user_id,
            f"{state}_submittedAt": format_iso(utc_now()),
        })
        await self._advance(task, {"submittedBy": user_id, "formData": data})
        return TaskCompletionResult(message="Form submitted successfully")

    async def _complete_review(self, task: Task, user_id: Optional[str], data: Dict[str, Any]) -> TaskCompletionResult:
        decision = data.get("decision")
        if not decision:
            raise ValidationError('Review task requires "decision" field', details={"task_id": task.id})
        comments = data.get("comments") or ""
        state = task.current_state

        await self.service.update_process_variables(task.process_id, {
            f"{state}_decision": decision,
            f"{state}_comments": comments,
            f"{state}_reviewedBy": user_id,
            f"{state}_reviewedAt": format_iso(utc_now()),
        })

        targets = [t.target_state for t in self.service.get_available_transitions(task.process_id)]
        target = next((t for t in targets if str(decision).lower() in t.lower()), None)
        if target is None and targets:
            target = targets[0]
        if target:
            await self.service.transition_state(
                task.process_id, target, {"reviewedBy": user_id, "decision": decision, "comments": comments}
            )
        return TaskCompletionResult(decision=str(decision), message="Review completed successfully")

    async def _complete_generic(self, task: Task, user_id: Optional[str], data: Dict[str, Any]) -> TaskCompletionResult:
        state = task.current_state
        await self.service.update_process_variables(task.process_id, {
            f"{state}_data": data,
            f"{state}_completedBy": user_id,
            f"{state}_completedAt": format_iso(utc_now()),
        })
        return TaskCompletionResult(message="Task completed")

    async def _advance(self, task: Task, context: Dict[str, Any]) -> None:
        """Take the first declared transition, if any"""
        transitions = self.service.get_available_transitions(task.process_id)
        if not transitions:
            return
        instance = self.service.get_process(task.process_id)
        if instance.current_state != task.current_state:
            raise InvalidStateError(
                "Process moved on while the task was being completed",
                details={"task_id": task.id, "state": instance.current_state}
            )
        await self.service.transition_state(task.process_id, transitions[0].target_state, context)


def validate_form_data(data: Dict[str, Any], rules: Dict[str, Dict[str, Any]]) -> List[str]:
    """Check form data against simple per-field rules; returns error messages"""
    errors: List[str] = []
    type_names = {"string": str, "number": (int, float), "boolean": bool, "array": list, "object": dict}

    for field, rule in rules.items():
        value = data.get(field)
        if rule.get("required") and value in (None, ""):
            errors.append(f"{field} is required")
            continue
        if value is None:
            continue

        expected = type_names.get(rule.get("type"))
        if expected and (not isinstance(value, expected) or (rule.get("type") == "number" and isinstance(value, bool))):
            errors.append(f"{field} must be of type {rule['type']}")
            continue

        if rule.get("min") is not None and isinstance(value, (int, float)) and value < rule["min"]:
            errors.append(f"{field} must be at least {rule['min']}")
        if rule.get("max") is not None and isinstance(value, (int, float)) and value > rule["max"]:
            errors.append(f"{field} must be at most {rule['max']}")
        if rule.get("pattern") and isinstance(value, str) and not re.search(rule["pattern"], value):
            errors.append(f"{field} has invalid format")
    return errors
