"""Permission Guard - Role hierarchy and process access rules"""
from typing import Any, Dict, Optional

from ..domain.models import ProcessInstance
from ..domain.enums import ROLE_HIERARCHY, Role
from ..domain.errors import PermissionDeniedError
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Variables that name a participant of the process
PARTICIPANT_FIELDS = ("createdBy", "assignedTo", "buyerId", "sellerId", "requesterId")


def role_level(role: Optional[str]) -> int:
    """Numeric level of a role; unknown roles rank below viewer"""
    if role is None:
        return 0
    return ROLE_HIERARCHY.get(getattr(role, "value", role), 0)


def has_permission(user_role: Optional[str], required_role: Optional[str]) -> bool:
    """
    Check if user_role is at or above required_role in the hierarchy

    An unknown or missing role on either side denies.
    """
    if not user_role or not required_role:
        return False
    required = role_level(required_role)
    if required == 0:
        return False
    return role_level(user_role) >= required


class PermissionGuard:
    """
    Access checks for process instances and tasks

    Rules:
    - Participants (creator, assignee, buyer/seller, requester) can access a process
    - Admins and owners can access every process
    - A task with a role requires the caller's role to be at or above it
    """

    def can_access_process(
        self,
        instance: ProcessInstance,
        user_id: Optional[str],
        user_role: Optional[str] = None
    ) -> bool:
        """Check if the caller participates in or administers the process"""
        if user_id:
            for field in PARTICIPANT_FIELDS:
                if instance.variables.get(field) == user_id:
                    return True
            if instance.metadata.get("createdBy") == user_id:
                return True

        return role_level(user_role) >= ROLE_HIERARCHY[Role.ADMIN.value]

    def can_complete_task(self, task_role: Optional[str], user_role: Optional[str]) -> bool:
        """Tasks without a role are open to everyone"""
        if not task_role:
            return True
        return has_permission(user_role, task_role)

    def ensure_can_complete_task(
        self,
        task_role: Optional[str],
        user_role: Optional[str],
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Raise PermissionDeniedError unless the caller may complete the task"""
        if not self.can_complete_task(task_role, user_role):
            logger.info(
                f"Task completion denied: requires {task_role}, caller has {user_role}",
                extra={"action": "complete_task", "status": "denied"}
            )
            raise PermissionDeniedError(
                "User does not have permission to complete this task",
                details={"required_role": task_role, "user_role": user_role, **(details or {})}
            )
