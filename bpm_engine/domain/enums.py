"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class ProcessStatus(str, Enum):
    """Lifecycle status of a process instance (independent of current_state)"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Statuses after which no further work is scheduled
CLOSED_STATUSES = frozenset({ProcessStatus.COMPLETED, ProcessStatus.CANCELLED, ProcessStatus.FAILED})


class SyncStatus(str, Enum):
    """Dirty bit for the sync coordinator"""
    SYNCED = "synced"
    PENDING = "pending"
    SYNCING = "syncing"
    CONFLICT = "conflict"
    ERROR = "error"


class ConditionType(str, Enum):
    """Discriminator of the condition union"""
    VARIABLE = "variable"
    STATE = "state"
    TIME = "time"
    CUSTOM = "custom"
    PERMISSION = "permission"
    EXPRESSION = "expression"


class AutoTransitionType(str, Enum):
    """Kinds of autonomous transitions"""
    IMMEDIATE = "immediate"
    TIMER = "timer"
    EVENT = "event"
    CONDITION = "condition"


class LogicalOperator(str, Enum):
    """Combinators for condition lists"""
    AND = "and"
    OR = "or"
    NOT = "not"


class TimeUnit(str, Enum):
    """Units accepted by time conditions"""
    MILLISECONDS = "milliseconds"
    SECONDS = "seconds"
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


class Role(str, Enum):
    """Organization roles, lowest to highest"""
    VIEWER = "viewer"
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


ROLE_HIERARCHY = {
    Role.OWNER.value: 4,
    Role.ADMIN.value: 3,
    Role.MEMBER.value: 2,
    Role.VIEWER.value: 1,
}


class VariableType(str, Enum):
    """Types allowed in a definition's variable schema"""
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"


class TaskType(str, Enum):
    """Kinds of required human actions"""
    APPROVAL = "approval"
    MANUAL = "manual"
    FORM = "form"
    REVIEW = "review"


class AuditAction(str, Enum):
    """Audit log entry actions"""
    PROCESS_CREATED = "process_created"
    STATE_TRANSITION = "state_transition"
    TRANSITION_ERROR = "transition_error"
    ENTER_HOOK_ERROR = "enter_hook_error"
    EXIT_HOOK_ERROR = "exit_hook_error"
    INITIAL_STATE_HOOK_ERROR = "initial_state_hook_error"
    VARIABLES_UPDATED = "variables_updated"
    METADATA_UPDATED = "metadata_updated"
    SUSPENDED = "suspended"
    RESUMED = "resumed"
    FORCE_CANCELLED = "force_cancelled"
    PROCESS_COMPLETED = "process_completed"


class ProcessEvent(str, Enum):
    """Events published on the runtime event bus"""
    CREATED = "process.created"
    STATE_CHANGED = "process.state_changed"
    UPDATED = "process.updated"
    SUSPENDED = "process.suspended"
    RESUMED = "process.resumed"
    CANCELLED = "process.cancelled"
    COMPLETED = "process.completed"
    FAILED = "process.failed"
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_ERROR = "sync.error"


class StoreChange(str, Enum):
    """Change kinds delivered to process store subscribers"""
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    LOADED = "loaded"
    CLEARED = "cleared"


class SortOrder(str, Enum):
    """Sort direction for process queries"""
    ASC = "asc"
    DESC = "desc"
