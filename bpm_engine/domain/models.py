"""Domain Models - Pydantic schemas for definitions, instances and projections

Definitions and instances travel as JSON with camelCase keys (``initialState``,
``currentState``, ``_id``); attributes are snake_case in Python. Both spellings
are accepted on input.
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Literal, Optional, Union
from typing_extensions import Annotated
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import (
    ProcessStatus, SyncStatus, LogicalOperator, TimeUnit, VariableType, SortOrder
)
from ..utils.time import utc_now


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase wire names"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ============================================================================
# Conditions (closed tagged union on ``type``)
# ============================================================================

class VariableCondition(CamelModel):
    """Compare a dotted path in ``variables`` against a literal or another path"""
    type: Literal["variable"] = "variable"
    field: str = Field(..., description="Dotted path into process variables")
    operator: str = Field(..., description="Registered operator name")
    value: Any = None
    compare_field: Optional[str] = Field(None, description="Compare against this path instead of value")


class StateCondition(CamelModel):
    """Compare ``current_state`` against a literal"""
    type: Literal["state"] = "state"
    operator: str = "eq"
    value: Any = None


class TimeCondition(CamelModel):
    """Elapsed time since an instance timestamp field"""
    type: Literal["time"] = "time"
    field: str = Field(..., description="Instance field, e.g. createdAt or variables.submittedAt")
    operator: str
    value: float
    unit: TimeUnit = TimeUnit.MILLISECONDS


class CustomCondition(CamelModel):
    """Caller-supplied predicate: a callable or the name of a registered predicate"""
    type: Literal["custom"] = "custom"
    fn: Optional[Callable[..., Any]] = Field(None, exclude=True)
    name: Optional[str] = None


class PermissionCondition(CamelModel):
    """Role hierarchy check against the ambient context's ``userRole``"""
    type: Literal["permission"] = "permission"
    required_role: str


class ExpressionCondition(CamelModel):
    """Boolean composition of sub-conditions"""
    type: Literal["expression"] = "expression"
    expression: LogicalOperator
    conditions: List["Condition"] = Field(default_factory=list)


Condition = Annotated[
    Union[
        VariableCondition,
        StateCondition,
        TimeCondition,
        CustomCondition,
        PermissionCondition,
        ExpressionCondition,
    ],
    Field(discriminator="type"),
]

ExpressionCondition.model_rebuild()


# ============================================================================
# Lifecycle hooks
# ============================================================================

class StampHook(CamelModel):
    """Write the current ISO timestamp into ``variables[field]``"""
    action: Literal["stamp"] = "stamp"
    field: str
    overwrite: bool = True


class SetHook(CamelModel):
    """Write a literal into ``variables[field]``"""
    action: Literal["set"] = "set"
    field: str
    value: Any = None


class CopyContextHook(CamelModel):
    """Copy a (dotted) context value into ``variables``"""
    action: Literal["copy_context"] = "copy_context"
    source: str = Field(..., alias="from")
    target: Optional[str] = Field(None, alias="to")


class CallHook(CamelModel):
    """Invoke a handler registered by name"""
    action: Literal["call"] = "call"
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


HookActionModel = Annotated[
    Union[StampHook, SetHook, CopyContextHook, CallHook],
    Field(discriminator="action"),
]

# A hook is a callable, a registered handler name, an interpreted action,
# or an ordered list of those
HookAction = Union[Callable[..., Any], str, HookActionModel]
HookSpec = Union[List[HookAction], HookAction]


# ============================================================================
# Auto-transitions (closed tagged union on ``type``)
# ============================================================================

class ImmediateTransition(CamelModel):
    """Fire right after the owning state's on_enter hook"""
    type: Literal["immediate"] = "immediate"
    to_state: str
    reason: Optional[str] = None


class TimerTransition(CamelModel):
    """Fire ``duration`` milliseconds after state entry"""
    type: Literal["timer"] = "timer"
    to_state: str
    duration: float = Field(..., gt=0, description="Milliseconds after state entry")
    reason: Optional[str] = None


class EventTransition(CamelModel):
    """Fire when a named event is published and its conditions hold"""
    type: Literal["event"] = "event"
    to_state: str
    event: str
    conditions: List[Condition] = Field(default_factory=list)
    operator: LogicalOperator = LogicalOperator.AND
    reason: Optional[str] = None


class ConditionTransition(CamelModel):
    """Fire when the periodic sweep finds the conditions satisfied"""
    type: Literal["condition"] = "condition"
    to_state: str
    conditions: List[Condition] = Field(default_factory=list)
    operator: LogicalOperator = LogicalOperator.AND
    reason: Optional[str] = None


AutoTransition = Annotated[
    Union[ImmediateTransition, TimerTransition, EventTransition, ConditionTransition],
    Field(discriminator="type"),
]


class AutoTransitionConfig(CamelModel):
    """Ordered auto-transition rules; first match wins"""
    conditions: List[AutoTransition] = Field(default_factory=list)


class AutoTransitionMatch(CamelModel):
    """Result of find_matching_auto_transition"""
    to_state: str
    condition: AutoTransition


# ============================================================================
# Process Definition
# ============================================================================

class VariableSpec(CamelModel):
    """Schema entry for a single process variable"""
    type: VariableType = VariableType.ANY
    required: bool = False
    default: Any = None
    enum: Optional[List[Any]] = None
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    items: Optional["VariableSpec"] = None
    properties: Optional[Dict[str, "VariableSpec"]] = None


VariableSpec.model_rebuild()


class RequiredAction(CamelModel):
    """Human task descriptor attached to a state"""
    type: str = Field(..., description="approval, manual, form, review or custom")
    role: Optional[str] = None
    message: Optional[str] = None
    action_label: str = "Complete"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StateConfig(CamelModel):
    """Configuration of a single state"""
    name: Optional[str] = None
    description: Optional[str] = None
    transitions: List[str] = Field(..., description="Legal target states, in order")
    on_enter: Optional[HookSpec] = None
    on_exit: Optional[HookSpec] = None
    required_actions: List[RequiredAction] = Field(default_factory=list)
    auto_transition: Optional[AutoTransitionConfig] = None
    guards: Dict[str, List[Condition]] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("transitions")
    @classmethod
    def _dedupe_transitions(cls, value: List[str]) -> List[str]:
        # Ordered set semantics
        return list(dict.fromkeys(value))

    @property
    def is_terminal(self) -> bool:
        return not self.transitions

    def auto_transitions_of(self, kind: str) -> List[Any]:
        """Auto-transition entries of one kind, in declared order"""
        if not self.auto_transition:
            return []
        return [c for c in self.auto_transition.conditions if c.type == kind]


class ProcessDefinition(CamelModel):
    """Declarative workflow template"""
    id: str
    name: str
    version: str = "1.0.0"
    type: Optional[str] = Field(None, description="Process type used for instance ids")
    description: Optional[str] = None
    category: Optional[str] = None
    initial_state: str
    variables: Dict[str, VariableSpec] = Field(default_factory=dict)
    states: Dict[str, StateConfig]
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_public_dict(self) -> Dict[str, Any]:
        """JSON-safe view; callables are replaced by their names"""
        return _describe_callables(
            self.model_dump(mode="python", by_alias=True, exclude_none=True)
        )


class TransitionDescriptor(CamelModel):
    """A legal next state"""
    target_state: str
    target_config: StateConfig


# ============================================================================
# Process Instance
# ============================================================================

class StateHistoryEntry(CamelModel):
    """One committed state transition"""
    from_state: Optional[str] = Field(None, alias="from")
    to_state: str = Field(..., alias="to")
    timestamp: datetime
    context: Dict[str, Any] = Field(default_factory=dict)


class AuditEntry(CamelModel):
    """Append-only audit record"""
    action: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class ProcessInstance(CamelModel):
    """One running execution of a definition"""
    id: str = Field(..., alias="_id")
    rev: Optional[str] = Field(None, alias="_rev")
    doc_type: str = Field("process_instance", alias="type")
    definition_id: str
    process_type: Optional[str] = None
    category: Optional[str] = None
    org_id: Optional[str] = None
    current_state: str
    status: ProcessStatus = ProcessStatus.ACTIVE
    variables: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    audit_log: List[AuditEntry] = Field(default_factory=list)
    sync_status: SyncStatus = SyncStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None
    resumed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None

    def touch(self) -> datetime:
        """Bump updated_at, strictly increasing"""
        now = utc_now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now
        return now

    def mark_dirty(self) -> None:
        """Flag for the next sync push"""
        self.sync_status = SyncStatus.PENDING
        self.touch()

    @property
    def state_entered_at(self) -> datetime:
        """When the current state was entered"""
        if self.state_history:
            return self.state_history[-1].timestamp
        return self.created_at

    @property
    def state_entry(self) -> int:
        """Generation counter of the current state entry"""
        return len(self.state_history)

    def to_document(self) -> Dict[str, Any]:
        """JSON document for local/remote stores"""
        doc = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ProcessInstance":
        return cls.model_validate(doc)


# ============================================================================
# Tasks
# ============================================================================

class Task(CamelModel):
    """Projected human action (never stored)"""
    id: str
    process_id: str
    process_type: Optional[str] = None
    definition_id: str
    current_state: str
    type: str
    role: Optional[str] = None
    message: Optional[str] = None
    action_label: str = "Complete"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    status: str = "pending"


class TaskCompletionResult(CamelModel):
    """Outcome of complete_task"""
    success: bool = True
    message: str
    approved: Optional[bool] = None
    decision: Optional[str] = None
    process: Optional[ProcessInstance] = None


# ============================================================================
# Queries & Sync
# ============================================================================

class ProcessQuery(CamelModel):
    """Filter / sort / page parameters for process listings"""
    definition_id: Optional[str] = None
    process_type: Optional[str] = None
    status: Optional[ProcessStatus] = None
    current_state: Optional[str] = None
    category: Optional[str] = None
    sync_status: Optional[SyncStatus] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    sort_by: str = "createdAt"
    sort_order: SortOrder = SortOrder.DESC
    offset: int = Field(0, ge=0)
    limit: Optional[int] = Field(50, ge=1, le=1000)


class ProcessPage(CamelModel):
    """One page of a process listing"""
    items: List[ProcessInstance]
    total: int
    offset: int
    limit: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.limit is not None and self.offset + len(self.items) < self.total


class RemoteCredentials(CamelModel):
    """Credentials for the remote document store (supplied by the host app)"""
    username: str
    password: str


class SyncResult(CamelModel):
    """Summary of one sync cycle"""
    org_id: Optional[str] = None
    total: int = 0
    pushed: int = 0
    failed: int = 0
    conflicts: int = 0
    pulled: int = 0
    skipped: bool = False
    reason: Optional[str] = None


def _describe_callables(value: Any) -> Any:
    """Recursively replace callables by their names"""
    if callable(value) and not isinstance(value, type):
        return f"<callable {getattr(value, '__name__', type(value).__name__)}>"
    if isinstance(value, dict):
        return {k: _describe_callables(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_describe_callables(v) for v in value]
    if isinstance(value, BaseModel):
        return _describe_callables(value.model_dump(mode="python", by_alias=True, exclude_none=True))
    return value
