"""Process Engine - State machines, conditions, hooks and auto-transitions"""
from .state_machine import StateMachine
from .registry import ProcessRegistry
from .condition_evaluator import ConditionEvaluator
from .permission_guard import PermissionGuard
from .audit_writer import AuditWriter
from .hooks import HookRegistry
from .variable_schema import VariableSchemaValidator
from .transition_engine import TransitionEngine

__all__ = [
    "StateMachine",
    "ProcessRegistry",
    "ConditionEvaluator",
    "PermissionGuard",
    "AuditWriter",
    "HookRegistry",
    "VariableSchemaValidator",
    "TransitionEngine",
]
