"""Definitions and instances shared by the test modules"""
import copy
from typing import Any, Dict

from bpm_engine.domain.models import ProcessInstance
from bpm_engine.utils.time import utc_now


APPROVAL_DEFINITION: Dict[str, Any] = {
    "id": "purchase_approval",
    "name": "Purchase Approval",
    "type": "purchase",
    "initialState": "draft",
    "variables": {
        "amount": {"type": "number", "required": True, "min": 0},
        "currency": {"type": "string", "default": "EUR", "enum": ["EUR", "USD"]},
    },
    "states": {
        "draft": {"transitions": ["submitted"]},
        "submitted": {
            "transitions": ["approved"],
            "autoTransition": {
                "conditions": [
                    {
                        "type": "condition",
                        "toState": "approved",
                        "conditions": [{"type": "variable", "field": "amount", "operator": "lt", "value": 5000}],
                    }
                ]
            },
        },
        "approved": {"transitions": []},
    },
}

REVIEW_DEFINITION: Dict[str, Any] = {
    "id": "document_review",
    "name": "Document Review",
    "initialState": "pending_review",
    "states": {
        "pending_review": {
            "transitions": ["in_review", "cancelled"],
            "requiredActions": [{"type": "manual", "role": "member", "message": "Pick up the review"}],
        },
        "in_review": {
            "transitions": ["accepted", "rejected", "cancelled"],
            "requiredActions": [{"type": "review", "role": "admin", "message": "Review the document"}],
        },
        "accepted": {"transitions": []},
        "rejected": {"transitions": []},
        "cancelled": {"transitions": []},
    },
}


def approval_definition() -> Dict[str, Any]:
    return copy.deepcopy(APPROVAL_DEFINITION)


def review_definition() -> Dict[str, Any]:
    return copy.deepcopy(REVIEW_DEFINITION)


def make_instance(**overrides: Any) -> ProcessInstance:
    """Bare instance for evaluator / store tests"""
    now = utc_now()
    values: Dict[str, Any] = {
        "id": "process_inst:test_1_abc",
        "definition_id": "purchase_approval",
        "process_type": "purchase",
        "current_state": "draft",
        "variables": {},
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return ProcessInstance(**values)
