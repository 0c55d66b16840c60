"""ID Generation Utilities"""
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Optional

from .time import utc_now


_BASE36 = string.digits + string.ascii_lowercase
_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Examples:
        >>> generate_id('TASK')
        'TASK-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def random_base36(length: int = 7) -> str:
    """Random lowercase base36 string"""
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_process_id(process_type: Optional[str]) -> str:
    """
    Generate a process instance ID

    Format ``process_inst:{type}_{epoch_ms}_{random}``; lexicographic order
    roughly follows creation time for a given type.

    Examples:
        >>> generate_process_id('purchase_request')
        'process_inst:purchase_request_1718000000000_k3j9x0a'
    """
    safe_type = _UNSAFE.sub("_", process_type or "process").strip("_") or "process"
    epoch_ms = int(utc_now().timestamp() * 1000)
    return f"process_inst:{safe_type}_{epoch_ms}_{random_base36(7)}"


def generate_task_id(process_id: str, state: str, index: int) -> str:
    """Deterministic task ID for the index-th required action of a state"""
    return f"task:{process_id}:{state}:{index}"


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
