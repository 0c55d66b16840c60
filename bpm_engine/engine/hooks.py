"""Lifecycle Hooks - Named handler table and interpreted hook actions

A state's ``onEnter``/``onExit`` may be:
- a callable ``fn(instance, context)`` (sync or async)
- the name of a handler registered with ``HookRegistry.register``;
  handlers are called as ``fn(instance, context, params)``
- an interpreted action: ``stamp``, ``set``, ``copy_context`` or ``call``
- a list of the above, run in order (the first failure stops the list)

Hooks mutate ``instance.variables`` in place.
"""
import copy
import inspect
from typing import Any, Callable, Dict, List, Optional

from ..domain.models import (
    CallHook,
    CopyContextHook,
    HookSpec,
    ProcessInstance,
    SetHook,
    StampHook,
)
from ..domain.errors import HookExecutionError
from ..utils.time import format_iso, utc_now
from ..utils.logger import get_logger
from .condition_evaluator import get_nested_value

logger = get_logger(__name__)

HookHandler = Callable[[ProcessInstance, Dict[str, Any], Dict[str, Any]], Any]


def describe_hook(action: Any) -> str:
    """Short human-readable name of a hook action"""
    if isinstance(action, str):
        return action
    if isinstance(action, (StampHook, SetHook)):
        return f"{action.action}:{action.field}"
    if isinstance(action, CopyContextHook):
        return f"copy_context:{action.source}"
    if isinstance(action, CallHook):
        return f"call:{action.name}"
    return getattr(action, "__name__", type(action).__name__)


class HookRegistry:
    """Registry of named hook handlers plus the hook runner"""

    def __init__(self):
        self._handlers: Dict[str, HookHandler] = {}

    def register(self, name: str, handler: HookHandler) -> None:
        if not callable(handler):
            raise TypeError("Hook handler must be callable")
        self._handlers[name] = handler
        logger.info(f"Hook handler registered: {name}")

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> List[str]:
        return sorted(self._handlers)

    async def run(
        self,
        spec: Optional[HookSpec],
        instance: ProcessInstance,
        context: Optional[Dict[str, Any]],
        hook: str,
        state: str
    ) -> None:
        """
        Run a hook spec against the instance

        Raises:
            HookExecutionError: wrapping the first failing action
        """
        if spec is None:
            return
        actions = spec if isinstance(spec, list) else [spec]
        context = context or {}

        for action in actions:
            try:
                await self._run_action(action, instance, context)
            except HookExecutionError:
                raise
            except Exception as e:
                raise HookExecutionError(
                    f"{hook} hook failed in state {state}: {e}",
                    hook=hook,
                    state=state,
                    details={"action": describe_hook(action), "error": str(e)}
                ) from e

    async def _run_action(self, action: Any, instance: ProcessInstance, context: Dict[str, Any]) -> None:
        if isinstance(action, StampHook):
            if action.overwrite or instance.variables.get(action.field) is None:
                instance.variables[action.field] = format_iso(utc_now())
            return

        if isinstance(action, SetHook):
            instance.variables[action.field] = copy.deepcopy(action.value)
            return

        if isinstance(action, CopyContextHook):
            value = get_nested_value(context, action.source)
            if value is not None:
                target = action.target or action.source.split(".")[-1]
                instance.variables[target] = copy.deepcopy(value)
            return

        if isinstance(action, CallHook):
            await self._call_named(action.name, instance, context, action.params)
            return

        if isinstance(action, str):
            await self._call_named(action, instance, context, {})
            return

        if callable(action):
            result = action(instance, context)
            if inspect.isawaitable(result):
                await result
            return

        raise ValueError(f"Unsupported hook action: {action!r}")

    async def _call_named(
        self,
        name: str,
        instance: ProcessInstance,
        context: Dict[str, Any],
        params: Dict[str, Any]
    ) -> None:
        handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"Hook handler not registered: {name}")
        result = handler(instance, context, params)
        if inspect.isawaitable(result):
            await result
