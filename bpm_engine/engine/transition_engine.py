"""Transition Engine - Autonomous transitions (immediate, timer, event, condition)

Handles are tracked per process id and torn down on every state change,
suspension and cancellation, so nothing armed for one state entry can
outlive it. Timer jobs and event listeners carry the state-entry
generation (``len(state_history)``); the service re-checks it under the
process lock before moving the process.
"""
from contextvars import ContextVar
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config.settings import Settings
from ..domain.models import (
    EventTransition,
    ImmediateTransition,
    ProcessDefinition,
    ProcessInstance,
    StateConfig,
    TimerTransition,
)
from ..domain.enums import ProcessEvent, ProcessStatus
from ..domain.errors import DomainError, UnknownDefinitionError
from ..repositories.process_store import ProcessStore
from ..scheduler.engine_scheduler import EngineScheduler
from ..utils.events import EventBus
from ..utils.time import utc_now
from ..utils.logger import get_logger
from .condition_evaluator import ConditionEvaluator
from .registry import ProcessRegistry

logger = get_logger(__name__)

SWEEP_JOB_ID = "engine:condition_sweep"

# Depth of nested immediate transitions in the current call chain
_immediate_depth: ContextVar[int] = ContextVar("immediate_depth", default=0)


def timer_job_id(process_id: str, generation: int) -> str:
    return f"timer:{process_id}:{generation}"


def rearm_job_id(definition_id: str) -> str:
    return f"rearm:{definition_id}"


class TransitionEngine:
    """Turns ``autoTransition`` configs into scheduled work"""

    def __init__(
        self,
        service,
        registry: ProcessRegistry,
        store: ProcessStore,
        evaluator: ConditionEvaluator,
        bus: EventBus,
        scheduler: EngineScheduler,
        settings: Settings
    ):
        self.service = service
        self.registry = registry
        self.store = store
        self.evaluator = evaluator
        self.bus = bus
        self.scheduler = scheduler
        self.settings = settings
        self.check_interval_seconds = settings.condition_check_interval_seconds

        self._timers: Dict[str, str] = {}
        self._listeners: Dict[str, List[Callable[[], None]]] = {}
        self._subscriptions: List[Callable[[], None]] = []
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Subscribe to process events and schedule the condition sweep"""
        if self._started:
            return
        on = self.bus.on
        self._subscriptions = [
            on(ProcessEvent.CREATED.value, self._on_armable),
            on(ProcessEvent.STATE_CHANGED.value, self._on_state_changed),
            on(ProcessEvent.RESUMED.value, self._on_armable),
            on(ProcessEvent.SUSPENDED.value, self._on_disarm),
            on(ProcessEvent.CANCELLED.value, self._on_disarm),
            on(ProcessEvent.COMPLETED.value, self._on_disarm),
            on(ProcessEvent.FAILED.value, self._on_disarm),
            self.registry.on_registered(self._on_definition_registered),
        ]
        self.start_periodic_check()
        self._started = True
        logger.info("Transition engine started")

    def stop(self) -> None:
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
        self.stop_periodic_check()
        self.clear_all()
        self._started = False
        logger.info("Transition engine stopped")

    def start_periodic_check(self, seconds: Optional[float] = None) -> None:
        if seconds is not None:
            self.check_interval_seconds = seconds
        self.scheduler.add_interval_job(
            self.check_condition_transitions,
            self.check_interval_seconds,
            job_id=SWEEP_JOB_ID,
            name="Check condition auto-transitions"
        )

    def stop_periodic_check(self) -> None:
        self.scheduler.remove_job(SWEEP_JOB_ID)

    async def rehydrate(self) -> int:
        """Re-arm every active instance (startup, tenant switch)"""
        self.clear_all()
        armed = 0
        for instance in self.store.get_active():
            await self.arm(instance)
            armed += 1
        logger.info(f"Re-armed auto-transitions for {armed} active processes")
        return armed

    async def rehydrate_definition(self, definition_id: str) -> int:
        """Re-arm the active instances of one definition (late or replaced registration)"""
        armed = 0
        for instance in self.store.get_by_definition(definition_id):
            if instance.status != ProcessStatus.ACTIVE:
                continue
            self.clear_handles(instance.id)
            await self.arm(instance)
            armed += 1
        if armed:
            logger.info(
                f"Re-armed auto-transitions for {armed} processes of {definition_id}",
                extra={"definition_id": definition_id}
            )
        return armed

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def _on_state_changed(self, event: str, payload: Dict[str, Any]) -> None:
        process_id = payload["processId"]
        self.clear_handles(process_id)
        instance = self.store.get(process_id)
        if instance is not None:
            await self.arm(instance)

    async def _on_armable(self, event: str, payload: Dict[str, Any]) -> None:
        instance = self.store.get(payload["processId"])
        if instance is not None:
            self.clear_handles(instance.id)
            await self.arm(instance)

    async def _on_disarm(self, event: str, payload: Dict[str, Any]) -> None:
        self.clear_handles(payload["processId"])

    def _on_definition_registered(self, definition: ProcessDefinition) -> None:
        # Registration is synchronous; arming runs as a scheduler job
        self.scheduler.add_date_job(
            self.rehydrate_definition,
            utc_now(),
            job_id=rearm_job_id(definition.id),
            name=f"Re-arm {definition.id}",
            args=[definition.id]
        )

    # =========================================================================
    # Arming
    # =========================================================================

    async def arm(self, instance: ProcessInstance) -> None:
        """Set up auto-transitions for the instance's current state entry"""
        if instance.status != ProcessStatus.ACTIVE:
            return
        config = self._state_config(instance)
        if config is None or not config.auto_transition:
            return

        for entry in config.auto_transitions_of("immediate"):
            if await self._fire_immediate(instance, entry):
                return

        self._schedule_timer(instance, config)
        self._subscribe_events(instance, config)

    def _state_config(self, instance: ProcessInstance) -> Optional[StateConfig]:
        try:
            machine = self.registry.get_state_machine(instance.definition_id)
        except UnknownDefinitionError:
            logger.warning(
                f"Definition {instance.definition_id} not registered; auto-transitions skipped",
                extra={"process_id": instance.id, "definition_id": instance.definition_id}
            )
            return None
        return machine.definition.states.get(instance.current_state)

    async def _fire_immediate(self, instance: ProcessInstance, entry: ImmediateTransition) -> bool:
        depth = _immediate_depth.get()
        if depth >= self.settings.max_immediate_chain:
            logger.error(
                f"Immediate transition chain exceeded {self.settings.max_immediate_chain}; dropped",
                extra={"process_id": instance.id, "from_state": instance.current_state, "to_state": entry.to_state}
            )
            return False

        token = _immediate_depth.set(depth + 1)
        try:
            return await self._fire(
                instance.id,
                entry.to_state,
                trigger="immediate",
                context={"reason": entry.reason or "Auto-transition (immediate)"},
                expected_state=instance.current_state,
                expected_generation=instance.state_entry,
                audit_failure=True
            )
        finally:
            _immediate_depth.reset(token)

    def _schedule_timer(self, instance: ProcessInstance, config: StateConfig) -> None:
        timers: List[TimerTransition] = config.auto_transitions_of("timer")
        if not timers:
            return

        # Only the earliest timer can ever fire for this state entry
        entry = min(timers, key=lambda t: t.duration)
        generation = instance.state_entry
        fire_at = instance.state_entered_at + timedelta(milliseconds=entry.duration)
        run_at = max(fire_at, utc_now())
        job_id = timer_job_id(instance.id, generation)

        self.scheduler.add_date_job(
            self._fire_timer,
            run_at,
            job_id=job_id,
            name=f"Timer {instance.current_state} -> {entry.to_state}",
            args=[instance.id, instance.current_state, generation, entry.to_state, entry.reason]
        )
        self._timers[instance.id] = job_id
        logger.debug(
            f"Timer set: {entry.to_state} at {run_at.isoformat()}",
            extra={"process_id": instance.id, "to_state": entry.to_state, "job_id": job_id}
        )

    def _subscribe_events(self, instance: ProcessInstance, config: StateConfig) -> None:
        entries: List[EventTransition] = config.auto_transitions_of("event")
        for entry in entries:
            listener = self._make_event_listener(instance.id, instance.current_state, instance.state_entry, entry)
            unsubscribe = self.bus.on(entry.event, listener)
            self._listeners.setdefault(instance.id, []).append(unsubscribe)
            logger.debug(
                f"Event listener registered: {entry.event}",
                extra={"process_id": instance.id, "to_state": entry.to_state}
            )

    def _make_event_listener(self, process_id: str, state: str, generation: int, entry: EventTransition):
        async def listener(event: str, payload: Dict[str, Any]) -> None:
            instance = self.store.get(process_id)
            if instance is None or instance.status != ProcessStatus.ACTIVE:
                return
            if instance.current_state != state or instance.state_entry != generation:
                return
            if not self.evaluator.evaluate_conditions(entry.conditions, instance, payload or {}, entry.operator):
                return
            await self._fire(
                process_id,
                entry.to_state,
                trigger="event",
                context={"event": event, "eventData": payload, "reason": entry.reason},
                expected_state=state,
                expected_generation=generation,
                audit_failure=True
            )

        return listener

    # =========================================================================
    # Teardown
    # =========================================================================

    def clear_handles(self, process_id: str) -> None:
        """Cancel the timer and event listeners of a process"""
        job_id = self._timers.pop(process_id, None)
        if job_id and self.scheduler.remove_job(job_id):
            logger.debug("Timer cancelled", extra={"process_id": process_id, "job_id": job_id})

        for unsubscribe in self._listeners.pop(process_id, []):
            unsubscribe()

    def clear_all(self) -> None:
        for process_id in list(set(self._timers) | set(self._listeners)):
            self.clear_handles(process_id)

    def get_timer(self, process_id: str) -> Optional[str]:
        """Job id of the outstanding timer, if any"""
        return self._timers.get(process_id)

    def listener_count(self, process_id: str) -> int:
        return len(self._listeners.get(process_id, []))

    # =========================================================================
    # Firing
    # =========================================================================

    async def _fire_timer(
        self,
        process_id: str,
        state: str,
        generation: int,
        to_state: str,
        reason: Optional[str]
    ) -> None:
        if self._timers.get(process_id) == timer_job_id(process_id, generation):
            del self._timers[process_id]
        await self._fire(
            process_id,
            to_state,
            trigger="timer",
            context={"reason": reason or "Auto-transition by timer"},
            expected_state=state,
            expected_generation=generation,
            audit_failure=True
        )

    async def check_condition_transitions(self) -> int:
        """
        One sweep over active processes with condition auto-transitions

        Returns the number of transitions fired.
        """
        fired = 0
        for instance in self.store.get_active():
            config = self._state_config(instance)
            if config is None or not config.auto_transitions_of("condition"):
                continue
            match = self.evaluator.find_matching_auto_transition(config.auto_transition, instance, {})
            if match is None:
                continue
            logger.info(
                f"Condition met: transitioning to {match.to_state}",
                extra={"process_id": instance.id, "from_state": instance.current_state, "to_state": match.to_state}
            )
            ok = await self._fire(
                instance.id,
                match.to_state,
                trigger="condition",
                context={"reason": match.condition.reason or "Auto-transition by condition"},
                expected_state=instance.current_state,
                expected_generation=instance.state_entry
            )
            fired += int(ok)
        return fired

    async def _fire(
        self,
        process_id: str,
        to_state: str,
        trigger: str,
        context: Dict[str, Any],
        expected_state: str,
        expected_generation: int,
        audit_failure: bool = False
    ) -> bool:
        """
        Fire one auto-transition; failures are logged and dropped

        The snapshot check below only skips obvious stale work; the
        authoritative check is repeated under the process lock.
        """
        instance = self.store.get(process_id)
        if instance is None:
            logger.warning(f"Process vanished before {trigger} transition", extra={"process_id": process_id})
            return False
        if instance.status != ProcessStatus.ACTIVE:
            return False
        if instance.current_state != expected_state or instance.state_entry != expected_generation:
            logger.debug(
                f"Stale {trigger} transition dropped",
                extra={"process_id": process_id, "to_state": to_state, "trigger": trigger}
            )
            return False

        try:
            moved = await self.service.transition_if_current(
                process_id,
                to_state,
                expected_state,
                expected_generation,
                {"trigger": trigger, **context}
            )
            return moved is not None
        except DomainError as e:
            logger.warning(
                f"Auto-transition dropped: {e.message}",
                extra={"process_id": process_id, "from_state": expected_state, "to_state": to_state, "trigger": trigger}
            )
            if audit_failure:
                await self.service.record_auto_transition_error(process_id, to_state, e, trigger)
            return False
        except Exception as e:
            logger.error(
                f"Auto-transition failed: {e}",
                exc_info=True,
                extra={"process_id": process_id, "to_state": to_state, "trigger": trigger}
            )
            return False

    async def emit_event(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        """Publish an external event for event-type auto-transitions"""
        await self.bus.emit(event, payload or {})
