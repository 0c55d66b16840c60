"""Auto-transition tests: condition sweep, timers, immediate chains, events"""
import asyncio

from bpm_engine.domain.enums import ProcessStatus
from bpm_engine.runtime import create_runtime

from ...factories import make_instance


def timer_definition(fast_ms=50, slow_ms=None):
    timers = [{"type": "timer", "toState": "expired", "duration": fast_ms, "reason": "Offer expired"}]
    if slow_ms is not None:
        timers.insert(0, {"type": "timer", "toState": "escalated", "duration": slow_ms})
    return {
        "id": "offer",
        "name": "Offer",
        "initialState": "waiting",
        "states": {
            "waiting": {
                "transitions": ["accepted", "expired", "escalated"],
                "autoTransition": {"conditions": timers},
            },
            "accepted": {"transitions": []},
            "expired": {"transitions": []},
            "escalated": {"transitions": []},
        },
    }


EVENT_DEFINITION = {
    "id": "invoice",
    "name": "Invoice",
    "initialState": "sent",
    "states": {
        "sent": {
            "transitions": ["paid", "void"],
            "autoTransition": {
                "conditions": [
                    {
                        "type": "event",
                        "toState": "paid",
                        "event": "payment.received",
                        "conditions": [{"type": "variable", "field": "amount", "operator": "gt", "value": 0}],
                    }
                ]
            },
        },
        "paid": {"transitions": []},
        "void": {"transitions": []},
    },
}


async def wait_for_state(service, process_id, state, timeout=3.0):
    """Poll until the process reaches state (timers run on the scheduler)"""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if service.get_process(process_id).current_state == state:
            return True
        await asyncio.sleep(0.02)
    return False


class TestConditionSweep:
    async def test_condition_met_transitions(self, runtime, service, approval_definition):
        service.register_definition(approval_definition)
        instance = await service.create_process("purchase_approval", variables={"amount": 1000})
        await service.transition_state(instance.id, "submitted")

        fired = await runtime.engine.check_condition_transitions()

        process = service.get_process(instance.id)
        assert fired == 1
        assert process.current_state == "approved"
        assert process.status == ProcessStatus.COMPLETED
        assert process.state_history[-1].context["trigger"] == "condition"

    async def test_condition_not_met_stays(self, runtime, service, approval_definition):
        service.register_definition(approval_definition)
        instance = await service.create_process("purchase_approval", variables={"amount": 9000})
        await service.transition_state(instance.id, "submitted")

        fired = await runtime.engine.check_condition_transitions()

        assert fired == 0
        assert service.get_process(instance.id).current_state == "submitted"

    async def test_suspended_processes_are_skipped(self, runtime, service, approval_definition):
        service.register_definition(approval_definition)
        instance = await service.create_process("purchase_approval", variables={"amount": 10})
        await service.transition_state(instance.id, "submitted")
        await service.suspend_process(instance.id)

        assert await runtime.engine.check_condition_transitions() == 0
        assert service.get_process(instance.id).current_state == "submitted"

    async def test_sweep_job_is_scheduled(self, runtime):
        assert runtime.scheduler.has_job("engine:condition_sweep")


class TestTimers:
    async def test_timer_fires(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=50))
        instance = await service.create_process("offer")
        assert runtime.engine.get_timer(instance.id) is not None

        assert await wait_for_state(service, instance.id, "expired")
        process = service.get_process(instance.id)
        assert process.state_history[-1].context["trigger"] == "timer"
        assert process.state_history[-1].context["reason"] == "Offer expired"
        assert runtime.engine.get_timer(instance.id) is None

    async def test_timer_cancelled_when_state_left(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=150))
        instance = await service.create_process("offer")
        job_id = runtime.engine.get_timer(instance.id)

        await service.transition_state(instance.id, "accepted")

        assert runtime.engine.get_timer(instance.id) is None
        assert not runtime.scheduler.has_job(job_id)
        await asyncio.sleep(0.4)
        process = service.get_process(instance.id)
        assert process.current_state == "accepted"
        assert len(process.state_history) == 1

    async def test_only_earliest_timer_is_armed(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=50, slow_ms=60_000))
        instance = await service.create_process("offer")

        job = runtime.scheduler.get_job(runtime.engine.get_timer(instance.id))
        assert job.args[3] == "expired"
        assert await wait_for_state(service, instance.id, "expired")

    async def test_suspend_clears_and_resume_rearms(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=100))
        instance = await service.create_process("offer")

        await service.suspend_process(instance.id, "on hold")
        assert runtime.engine.get_timer(instance.id) is None
        await asyncio.sleep(0.25)
        assert service.get_process(instance.id).current_state == "waiting"

        await service.resume_process(instance.id)
        assert await wait_for_state(service, instance.id, "expired")

    async def test_cancel_clears_timer(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=100))
        instance = await service.create_process("offer")

        await service.cancel_process(instance.id, "withdrawn")

        assert runtime.engine.get_timer(instance.id) is None
        await asyncio.sleep(0.25)
        assert service.get_process(instance.id).current_state == "cancelled"

    async def test_rehydrate_rearms_active_processes(self, runtime, service):
        service.register_definition(timer_definition(fast_ms=60_000))
        instance = await service.create_process("offer")
        runtime.engine.clear_all()
        assert runtime.engine.get_timer(instance.id) is None

        armed = await runtime.engine.rehydrate()

        assert armed == 1
        assert runtime.engine.get_timer(instance.id) is not None


class TestImmediate:
    async def test_immediate_chain_on_create(self, service):
        service.register_definition({
            "id": "pipeline",
            "name": "Pipeline",
            "initialState": "received",
            "states": {
                "received": {
                    "transitions": ["validated"],
                    "autoTransition": {"conditions": [{"type": "immediate", "toState": "validated"}]},
                },
                "validated": {
                    "transitions": ["queued"],
                    "autoTransition": {"conditions": [{"type": "immediate", "toState": "queued"}]},
                },
                "queued": {"transitions": ["done"]},
                "done": {"transitions": []},
            },
        })

        instance = await service.create_process("pipeline")

        assert instance.current_state == "queued"
        assert [h.to_state for h in instance.state_history] == ["validated", "queued"]

    async def test_immediate_loop_is_bounded(self, settings):
        runtime = create_runtime(settings.model_copy(update={"max_immediate_chain": 5}))
        await runtime.start("loop-org")
        try:
            runtime.service.register_definition({
                "id": "ping_pong",
                "name": "Ping Pong",
                "initialState": "ping",
                "states": {
                    "ping": {
                        "transitions": ["pong"],
                        "autoTransition": {"conditions": [{"type": "immediate", "toState": "pong"}]},
                    },
                    "pong": {
                        "transitions": ["ping"],
                        "autoTransition": {"conditions": [{"type": "immediate", "toState": "ping"}]},
                    },
                },
            })
            instance = await runtime.service.create_process("ping_pong")
            assert len(instance.state_history) == 5
        finally:
            await runtime.stop()

    async def test_failed_immediate_is_audited(self, service):
        service.register_definition({
            "id": "checked",
            "name": "Checked",
            "initialState": "check",
            "states": {
                "check": {
                    "transitions": ["next"],
                    "guards": {"next": [{"type": "variable", "field": "ok", "operator": "eq", "value": True}]},
                    "autoTransition": {"conditions": [{"type": "immediate", "toState": "next"}]},
                },
                "next": {"transitions": []},
            },
        })

        instance = await service.create_process("checked", variables={"ok": False})

        assert instance.current_state == "check"
        errors = [e for e in instance.audit_log if e.action == "transition_error"]
        assert errors and errors[0].details["trigger"] == "immediate"


class TestEvents:
    async def test_event_triggers_transition(self, runtime, service):
        service.register_definition(EVENT_DEFINITION)
        instance = await service.create_process("invoice", variables={"amount": 120})
        assert runtime.engine.listener_count(instance.id) == 1

        await runtime.engine.emit_event("payment.received", {"reference": "PAY-1"})

        process = service.get_process(instance.id)
        assert process.current_state == "paid"
        context = process.state_history[-1].context
        assert context["trigger"] == "event"
        assert context["event"] == "payment.received"
        assert context["eventData"] == {"reference": "PAY-1"}
        assert runtime.engine.listener_count(instance.id) == 0

    async def test_event_conditions_must_hold(self, runtime, service):
        service.register_definition(EVENT_DEFINITION)
        instance = await service.create_process("invoice", variables={"amount": 0})

        await runtime.engine.emit_event("payment.received", {})

        assert service.get_process(instance.id).current_state == "sent"

    async def test_listener_removed_when_state_left(self, runtime, service):
        service.register_definition(EVENT_DEFINITION)
        instance = await service.create_process("invoice", variables={"amount": 50})
        await service.transition_state(instance.id, "void")

        assert runtime.engine.listener_count(instance.id) == 0
        assert runtime.bus.handler_count("payment.received") == 0

    async def test_other_events_are_ignored(self, runtime, service):
        service.register_definition(EVENT_DEFINITION)
        instance = await service.create_process("invoice", variables={"amount": 50})

        await runtime.engine.emit_event("payment.failed", {})

        assert service.get_process(instance.id).current_state == "sent"


async def test_stale_timer_job_is_dropped(runtime, service):
    service.register_definition(timer_definition(fast_ms=60_000))
    instance = await service.create_process("offer")
    await service.transition_state(instance.id, "accepted")

    # A job that survived teardown must notice the generation moved on
    await runtime.engine._fire_timer(instance.id, "waiting", 0, "expired", None)

    assert service.get_process(instance.id).current_state == "accepted"


async def test_timer_waiting_on_lock_does_not_fire_from_new_state(runtime, service):
    async def slow_review(instance, context, params):
        await asyncio.sleep(0.4)

    runtime.hooks.register("slow_review", slow_review)
    service.register_definition({
        "id": "race",
        "name": "Race",
        "initialState": "waiting",
        "states": {
            "waiting": {
                "transitions": ["review", "expired"],
                "autoTransition": {"conditions": [{"type": "timer", "toState": "expired", "duration": 150}]},
            },
            "review": {"transitions": ["expired", "done"], "onEnter": "slow_review"},
            "expired": {"transitions": []},
            "done": {"transitions": []},
        },
    })
    instance = await service.create_process("race")
    await asyncio.sleep(0.05)

    # The timer comes due while the onEnter hook holds the process lock
    await service.transition_state(instance.id, "review")
    await asyncio.sleep(0.3)

    process = service.get_process(instance.id)
    assert process.current_state == "review"
    assert [(h.from_state, h.to_state) for h in process.state_history] == [("waiting", "review")]


async def test_transition_if_current_ignores_left_state(service):
    service.register_definition(timer_definition(fast_ms=60_000))
    instance = await service.create_process("offer")
    await service.transition_state(instance.id, "accepted")

    moved = await service.transition_if_current(instance.id, "expired", "waiting", 0, {"trigger": "timer"})

    assert moved is None
    assert service.get_process(instance.id).current_state == "accepted"


async def test_late_registration_rearms_loaded_processes(runtime, service):
    saved = make_instance(
        id="process_inst:offer_1_saved",
        definition_id="offer",
        process_type="offer",
        current_state="waiting",
    )
    await runtime.store.load_processes([saved])
    await runtime.engine.rehydrate()
    assert runtime.engine.get_timer(saved.id) is None

    service.register_definition(timer_definition(fast_ms=50))

    assert await wait_for_state(service, saved.id, "expired")
    assert service.get_process(saved.id).state_history[-1].context["trigger"] == "timer"


async def test_rehydrate_definition_skips_other_definitions(runtime, service):
    service.register_definition(timer_definition(fast_ms=60_000))
    service.register_definition(EVENT_DEFINITION)
    offer = await service.create_process("offer")
    invoice = await service.create_process("invoice", variables={"amount": 10})
    runtime.engine.clear_all()

    armed = await runtime.engine.rehydrate_definition("offer")

    assert armed == 1
    assert runtime.engine.get_timer(offer.id) is not None
    assert runtime.engine.listener_count(invoice.id) == 0
