"""Engine Runtime - Wires the engine components for one host process

Everything is created per runtime (no module-level singletons) so tests
and multi-tenant hosts can run isolated instances side by side.
"""
from dataclasses import dataclass
from typing import Optional

from .config.settings import Settings, get_settings
from .domain.models import RemoteCredentials
from .engine.audit_writer import AuditWriter
from .engine.condition_evaluator import ConditionEvaluator
from .engine.hooks import HookRegistry
from .engine.registry import ProcessRegistry
from .engine.transition_engine import TransitionEngine
from .engine.variable_schema import VariableSchemaValidator
from .repositories.process_store import ProcessStore
from .scheduler.engine_scheduler import EngineScheduler
from .services.process_service import ProcessService
from .services.sync_coordinator import RemoteFactory, RepositoryFactory, SyncCoordinator
from .services.task_projector import TaskProjector
from .utils.events import EventBus
from .utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class EngineRuntime:
    """All engine components of one runtime"""
    settings: Settings
    bus: EventBus
    evaluator: ConditionEvaluator
    hooks: HookRegistry
    registry: ProcessRegistry
    store: ProcessStore
    scheduler: EngineScheduler
    service: ProcessService
    engine: TransitionEngine
    tasks: TaskProjector
    sync: SyncCoordinator
    org_id: Optional[str] = None
    started: bool = False

    async def start(
        self,
        org_id: Optional[str] = None,
        remote_url: Optional[str] = None,
        credentials: Optional[RemoteCredentials] = None
    ) -> None:
        """Start scheduling, load the tenant and re-arm its active processes"""
        if self.started:
            return
        self.org_id = org_id or self.settings.default_org_id
        self.service.org_id = self.org_id
        self.scheduler.start()
        await self.sync.initialize(self.org_id, remote_url, credentials)
        self.engine.start()
        await self.engine.rehydrate()
        self.started = True
        logger.info(f"Engine runtime started for org {self.org_id}", extra={"org_id": self.org_id})

    async def stop(self) -> None:
        if not self.started:
            return
        self.engine.stop()
        await self.sync.cleanup()
        self.scheduler.stop()
        self.started = False
        logger.info("Engine runtime stopped", extra={"org_id": self.org_id})

    async def switch_organization(
        self,
        org_id: str,
        remote_url: Optional[str] = None,
        credentials: Optional[RemoteCredentials] = None
    ) -> None:
        """Tear down the current tenant's handles and load another"""
        self.engine.clear_all()
        await self.sync.switch_organization(org_id, remote_url, credentials)
        self.org_id = org_id
        self.service.org_id = org_id
        await self.engine.rehydrate()
        logger.info(f"Switched to org {org_id}", extra={"org_id": org_id})


def create_runtime(
    settings: Optional[Settings] = None,
    repository_factory: Optional[RepositoryFactory] = None,
    remote_factory: Optional[RemoteFactory] = None
) -> EngineRuntime:
    """Build an unstarted runtime"""
    settings = settings or get_settings()
    bus = EventBus()
    evaluator = ConditionEvaluator()
    hooks = HookRegistry()
    registry = ProcessRegistry(evaluator, hooks, AuditWriter())
    store = ProcessStore()
    scheduler = EngineScheduler(settings)
    service = ProcessService(registry, store, bus, VariableSchemaValidator())
    engine = TransitionEngine(service, registry, store, evaluator, bus, scheduler, settings)
    tasks = TaskProjector(service, bus)
    sync = SyncCoordinator(store, bus, scheduler, settings, repository_factory, remote_factory)

    return EngineRuntime(
        settings=settings,
        bus=bus,
        evaluator=evaluator,
        hooks=hooks,
        registry=registry,
        store=store,
        scheduler=scheduler,
        service=service,
        engine=engine,
        tasks=tasks,
        sync=sync,
    )
