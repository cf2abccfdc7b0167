"""Assembles one running TaskGate instance from settings."""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from taskgate.approval import ApprovalAuthority, PolicyApprovalAuthority
from taskgate.config import Settings
from taskgate.db.base import build_engine, build_session_factory, close_db, init_db
from taskgate.engine.core import TaskGateEngine
from taskgate.engine.dependencies import DependencyResolver
from taskgate.engine.executor import ExecutionEngine
from taskgate.engine.ledger import CreditLedger
from taskgate.engine.scheduler import PriorityScheduler
from taskgate.integrations.service_client import HttpServiceClient, ServiceClient
from taskgate.notifications.bus import NotificationBus
from taskgate.notifications.feed import NotificationFeed
from taskgate.processors.builtin import build_default_registry
from taskgate.processors.registry import ProcessorRegistry

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every collaborator of one instance, wired together."""

    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    service_client: ServiceClient
    registry: ProcessorRegistry
    ledger: CreditLedger
    resolver: DependencyResolver
    bus: NotificationBus
    approval: ApprovalAuthority
    engine: TaskGateEngine
    scheduler: PriorityScheduler
    executor: ExecutionEngine
    feed: NotificationFeed

    async def start(self, run_workers: bool = True) -> None:
        """Create tables, then start the worker pool."""
        await init_db(self.db_engine)
        logger.info("Database initialized")
        if run_workers:
            await self.executor.start(recover=self.settings.recover_interrupted_on_start)
        elif self.settings.recover_interrupted_on_start:
            await self.executor.recover_interrupted()

    async def stop(self) -> None:
        await self.executor.stop()
        aclose = getattr(self.service_client, "aclose", None)
        if aclose is not None:
            await aclose()
        await close_db(self.db_engine)
        logger.info("Runtime stopped")


def build_runtime(
    settings: Settings,
    service_client: ServiceClient | None = None,
    registry: ProcessorRegistry | None = None,
) -> Runtime:
    """Wire a runtime; the registry is frozen before anything can use it."""
    db_engine = build_engine(settings.database_url, echo=settings.debug)
    session_factory = build_session_factory(db_engine)

    if service_client is None:
        service_client = HttpServiceClient.from_settings(settings)
    if registry is None:
        registry = build_default_registry(settings, service_client)
    registry.freeze()

    ledger = CreditLedger(session_factory)
    resolver = DependencyResolver()
    bus = NotificationBus()
    approval = PolicyApprovalAuthority(registry, settings)
    engine = TaskGateEngine(
        session_factory=session_factory,
        registry=registry,
        ledger=ledger,
        resolver=resolver,
        bus=bus,
        approval=approval,
        settings=settings,
    )
    scheduler = PriorityScheduler.from_settings(session_factory, resolver, settings)
    executor = ExecutionEngine.from_settings(engine, registry, scheduler, settings)
    feed = NotificationFeed(session_factory, settings.low_credit_threshold)

    bus.subscribe(feed)
    bus.subscribe(executor.on_event)

    return Runtime(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        service_client=service_client,
        registry=registry,
        ledger=ledger,
        resolver=resolver,
        bus=bus,
        approval=approval,
        engine=engine,
        scheduler=scheduler,
        executor=executor,
        feed=feed,
    )
