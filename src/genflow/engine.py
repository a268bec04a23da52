"""Generation engine: one instance per provider family.

Each GenerationEngine owns its adapter, a concurrency semaphore shared by the
dispatcher and the reconciler, and three timer-driven loops (dispatch,
reconcile, retrieval sweep). GenerationOrchestrator starts and stops all
engines with a single shutdown signal.
"""

import asyncio
from typing import Mapping, Optional

import httpx
import structlog

from genflow.core.config import Settings
from genflow.models.job import JobState, ProviderKind
from genflow.services.events import EventPublisher
from genflow.services.exceptions import ConfigurationError
from genflow.services.notification_intake import IntakeResult, NotificationIntake
from genflow.services.providers.base import ProviderAdapter, RawNotification
from genflow.services.storage import AssetStorage
from genflow.services.transitions import JobTransitions, UowFactory
from genflow.workers.asset_retriever import AssetRetriever
from genflow.workers.dispatcher import Dispatcher
from genflow.workers.reconciler import StatusReconciler
from genflow.workers.supervisor import create_resilient_worker, run_periodic

logger = structlog.get_logger(__name__)


class GenerationEngine:
    """Dispatch, reconcile and retrieval for one provider family."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        uow_factory: UowFactory,
        publisher: EventPublisher,
        storage: AssetStorage,
        settings: Settings,
        concurrency: int,
        download_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if concurrency < 1:
            raise ConfigurationError(f"{adapter.kind.value}: concurrency must be at least 1")

        self.adapter = adapter
        self.kind = adapter.kind
        self.settings = settings
        self.uow_factory = uow_factory
        self.semaphore = asyncio.Semaphore(concurrency)

        self.transitions = JobTransitions(self.kind, uow_factory, publisher)
        self.dispatcher = Dispatcher(adapter, uow_factory, self.transitions, self.semaphore, settings)
        self.reconciler = StatusReconciler(
            adapter, uow_factory, self.transitions, self.semaphore, settings
        )
        self.retriever = AssetRetriever(
            self.kind, uow_factory, self.transitions, storage, settings, transport=download_transport
        )
        self.intake = NotificationIntake(adapter, uow_factory, self.transitions)

        self.transitions.subscribe_succeeded(self.retriever.trigger)
        self._tasks: dict[str, asyncio.Task] = {}

    def start(self, shutdown_event: asyncio.Event) -> None:
        """Start the engine's supervised loops."""
        loops = {
            "dispatch": lambda: run_periodic(
                f"{self.kind.value}.dispatch",
                self.dispatcher.run_once,
                self.settings.dispatch_interval_seconds,
                shutdown_event,
                wake_event=self.dispatcher.wake_event,
            ),
            "reconcile": lambda: run_periodic(
                f"{self.kind.value}.reconcile",
                self.reconciler.run_once,
                self.settings.reconcile_interval_seconds,
                shutdown_event,
            ),
            "retrieval": lambda: run_periodic(
                f"{self.kind.value}.retrieval",
                self.retriever.run_once,
                self.settings.retrieval_interval_seconds,
                shutdown_event,
            ),
        }
        for name, coro_func in loops.items():
            create_resilient_worker(
                coro_func,
                f"{self.kind.value}.{name}",
                shutdown_event,
                on_spawn=self._track(name),
            )

    def _track(self, name: str):
        def on_spawn(task: asyncio.Task) -> None:
            self._tasks[name] = task

        return on_spawn

    def live_tasks(self) -> list[asyncio.Task]:
        tasks = [task for task in self._tasks.values() if not task.done()]
        tasks.extend(self.retriever.pending_tasks())
        return tasks

    def notify_created(self) -> None:
        self.dispatcher.notify()

    async def handle_notification(self, raw: RawNotification) -> IntakeResult:
        return await self.intake.handle(raw)

    async def log_backlog(self) -> None:
        """Log per-state job counts (startup diagnostics)."""
        async with await self.uow_factory() as uow:
            counts = await uow.jobs.count_by_state(self.kind)
        logger.info(
            "engine.backlog",
            provider=self.kind.value,
            pending=counts.get(JobState.PENDING, 0),
            submitted=counts.get(JobState.SUBMITTED, 0),
            succeeded=counts.get(JobState.SUCCEEDED, 0),
        )


class GenerationOrchestrator:
    """Owns all engines and their shared shutdown signal."""

    def __init__(self, engines: Mapping[ProviderKind, GenerationEngine], grace_seconds: float = 10.0):
        self.engines = dict(engines)
        self.grace_seconds = grace_seconds
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_adapters(
        cls,
        adapters: Mapping[ProviderKind, ProviderAdapter],
        uow_factory: UowFactory,
        publisher: EventPublisher,
        storage: AssetStorage,
        settings: Settings,
        download_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GenerationOrchestrator":
        engines = {
            kind: GenerationEngine(
                adapter,
                uow_factory,
                publisher,
                storage,
                settings,
                concurrency=settings.provider_config(kind).concurrency,
                download_transport=download_transport,
            )
            for kind, adapter in adapters.items()
        }
        return cls(engines, grace_seconds=settings.shutdown_grace_seconds)

    def engine(self, kind: ProviderKind) -> GenerationEngine:
        try:
            return self.engines[kind]
        except KeyError:
            raise ConfigurationError(f"Provider {kind.value} is not enabled") from None

    async def start(self) -> None:
        for engine in self.engines.values():
            await engine.log_backlog()
            engine.start(self.shutdown_event)
        logger.info("orchestrator.started", providers=[kind.value for kind in self.engines])

    def notify_created(self, kind: ProviderKind) -> None:
        engine = self.engines.get(kind)
        if engine is not None:
            engine.notify_created()

    async def handle_notification(self, kind: ProviderKind, raw: RawNotification) -> IntakeResult:
        return await self.engine(kind).handle_notification(raw)

    async def stop(self) -> None:
        """Signal shutdown, let loops finish, cancel whatever outlives the grace period.

        Tasks spawned while stopping (a retrieval triggered by a final poll)
        are awaited too, within the same grace deadline.
        """
        logger.info("orchestrator.stopping", grace_seconds=self.grace_seconds)
        self.shutdown_event.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_seconds
        finished = 0
        while True:
            tasks = [task for engine in self.engines.values() for task in engine.live_tasks()]
            remaining = deadline - loop.time()
            if not tasks or remaining <= 0:
                break
            done, _ = await asyncio.wait(tasks, timeout=remaining)
            finished += len(done)

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.warning("orchestrator.tasks_cancelled", count=len(tasks))
        logger.info("orchestrator.stopped", finished=finished, cancelled=len(tasks))
