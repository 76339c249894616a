"""
Service wiring for the triage runtime.

Builds the object graph once (store, queue, worker pool, job service,
rules engine, pipeline) and exposes it through a process-wide instance the
routes read via ``get_runtime()``. The HTTP app and the standalone worker
both go through ``build_runtime``.
"""

from dataclasses import dataclass
from datetime import timedelta

from inbox_triage.config import settings
from inbox_triage.errors import QueueNotInitializedError
from inbox_triage.infrastructure.events import InMemoryEventBroadcaster
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.queue.models import QueueOptions
from inbox_triage.queue.priority_queue import JobQueue
from inbox_triage.queue.registry import ProcessorRegistry
from inbox_triage.queue.service import JobService, set_job_service
from inbox_triage.queue.worker_pool import WorkerPool
from inbox_triage.rules.engine import RulesEngine
from inbox_triage.triage.budget import DailyCostBudget
from inbox_triage.triage.pipeline import BatchTriagePipeline
from inbox_triage.triage.processing_config import ProcessingConfig, ProcessingConfigService
from inbox_triage.triage.processors import TriageProcessors

logger = get_logger(__name__)


@dataclass
class TriageRuntime:
    store: object
    ai_scorer: object | None
    events: InMemoryEventBroadcaster
    budget: DailyCostBudget
    config_service: ProcessingConfigService
    rules_engine: RulesEngine
    pipeline: BatchTriagePipeline
    queue: JobQueue
    registry: ProcessorRegistry
    pool: WorkerPool
    job_service: JobService

    async def start(self) -> None:
        await self.pool.start()
        logger.info(
            "Triage runtime started",
            processors=[t.value for t in self.registry.registered_types()],
            ai_enabled=self.ai_scorer is not None,
        )

    async def stop(self) -> None:
        result = await self.pipeline.shutdown()
        if result.processed:
            logger.info("Flushed buffered emails on shutdown", processed=result.processed)
        await self.pool.stop(timeout=settings.QUEUE_TIMEOUT_MS / 1000)
        logger.info("Triage runtime stopped")


def build_store():
    """Postgres when a database URL is configured, in-memory otherwise."""
    if settings.SUPABASE_DB_URL:
        from inbox_triage.repositories.postgres_store import PostgresTriageStore

        return PostgresTriageStore()

    from inbox_triage.repositories.memory_store import InMemoryTriageStore

    logger.warning("SUPABASE_DB_URL not set, using in-memory triage store")
    return InMemoryTriageStore()


def build_ai_scorer():
    """OpenAI scorer when a key is configured; None runs the pipeline rule-only."""
    if not settings.OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set, AI scoring disabled")
        return None

    from inbox_triage.services.openai_service import OpenAITriageService

    return OpenAITriageService()


def build_runtime(
    store=None,
    ai_scorer=None,
    *,
    options: QueueOptions | None = None,
    defaults: ProcessingConfig | None = None,
    use_ai: bool = True,
) -> TriageRuntime:
    """
    Wire every triage component around one store.

    Args:
        store: TriageStore implementation (built from settings when omitted)
        ai_scorer: AIScorer implementation (built from settings when omitted and use_ai)
        options: Queue options (from settings when omitted)
        defaults: Process-wide processing config (from settings when omitted)
        use_ai: Set False to force rule-only scoring
    """
    store = store if store is not None else build_store()
    if ai_scorer is None and use_ai:
        ai_scorer = build_ai_scorer()

    defaults = (defaults or ProcessingConfig.from_settings()).validated()
    options = options or QueueOptions(**settings.get_queue_options())

    events = InMemoryEventBroadcaster()
    budget = DailyCostBudget()
    config_service = ProcessingConfigService(store, defaults)
    rules_engine = RulesEngine(
        store,
        event_sink=events,
        cache_ttl_seconds=settings.TRIAGE_RULES_CACHE_TTL_SECONDS,
        config_service=config_service,
    )
    pipeline = BatchTriagePipeline(
        store,
        ai_scorer=ai_scorer,
        rules_engine=rules_engine,
        event_sink=events,
        config=defaults,
        config_service=config_service,
        budget=budget,
    )

    queue = JobQueue(options)
    registry = ProcessorRegistry()
    pool = WorkerPool(
        queue,
        registry,
        options,
        retention=timedelta(hours=settings.QUEUE_RETENTION_HOURS),
        maintenance_interval_seconds=settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS,
    )
    job_service = JobService(
        pool,
        store,
        max_avg_processing_ms=settings.QUEUE_HEALTH_MAX_AVG_PROCESSING_MS,
        config_service=config_service,
    )
    TriageProcessors(
        store,
        ai_scorer=ai_scorer,
        job_service=job_service,
        budget=budget,
        config=defaults,
        config_service=config_service,
    ).register(registry)

    return TriageRuntime(
        store=store,
        ai_scorer=ai_scorer,
        events=events,
        budget=budget,
        config_service=config_service,
        rules_engine=rules_engine,
        pipeline=pipeline,
        queue=queue,
        registry=registry,
        pool=pool,
        job_service=job_service,
    )


# Process-wide instance, set during application startup
_runtime: TriageRuntime | None = None


def set_runtime(runtime: TriageRuntime | None) -> None:
    global _runtime
    _runtime = runtime
    set_job_service(runtime.job_service if runtime else None)


def get_runtime() -> TriageRuntime:
    """Get the running triage runtime. Raises QueueNotInitializedError before startup."""
    if _runtime is None:
        raise QueueNotInitializedError("Triage runtime is not initialized")
    return _runtime
