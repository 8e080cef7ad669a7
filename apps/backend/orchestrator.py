"""
Ingestion service composition and lifecycle.

build_orchestrator() wires configuration into the queue, adapters, worker
pool, store and logger. IngestionOrchestrator starts and stops the
background pieces and answers status queries.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import metrics
from core.config import PipelineSettings, SourceSettings
from core.ingest_logger import IngestLogger, MemoryLogSink, PostgresLogSink
from core.net import HTTPClient
from core.proxy_pool import ProxyPool
from core.rate_limiter import SourceRateLimiter
from crawler.adapters import AdapterRegistry, ApiFallbackPolicy, InternshalaAdapter, LinkedInAdapter
from crawler.adapters.base import SourceAdapter
from crawler.browser_crawler import BrowserCrawler
from pipeline.job_queue import JobQueue, PostgresJobStore
from pipeline.jobs import Job
from pipeline.processor import RecordProcessor
from pipeline.store import ListingStore, MemoryListingStore, PostgresListingStore
from pipeline.worker import WorkerPool

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 60
CLEAN_INTERVAL_SECONDS = 3600


def build_adapter(
    source: SourceSettings,
    settings: PipelineSettings,
    rate_limiter: SourceRateLimiter,
    proxy_pool: ProxyPool,
) -> Optional[SourceAdapter]:
    """Create the adapter for a configured source, or None if unknown"""
    common = {
        'rate_limiter': rate_limiter,
        'proxy_pool': proxy_pool,
        'browser': BrowserCrawler(),
        'base_url': source.base_url,
        'max_retries': source.max_retries,
        'timeout': source.timeout_seconds,
    }
    if source.name == 'internshala':
        return InternshalaAdapter(**common)
    if source.name == 'linkedin':
        return LinkedInAdapter(
            http_client=HTTPClient(timeout=source.timeout_seconds),
            access_token=settings.linkedin_access_token,
            client_id=settings.linkedin_client_id,
            client_secret=settings.linkedin_client_secret,
            fallback_policy=ApiFallbackPolicy(settings.linkedin_quota_cooldown),
            **common,
        )
    logger.warning(f"[orchestrator] No adapter implementation for source '{source.name}'")
    return None


class IngestionOrchestrator:
    """Owns the running service: queue, workers, schedules, maintenance"""

    def __init__(
        self,
        settings: PipelineSettings,
        registry: AdapterRegistry,
        queue: JobQueue,
        workers: WorkerPool,
        store: ListingStore,
        ingest_logger: IngestLogger,
        proxy_pool: ProxyPool,
        rate_limiter: SourceRateLimiter,
        schema_owners: Optional[List[Any]] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.queue = queue
        self.workers = workers
        self.store = store
        self.ingest_logger = ingest_logger
        self.proxy_pool = proxy_pool
        self.rate_limiter = rate_limiter
        self.schema_owners = schema_owners or []
        self.running = False
        self._maintenance_task: Optional[asyncio.Task] = None

    def ensure_schema(self):
        for owner in self.schema_owners:
            owner.ensure_schema()

    def schedule_defaults(self) -> int:
        """Register a recurring full scrape for every enabled source"""
        count = 0
        for source in self.settings.enabled_sources():
            if source.name not in self.registry or not source.schedule:
                continue
            next_fire = self.queue.enqueue_recurring(
                f"{source.name}-full-scrape",
                {'source': source.name, 'url': source.start_url, 'kind': 'full_scrape'},
                source.schedule,
            )
            logger.info(f"[orchestrator] {source.name} scheduled '{source.schedule}', next run {next_fire}")
            count += 1
        return count

    async def start(self, with_schedules: bool = True):
        """Start workers and background loops"""
        if self.running:
            return
        self.ensure_schema()
        self.queue.restore()
        self.ingest_logger.start()
        self.proxy_pool.start()
        if with_schedules:
            self.schedule_defaults()
            self.queue.scheduler.start()
        self.workers.start()
        self.running = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(f"[orchestrator] Started with sources: {', '.join(self.registry.names()) or 'none'}")

    async def stop(self):
        """Stop taking work, finish in-flight jobs and flush logs"""
        if not self.running:
            return
        self.running = False
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None
        await self.queue.scheduler.stop()
        await self.workers.stop()
        await self.proxy_pool.stop()
        await self.ingest_logger.shutdown()
        logger.info("[orchestrator] Stopped")

    async def _maintenance_loop(self):
        """Periodic stall recovery and retention cleanup"""
        since_clean = 0.0
        while self.running:
            await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
            try:
                self.maintenance_tick(clean=since_clean >= CLEAN_INTERVAL_SECONDS)
                since_clean = 0.0 if since_clean >= CLEAN_INTERVAL_SECONDS else since_clean + MAINTENANCE_INTERVAL_SECONDS
            except Exception as e:
                logger.error(f"[orchestrator] Maintenance error: {e}", exc_info=True)

    def maintenance_tick(self, clean: bool = False) -> Dict[str, int]:
        recovered = self.queue.recover_stalled()
        if recovered:
            logger.warning(f"[orchestrator] Recovered {recovered} stalled jobs")
        cleaned = self.queue.clean() if clean else 0
        metrics.set_healthy_proxies(self.proxy_pool.healthy_count())
        return {'recovered': recovered, 'cleaned': cleaned}

    def enqueue(
        self,
        source: str,
        url: Optional[str] = None,
        kind: str = 'incremental',
        priority: int = 0,
        delay_seconds: float = 0,
        metadata: Optional[Dict] = None,
    ) -> str:
        """Enqueue a job; url defaults to the source's configured start page"""
        if url is None:
            configured = self.settings.sources.get(source)
            url = configured.start_url if configured else ''
        job = Job(
            source=source,
            url=url,
            kind=kind,
            priority=priority,
            delay_seconds=delay_seconds,
            metadata=metadata,
        )
        return self.queue.enqueue(job)

    async def drain(self, timeout: Optional[float] = None, poll_interval: float = 0.5) -> bool:
        """
        Wait until no job is waiting, delayed or running.

        Returns:
            False if the timeout expired first
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            health = self.queue.health()
            if health['active'] + health['waiting'] + health['delayed'] == 0:
                return True
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)

    def status(self) -> Dict[str, Any]:
        return {
            'running': self.running,
            'queue': self.queue.health(),
            'adapters': {
                name: {
                    'cache': self.registry.get(name).cache_stats(),
                    'rate_limit': self.rate_limiter.usage(name),
                }
                for name in self.registry.names()
            },
            'schedules': self.queue.scheduler.list_schedules(),
            'proxies': {
                'total': len(self.proxy_pool),
                'healthy': self.proxy_pool.healthy_count(),
            },
            'store': self.store.stats(),
            'workers': {
                'concurrency': self.workers.concurrency,
                'jobs_run': self.workers.jobs_run,
            },
        }


def build_orchestrator(
    settings: Optional[PipelineSettings] = None,
    update_job_status: Optional[Callable[[str, str, Dict], None]] = None,
    on_change: Optional[Callable[[str, Dict], None]] = None,
) -> IngestionOrchestrator:
    """
    Wire the service from settings.

    With DATABASE_URL set the listing store, log sink and job store are
    Postgres-backed; otherwise everything is in memory.
    """
    settings = settings or PipelineSettings()
    schema_owners: List[Any] = []

    if settings.database_url:
        store: ListingStore = PostgresListingStore(settings.database_url, on_change=on_change)
        sink = PostgresLogSink(settings.database_url)
        job_store: Optional[PostgresJobStore] = PostgresJobStore(settings.database_url)
        schema_owners = [store, sink, job_store]
    else:
        store = MemoryListingStore(on_change=on_change)
        sink = MemoryLogSink()
        job_store = None

    ingest_logger = IngestLogger(
        sink,
        buffer_size=settings.log_buffer_size,
        flush_interval=settings.log_flush_seconds,
        max_buffer=settings.log_max_buffer,
    )

    rate_limiter = SourceRateLimiter()
    proxy_pool = ProxyPool(
        settings.proxies,
        check_interval=settings.proxy_check_interval,
        check_url=settings.proxy_check_url,
    )

    registry = AdapterRegistry()
    for source in settings.enabled_sources():
        rate_limiter.configure(source.name, source.rate_limit_requests, source.window_seconds)
        adapter = build_adapter(source, settings, rate_limiter, proxy_pool)
        if adapter is not None:
            registry.register(adapter)

    queue = JobQueue(
        registry,
        job_store=job_store,
        max_attempts=settings.job_max_attempts,
        backoff_base=settings.job_backoff_seconds,
        stall_timeout=settings.stall_timeout_seconds,
        update_job_status=update_job_status,
    )
    processor = RecordProcessor(store, ingest_logger=ingest_logger)
    workers = WorkerPool(queue, registry, processor, ingest_logger, concurrency=settings.concurrency)

    return IngestionOrchestrator(
        settings,
        registry,
        queue,
        workers,
        store,
        ingest_logger,
        proxy_pool,
        rate_limiter,
        schema_owners=schema_owners,
    )
