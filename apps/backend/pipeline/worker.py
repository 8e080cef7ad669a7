"""
Worker pool executing ingestion jobs.

Each worker takes one job at a time from the queue and runs it through
fetch -> normalize -> validate -> dedupe -> store. A failing job is marked
failed (or requeued) and the worker moves on to the next one.
"""
import asyncio
import logging
from typing import List, Optional

import metrics
from core.ingest_logger import IngestLogger
from core.net import TerminalFetchError, TransientFetchError
from crawler.adapters.base import FetchResult, SourceAdapter
from crawler.adapters.registry import AdapterRegistry
from pipeline.job_queue import JobQueue, StaleJobError, ValidationError
from pipeline.jobs import Job
from pipeline.processor import RecordProcessor
from pipeline.store import StorageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 5


class WorkerPool:
    """Fixed number of asyncio workers draining a JobQueue"""

    def __init__(
        self,
        queue: JobQueue,
        registry: AdapterRegistry,
        processor: RecordProcessor,
        ingest_logger: IngestLogger,
        concurrency: int = 3,
        poll_timeout: float = 1.0,
    ):
        self.queue = queue
        self.registry = registry
        self.processor = processor
        self.ingest_logger = ingest_logger
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.running = False
        self._tasks: List[asyncio.Task] = []
        self.jobs_run = 0

    def start(self):
        """Start the worker tasks"""
        if self.running:
            return
        self.running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i), name=f"ingest-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"[worker] Started {self.concurrency} workers")

    async def stop(self, timeout: Optional[float] = 30.0):
        """
        Stop taking new jobs and wait for in-flight ones.

        Workers still busy after the timeout are cancelled; their jobs stay
        running until stall recovery or restore() picks them up.
        """
        self.running = False
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"[worker] Cancelled {len(pending)} busy workers")
        self._tasks = []
        logger.info("[worker] Workers stopped")

    async def _worker_loop(self, index: int):
        logger.debug(f"[worker] Worker {index} running")
        while self.running:
            job = await self.queue.dequeue(timeout=self.poll_timeout)
            if job is None:
                continue
            try:
                await self.run_job(job)
            except Exception as e:
                logger.error(f"[worker] Worker {index} lost job {job.id}: {e}", exc_info=True)
        logger.debug(f"[worker] Worker {index} exiting")

    def _progress(self, job: Job, attempt: int, percent: int, stage: str):
        self.queue.report_progress(job.id, percent, stage, attempt=attempt)
        self.ingest_logger.debug(job.source, f"Job {stage} ({percent}%)", {'progress': percent}, job.id)

    async def _fetch(self, adapter: SourceAdapter, job: Job) -> FetchResult:
        if job.kind == 'full_scrape':
            adapter.clear()
            max_pages = int(job.metadata.get('max_pages', DEFAULT_MAX_PAGES))
            result = await adapter.fetch_all(job.url, max_pages=max_pages)
            pages = result.metadata.get('pages', 1)
        else:
            result = await adapter.fetch(job.url)
            pages = 1
        metrics.record_fetch_retries(job.source, result.attempts - pages)
        return result

    async def run_job(self, job: Job) -> bool:
        """
        Execute one dequeued job to completion or failure.

        Outcomes for an attempt the queue has since recovered or finished
        are dropped.

        Returns:
            True if the job completed
        """
        self.jobs_run += 1
        attempt = job.attempts
        self.ingest_logger.info(job.source, f"Job started: {job.kind} {job.url}", {
            'attempt': job.attempts,
            'priority': job.priority,
        }, job.id)

        try:
            adapter = self.registry.get(job.source)
            if adapter is None:
                raise ValidationError(f"No adapter registered for source '{job.source}'")

            self._progress(job, attempt, 10, 'fetch_started')
            fetched = await self._fetch(adapter, job)
            self._progress(job, attempt, 25, 'fetched')

            result = self.processor.process(
                job.source,
                fetched.records,
                adapter.normalize,
                job_id=job.id,
                full_sweep=job.kind == 'full_scrape',
                progress=lambda percent, stage: self._progress(job, attempt, percent, stage),
            )
            self._progress(job, attempt, 100, 'stored')
        except (TerminalFetchError, ValidationError) as e:
            self._fail(job, attempt, e, retryable=False)
            return False
        except (TransientFetchError, StorageError) as e:
            self._fail(job, attempt, e, retryable=True)
            return False
        except Exception as e:
            logger.error(f"[worker] Unexpected error in job {job.id}: {e}", exc_info=True)
            self._fail(job, attempt, e, retryable=True)
            return False

        adapter.mark_seen(r.get('external_id') for r in fetched.records)

        counts = result.job_counts()
        try:
            self.queue.complete(job.id, attempt=attempt, **counts)
        except StaleJobError as e:
            logger.warning(f"[worker] Dropping stale outcome: {e}")
            return False

        metrics.incr_inserted(result.inserted)
        metrics.incr_updated(result.updated)
        metrics.incr_skipped(result.skipped + result.duplicates)
        metrics.incr_failed(result.failed)
        metrics.record_job_completed(job.source)

        self.ingest_logger.info(job.source, f"Job completed via {fetched.path}", dict(counts, **{
            'skipped_elements': fetched.skipped,
            'already_seen': fetched.already_seen,
            'deactivated': result.deactivated,
        }), job.id)
        return True

    def _fail(self, job: Job, attempt: int, error: Exception, retryable: bool):
        message = f"{type(error).__name__}: {error}"
        try:
            retry_in = self.queue.fail(job.id, message, retryable=retryable, attempt=attempt)
        except StaleJobError as e:
            logger.warning(f"[worker] Dropping stale outcome: {e}")
            return
        metrics.record_job_failed(job.source)

        if retry_in is None:
            self.ingest_logger.error(job.source, f"Job failed: {message}", {
                'attempts': job.attempts,
                'retryable': retryable,
            }, job.id)
        else:
            self.ingest_logger.warn(job.source, f"Job attempt failed, retrying in {retry_in:.1f}s: {message}", {
                'attempts': job.attempts,
            }, job.id)
