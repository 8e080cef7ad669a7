"""
Priority job queue for ingestion work.

Dispatch order is priority descending, then enqueue order. Delayed jobs
become eligible at enqueue_time + delay. Failed attempts are retried with
exponential backoff until max_attempts, after which the job is failed.
Running jobs that stall past the timeout are requeued by recover_stalled().
"""
import asyncio
import heapq
import itertools
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import psycopg2
from psycopg2.extras import RealDictCursor

from pipeline.jobs import JOB_KINDS, Job, JobState, transition
from pipeline.scheduler import RecurringScheduler

logger = logging.getLogger(__name__)

COUNT_FIELDS = ('records_processed', 'records_added', 'records_updated', 'records_failed')

JOBS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ingest_jobs (
    id VARCHAR(64) PRIMARY KEY,
    source VARCHAR(50) NOT NULL,
    state VARCHAR(20) NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_ingest_jobs_state ON ingest_jobs(state);
"""


class ValidationError(Exception):
    """Raised when a job cannot be accepted"""
    pass


class StaleJobError(Exception):
    """An outcome was reported for an attempt the queue no longer tracks as running"""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostgresJobStore:
    """Write-through persistence so queued work survives a restart"""

    def __init__(self, db_url: str):
        self.db_url = db_url

    def _get_db_conn(self):
        """Get database connection"""
        return psycopg2.connect(self.db_url)

    def ensure_schema(self):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(JOBS_SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def save(self, job: Job):
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO ingest_jobs (id, source, state, payload, updated_at)
                    VALUES (%s, %s, %s, %s::JSONB, NOW())
                    ON CONFLICT (id) DO UPDATE SET
                        state = EXCLUDED.state,
                        payload = EXCLUDED.payload,
                        updated_at = NOW()
                """, (job.id, job.source, job.state.value, json.dumps(job.to_dict())))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_unfinished(self) -> List[Dict[str, Any]]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT payload FROM ingest_jobs
                    WHERE state IN ('pending', 'running')
                    ORDER BY updated_at ASC
                """)
                return [row['payload'] for row in cur.fetchall()]
        finally:
            conn.close()

    def delete(self, job_ids: List[str]) -> int:
        if not job_ids:
            return 0
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM ingest_jobs WHERE id = ANY(%s)", (list(job_ids),))
                deleted = cur.rowcount
            conn.commit()
            return deleted
        finally:
            conn.close()


class JobQueue:
    """Priority/FIFO queue with delay, retry, pause and stall recovery"""

    COMPLETED_RETENTION = 50
    FAILED_RETENTION = 100

    def __init__(
        self,
        registry,
        job_store: Optional[PostgresJobStore] = None,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        stall_timeout: float = 900,
        update_job_status: Optional[Callable[[str, str, Dict], None]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Args:
            registry: Adapter registry; enqueue rejects sources not in it
            job_store: Optional durable store written on every transition
            max_attempts: Attempts per job before it fails
            backoff_base: First retry delay in seconds, doubled per retry
            stall_timeout: Seconds before a running job counts as stalled
            update_job_status: External callback (job_id, status, fields)
            clock: Returns the current aware datetime
        """
        self.registry = registry
        self.job_store = job_store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.stall_timeout = stall_timeout
        self.update_job_status = update_job_status
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        # (-priority, seq, job_id)
        self._ready: List[Tuple[int, int, str]] = []
        # (available_at, seq, job_id)
        self._delayed: List[Tuple[datetime, int, str]] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._paused = False
        self._retried: Set[str] = set()

        self.scheduler = RecurringScheduler(self)

    # Validation and bookkeeping

    def validate(self, job: Job):
        """Raise ValidationError if the job cannot be accepted."""
        if job.kind not in JOB_KINDS:
            raise ValidationError(f"Unknown job kind '{job.kind}'")
        if job.source not in self.registry:
            raise ValidationError(f"No adapter registered for source '{job.source}'")
        if not job.url or not isinstance(job.url, str):
            raise ValidationError("Job url is required")
        if isinstance(job.priority, bool) or not isinstance(job.priority, int):
            raise ValidationError("Job priority must be an integer")
        if job.delay_seconds is None or job.delay_seconds < 0:
            raise ValidationError("Job delay must not be negative")

    def _record(self, job: Job, **fields):
        if self.job_store is not None:
            self.job_store.save(job)
        if self.update_job_status is not None:
            try:
                self.update_job_status(job.id, job.state.value, fields)
            except Exception as e:
                logger.error(f"[queue] update_job_status failed for {job.id}: {e}", exc_info=True)

    def _schedule(self, job: Job):
        seq = next(self._seq)
        if job.available_at and job.available_at > self._clock():
            heapq.heappush(self._delayed, (job.available_at, seq, job.id))
        else:
            heapq.heappush(self._ready, (-job.priority, seq, job.id))
        self._wakeup.set()

    def retry_delay(self, retry_index: int) -> float:
        """Backoff before retry number retry_index (0-based)"""
        return self.backoff_base * (2 ** retry_index)

    # Submission

    def enqueue(self, job: Job) -> str:
        """
        Accept a job for dispatch.

        Returns:
            The job id

        Raises:
            ValidationError: Unknown kind, unregistered source or malformed job
        """
        self.validate(job)
        if job.state != JobState.PENDING:
            raise ValidationError(f"Job {job.id} is {job.state.value}, only pending jobs can be enqueued")
        if job.id in self._jobs:
            raise ValidationError(f"Job {job.id} already enqueued")

        if job.max_attempts is None:
            job.max_attempts = self.max_attempts
        now = self._clock()
        job.created_at = now
        job.available_at = now + timedelta(seconds=job.delay_seconds or 0)

        self._jobs[job.id] = job
        self._schedule(job)
        self._record(job, available_at=job.available_at.isoformat())

        logger.info(
            f"[queue] Enqueued {job.kind} job {job.id} for {job.source} "
            f"(priority={job.priority}, delay={job.delay_seconds}s)"
        )
        return job.id

    def enqueue_recurring(self, name: str, template: Dict[str, Any], schedule: str) -> Optional[datetime]:
        """
        Register a cron schedule that enqueues a fresh job per firing.

        Args:
            name: Unique schedule name (re-registering replaces it)
            template: Job keyword arguments (source, url, kind, priority, metadata)
            schedule: Five-field cron expression

        Returns:
            Next fire time
        """
        try:
            sample = Job(**template)
        except TypeError as e:
            raise ValidationError(f"Invalid job template for '{name}': {e}")
        self.validate(sample)
        return self.scheduler.add(name, template, schedule)

    def remove_recurring(self, name: str) -> bool:
        return self.scheduler.remove(name)

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending job. Running and finished jobs are left alone."""
        job = self._jobs.get(job_id)
        if job is None or job.state != JobState.PENDING:
            return False
        transition(job, JobState.CANCELLED, completed_at=self._clock())
        self._record(job)
        logger.info(f"[queue] Cancelled job {job_id}")
        return True

    # Dispatch

    def _promote(self, now: datetime):
        while self._delayed and self._delayed[0][0] <= now:
            _, seq, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.PENDING:
                heapq.heappush(self._ready, (-job.priority, seq, job_id))

    def _seconds_until_next(self) -> Optional[float]:
        if self._paused or not self._delayed:
            return None
        return max(0.0, (self._delayed[0][0] - self._clock()).total_seconds())

    def dequeue_nowait(self) -> Optional[Job]:
        """Take the next eligible job and mark it running, or return None."""
        if self._paused:
            return None

        now = self._clock()
        self._promote(now)
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.PENDING:
                continue
            transition(
                job,
                JobState.RUNNING,
                attempts=job.attempts + 1,
                started_at=now,
                progress=0,
            )
            self._record(job, started_at=now.isoformat(), attempts=job.attempts)
            return job
        return None

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        """
        Wait for the next eligible job.

        Args:
            timeout: Give up after this many seconds (None waits forever)
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            self._wakeup.clear()
            job = self.dequeue_nowait()
            if job is not None:
                return job

            wait = self._seconds_until_next()
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                wait = remaining if wait is None else min(wait, remaining)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

    # Outcomes

    def _running(self, job_id: str, attempt: Optional[int] = None) -> Job:
        """
        Look up a job that is running the given attempt.

        Raises:
            KeyError: Unknown job
            StaleJobError: The job was recovered, requeued or finished meanwhile
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job {job_id}")
        if job.state != JobState.RUNNING:
            raise StaleJobError(f"Job {job_id} is {job.state.value}, not running")
        if attempt is not None and job.attempts != attempt:
            raise StaleJobError(f"Job {job_id} is on attempt {job.attempts}, outcome was for attempt {attempt}")
        return job

    def report_progress(self, job_id: str, percent: int, stage: Optional[str] = None, attempt: Optional[int] = None):
        try:
            job = self._running(job_id, attempt)
        except StaleJobError:
            return
        job.progress = percent
        self._record(job, progress=percent, stage=stage)

    def complete(self, job_id: str, attempt: Optional[int] = None, **counts) -> Job:
        """
        Mark a running job completed with its record counts.

        Raises:
            StaleJobError: attempt is no longer the running one
        """
        job = self._running(job_id, attempt)
        fields = {k: v for k, v in counts.items() if k in COUNT_FIELDS}
        now = self._clock()
        transition(
            job,
            JobState.COMPLETED,
            completed_at=now,
            progress=100,
            error_message=None,
            **fields,
        )
        self._record(job, completed_at=now.isoformat(), **fields)
        logger.info(f"[queue] Job {job_id} completed: {fields}")
        self._trim()
        return job

    def fail(
        self,
        job_id: str,
        error: str,
        retryable: bool = True,
        attempt: Optional[int] = None,
        **counts,
    ) -> Optional[float]:
        """
        Record a failed attempt.

        Retryable failures with attempts left go back to pending after the
        backoff delay. Otherwise the job becomes failed.

        Returns:
            Retry delay in seconds, or None if the job is now failed

        Raises:
            StaleJobError: attempt is no longer the running one
        """
        job = self._running(job_id, attempt)
        fields = {k: v for k, v in counts.items() if k in COUNT_FIELDS}
        now = self._clock()

        if retryable and job.attempts < job.max_attempts:
            delay = self.retry_delay(job.attempts - 1)
            transition(
                job,
                JobState.PENDING,
                error_message=error,
                available_at=now + timedelta(seconds=delay),
                started_at=None,
                **fields,
            )
            self._schedule(job)
            self._record(job, error_message=error, retry_in=delay)
            logger.warning(
                f"[queue] Job {job_id} attempt {job.attempts}/{job.max_attempts} failed, "
                f"retrying in {delay:.1f}s: {error}"
            )
            return delay

        transition(job, JobState.FAILED, error_message=error, completed_at=now, **fields)
        self._record(job, error_message=error, completed_at=now.isoformat(), **fields)
        logger.error(f"[queue] Job {job_id} failed after {job.attempts} attempts: {error}")
        self._trim()
        return None

    # Operator controls

    def pause(self):
        self._paused = True
        logger.info("[queue] Paused")

    def resume(self):
        self._paused = False
        self._wakeup.set()
        logger.info("[queue] Resumed")

    @property
    def is_paused(self) -> bool:
        return self._paused

    def retry_failed(self) -> int:
        """Enqueue a fresh copy of every failed job not already retried."""
        count = 0
        for job in list(self._jobs.values()):
            if job.state != JobState.FAILED or job.id in self._retried:
                continue
            try:
                self.enqueue(job.copy_for_retry())
            except ValidationError as e:
                logger.warning(f"[queue] Cannot retry job {job.id}: {e}")
                continue
            self._retried.add(job.id)
            count += 1
        logger.info(f"[queue] Re-enqueued {count} failed jobs")
        return count

    def recover_stalled(self) -> int:
        """
        Requeue running jobs that started more than stall_timeout ago.
        Jobs that already used all attempts are failed instead.

        Returns:
            Number of jobs recovered or failed
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=self.stall_timeout)
        stalled = [
            j for j in self._jobs.values()
            if j.state == JobState.RUNNING and j.started_at and j.started_at < cutoff
        ]

        for job in stalled:
            if job.attempts >= job.max_attempts:
                message = f"Job stalled in running state after {job.attempts} attempts"
                transition(job, JobState.FAILED, error_message=message, completed_at=now)
                self._record(job, error_message=message)
                logger.warning(f"[queue] Job {job.id} failed: {message}")
            else:
                transition(job, JobState.PENDING, started_at=None, available_at=now)
                self._schedule(job)
                self._record(job, recovered=True)
                logger.info(f"[queue] Recovered stalled job {job.id} (attempt {job.attempts}/{job.max_attempts})")

        return len(stalled)

    def restore(self) -> int:
        """Reload unfinished jobs from the durable store after a restart."""
        if self.job_store is None:
            return 0

        count = 0
        for data in self.job_store.load_unfinished():
            job = Job.from_dict(data)
            if job.id in self._jobs:
                continue
            if job.max_attempts is None:
                job.max_attempts = self.max_attempts
            if job.state == JobState.RUNNING:
                transition(job, JobState.PENDING, started_at=None, available_at=self._clock())
            self._jobs[job.id] = job
            self._schedule(job)
            count += 1

        logger.info(f"[queue] Restored {count} unfinished jobs")
        return count

    def _trim(self):
        for state, keep in ((JobState.COMPLETED, self.COMPLETED_RETENTION), (JobState.FAILED, self.FAILED_RETENTION)):
            finished = sorted(
                (j for j in self._jobs.values() if j.state == state),
                key=lambda j: j.completed_at,
            )
            for job in finished[:-keep] if len(finished) > keep else []:
                del self._jobs[job.id]

    def clean(self, older_than_seconds: float = 86400) -> int:
        """Drop finished jobs older than the grace period."""
        cutoff = self._clock() - timedelta(seconds=older_than_seconds)
        old = [
            j.id for j in self._jobs.values()
            if j.is_terminal and j.completed_at and j.completed_at < cutoff
        ]
        for job_id in old:
            del self._jobs[job_id]
        if self.job_store is not None:
            self.job_store.delete(old)
        logger.info(f"[queue] Cleaned {len(old)} finished jobs")
        return len(old)

    # Introspection

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self, state: Optional[JobState] = None) -> List[Job]:
        jobs = [j for j in self._jobs.values() if state is None or j.state == state]
        return sorted(jobs, key=lambda j: j.created_at)

    def health(self) -> Dict[str, Any]:
        now = self._clock()
        counts = {'active': 0, 'waiting': 0, 'delayed': 0, 'completed': 0, 'failed': 0, 'cancelled': 0}
        for job in self._jobs.values():
            if job.state == JobState.RUNNING:
                counts['active'] += 1
            elif job.state == JobState.PENDING:
                if job.available_at and job.available_at > now:
                    counts['delayed'] += 1
                else:
                    counts['waiting'] += 1
            else:
                counts[job.state.value] += 1

        cutoff = now - timedelta(seconds=self.stall_timeout)
        counts['stalled'] = sum(
            1 for j in self._jobs.values()
            if j.state == JobState.RUNNING and j.started_at and j.started_at < cutoff
        )
        counts['paused'] = self._paused
        counts['is_healthy'] = counts['stalled'] == 0
        return counts
