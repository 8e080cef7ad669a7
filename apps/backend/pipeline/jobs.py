"""
Ingestion job model and state machine.
ALL job state changes go through transition().
"""
import uuid
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

JOB_KINDS = ('full_scrape', 'incremental', 'single_page')


class JobState(str, Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)

ALLOWED_TRANSITIONS: Dict[JobState, List[JobState]] = {
    JobState.PENDING: [JobState.RUNNING, JobState.CANCELLED],
    JobState.RUNNING: [
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.PENDING,  # Retry with backoff, or stall recovery
    ],
    JobState.COMPLETED: [],
    JobState.FAILED: [],
    JobState.CANCELLED: [],
}


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted"""
    pass


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Job:
    """A unit of ingestion work for one source and URL"""

    def __init__(
        self,
        source: str,
        url: str,
        kind: str = 'incremental',
        priority: int = 0,
        delay_seconds: float = 0,
        metadata: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        job_id: Optional[str] = None,
    ):
        self.id = job_id or uuid.uuid4().hex
        self.source = source
        self.url = url
        self.kind = kind
        self.priority = priority
        self.delay_seconds = delay_seconds
        self.metadata = dict(metadata or {})
        self.max_attempts = max_attempts

        self.state = JobState.PENDING
        self.attempts = 0
        self.progress = 0
        self.error_message: Optional[str] = None

        self.created_at = datetime.now(timezone.utc)
        self.available_at: Optional[datetime] = None
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

        self.records_processed = 0
        self.records_added = 0
        self.records_updated = 0
        self.records_failed = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def copy_for_retry(self) -> 'Job':
        """Fresh pending job with the same target, used by retry_failed"""
        metadata = dict(self.metadata)
        metadata['retry_of'] = self.id
        return Job(
            source=self.source,
            url=self.url,
            kind=self.kind,
            priority=self.priority,
            metadata=metadata,
            max_attempts=self.max_attempts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source': self.source,
            'url': self.url,
            'kind': self.kind,
            'priority': self.priority,
            'delay_seconds': self.delay_seconds,
            'metadata': self.metadata,
            'max_attempts': self.max_attempts,
            'state': self.state.value,
            'attempts': self.attempts,
            'progress': self.progress,
            'error_message': self.error_message,
            'created_at': self.created_at.isoformat(),
            'available_at': self.available_at.isoformat() if self.available_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'records_processed': self.records_processed,
            'records_added': self.records_added,
            'records_updated': self.records_updated,
            'records_failed': self.records_failed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Job':
        job = cls(
            source=data['source'],
            url=data['url'],
            kind=data.get('kind', 'incremental'),
            priority=data.get('priority', 0),
            delay_seconds=data.get('delay_seconds', 0),
            metadata=data.get('metadata'),
            max_attempts=data.get('max_attempts'),
            job_id=data['id'],
        )
        job.state = JobState(data.get('state', 'pending'))
        job.attempts = data.get('attempts', 0)
        job.progress = data.get('progress', 0)
        job.error_message = data.get('error_message')
        job.created_at = _parse_ts(data.get('created_at')) or job.created_at
        job.available_at = _parse_ts(data.get('available_at'))
        job.started_at = _parse_ts(data.get('started_at'))
        job.completed_at = _parse_ts(data.get('completed_at'))
        for field in ('records_processed', 'records_added', 'records_updated', 'records_failed'):
            setattr(job, field, data.get(field, 0))
        return job

    def __repr__(self):
        return f"Job({self.id[:8]} {self.source} {self.kind} {self.state.value})"


def transition(job: Job, to_state: JobState, **fields) -> Job:
    """
    Move a job to a new state, validating against ALLOWED_TRANSITIONS.

    Args:
        job: Job to update
        to_state: Target state
        **fields: Job attributes to set alongside the transition

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if to_state not in ALLOWED_TRANSITIONS[job.state]:
        raise InvalidTransitionError(
            f"Invalid transition for job {job.id}: {job.state.value} -> {to_state.value}"
        )

    for name, value in fields.items():
        if not hasattr(job, name):
            raise AttributeError(f"Job has no attribute '{name}'")
        setattr(job, name, value)

    logger.debug(f"[jobs] {job.id[:8]}: {job.state.value} -> {to_state.value}")
    job.state = to_state
    return job
