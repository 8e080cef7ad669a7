"""
Prometheus metrics for ingestion monitoring.
"""
import logging
from typing import Dict

from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

records_inserted = Counter('internscout_records_inserted_total', 'Total listings inserted')
records_updated = Counter('internscout_records_updated_total', 'Total listings updated')
records_skipped = Counter('internscout_records_skipped_total', 'Total listings skipped (unchanged or duplicate)')
records_failed = Counter('internscout_records_failed_total', 'Total records that failed normalization or validation')

jobs_completed = Counter('internscout_jobs_completed_total', 'Ingestion jobs completed', ['source'])
jobs_failed = Counter('internscout_jobs_failed_total', 'Ingestion job attempts failed', ['source'])
fetch_retries = Counter('internscout_fetch_retries_total', 'Fetch attempts beyond the first', ['source'])

healthy_proxies = Gauge('internscout_healthy_proxies', 'Proxies currently eligible for selection')


def incr_inserted(n: int = 1):
    """Increment inserted listings counter."""
    if n > 0:
        records_inserted.inc(n)


def incr_updated(n: int = 1):
    if n > 0:
        records_updated.inc(n)


def incr_skipped(n: int = 1):
    if n > 0:
        records_skipped.inc(n)


def incr_failed(n: int = 1):
    if n > 0:
        records_failed.inc(n)


def record_job_completed(source: str):
    jobs_completed.labels(source=source).inc()


def record_job_failed(source: str):
    jobs_failed.labels(source=source).inc()


def record_fetch_retries(source: str, retries: int):
    if retries > 0:
        fetch_retries.labels(source=source).inc(retries)


def set_healthy_proxies(count: int):
    healthy_proxies.set(count)


def _counter_total(counter: Counter) -> float:
    return sum(
        sample.value
        for metric in counter.collect()
        for sample in metric.samples
        if sample.name.endswith('_total')
    )


def _by_source(counter: Counter) -> Dict[str, float]:
    values: Dict[str, float] = {}
    for metric in counter.collect():
        for sample in metric.samples:
            if sample.name.endswith('_total'):
                values[sample.labels['source']] = sample.value
    return values


def metrics_snapshot() -> dict:
    """Current metric values (for the status command)."""
    return {
        'records': {
            'inserted': _counter_total(records_inserted),
            'updated': _counter_total(records_updated),
            'skipped': _counter_total(records_skipped),
            'failed': _counter_total(records_failed),
        },
        'jobs_completed': _by_source(jobs_completed),
        'jobs_failed': _by_source(jobs_failed),
        'fetch_retries': _by_source(fetch_retries),
        'healthy_proxies': healthy_proxies.collect()[0].samples[0].value,
    }
