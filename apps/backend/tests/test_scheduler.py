"""
Unit tests for pipeline/scheduler.py
"""

from datetime import datetime, timezone

import pytest
from pipeline.job_queue import JobQueue
from pipeline.jobs import JobState

TEMPLATE = {
    'source': 'internshala',
    'url': 'https://internshala.com/internships',
    'kind': 'full_scrape',
    'metadata': {'max_pages': 2},
}


@pytest.fixture
def queue(registry):
    return JobQueue(registry)


class TestRecurringScheduler:
    def test_next_fire_time(self, queue):
        now = datetime(2024, 6, 15, 7, 30, tzinfo=timezone.utc)
        next_fire = queue.scheduler.add('sweep', TEMPLATE, '0 */6 * * *', now=now)
        assert next_fire == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def test_invalid_expression(self, queue):
        with pytest.raises(ValueError):
            queue.scheduler.add('bad', TEMPLATE, 'every day')

    def test_fire_due_enqueues_fresh_job(self, queue):
        """Test each firing goes through enqueue with the schedule name in metadata."""
        now = datetime(2024, 6, 15, 7, 30, tzinfo=timezone.utc)
        queue.scheduler.add('sweep', TEMPLATE, '0 */6 * * *', now=now)

        assert queue.scheduler.fire_due(now) == []

        fired = queue.scheduler.fire_due(datetime(2024, 6, 15, 12, 0, 5, tzinfo=timezone.utc))
        assert len(fired) == 1
        job = queue.get(fired[0])
        assert job.state == JobState.PENDING
        assert job.kind == 'full_scrape'
        assert job.metadata == {'max_pages': 2, 'recurring': 'sweep'}

        schedule = queue.scheduler.list_schedules()[0]
        assert schedule['fire_count'] == 1
        assert schedule['next_fire'] == '2024-06-15T18:00:00+00:00'

    def test_missed_firings_fire_once(self, queue):
        now = datetime(2024, 6, 15, 7, 30, tzinfo=timezone.utc)
        queue.scheduler.add('sweep', TEMPLATE, '0 */6 * * *', now=now)

        fired = queue.scheduler.fire_due(datetime(2024, 6, 16, 7, 0, tzinfo=timezone.utc))
        assert len(fired) == 1
        assert queue.scheduler.list_schedules()[0]['next_fire'] == '2024-06-16T12:00:00+00:00'

    def test_enqueue_errors_are_logged_not_raised(self, queue, registry):
        now = datetime(2024, 6, 15, 7, 30, tzinfo=timezone.utc)
        queue.scheduler.add('sweep', TEMPLATE, '0 */6 * * *', now=now)
        registry.unregister('internshala')

        assert queue.scheduler.fire_due(datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)) == []
        assert queue.scheduler.list_schedules()[0]['fire_count'] == 1

    def test_replace_and_remove(self, queue):
        queue.scheduler.add('sweep', TEMPLATE, '0 */6 * * *')
        queue.scheduler.add('sweep', TEMPLATE, '0 */8 * * *')
        assert [s['schedule'] for s in queue.scheduler.list_schedules()] == ['0 */8 * * *']
        assert queue.scheduler.remove('sweep') is True
        assert queue.scheduler.list_schedules() == []
