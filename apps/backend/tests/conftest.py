"""
Shared fixtures: a scripted adapter, a registry and a controllable clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from core.rate_limiter import SourceRateLimiter
from crawler.adapters.base import FetchResult, SourceAdapter
from crawler.adapters.registry import AdapterRegistry


class ScriptedAdapter(SourceAdapter):
    """Adapter whose attempts return or raise from a script, never touching the network."""

    def __init__(self, name='internshala', script=None, **kwargs):
        kwargs.setdefault('rate_limiter', SourceRateLimiter(default_limit=(1000, 1.0)))
        kwargs.setdefault('retry_delay', 0)
        super().__init__(name, **kwargs)
        self.page_delay = 0
        self.script: List[Any] = list(script or [])
        self.urls: List[str] = []

    async def _fetch_once(self, url, proxy):
        self.urls.append(url)
        step = self.script.pop(0) if self.script else FetchResult([])
        if isinstance(step, Exception):
            raise step
        if isinstance(step, list):
            return FetchResult([dict(r) for r in step])
        return step

    def validate_shape(self, data: Dict[str, Any]) -> bool:
        return bool(data.get('title') and data.get('url'))


class MutableClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def raw_listing(external_id: str, title: str = 'Web Development', company: str = 'Acme Labs', **extra) -> Dict[str, Any]:
    """Raw Internshala-style record as the HTML extractor produces it."""
    record = {
        'title': title,
        'company': company,
        'location': 'Mumbai',
        'duration': '3 Months',
        'stipend': '₹ 10,000 /month',
        'posted': None,
        'deadline': None,
        'description': '',
        'skills': ['HTML', 'CSS'],
        'url': f'https://internshala.com/internship/detail/{external_id}',
        'external_id': external_id,
    }
    record.update(extra)
    return record


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def adapter():
    return ScriptedAdapter('internshala')


@pytest.fixture
def registry(adapter):
    registry = AdapterRegistry()
    registry.register(adapter)
    registry.register(ScriptedAdapter('linkedin'))
    return registry
