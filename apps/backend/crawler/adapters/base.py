"""
Base interface for source adapters.

An adapter fetches one source's listing pages and extracts raw records.
The shared fetch() path applies rate limiting, proxy rotation, a per-attempt
timeout and retry with exponential backoff; subclasses only implement a
single attempt.
"""
import time
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Set
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.net import TerminalFetchError, TransientFetchError
from core.normalize import get_normalizer
from core.proxy_pool import ProxyEndpoint, ProxyPool
from core.rate_limiter import SourceRateLimiter

logger = logging.getLogger(__name__)


class FetchResult:
    """Raw records from one fetch, whichever path produced them"""

    def __init__(
        self,
        records: List[Dict[str, Any]],
        skipped: int = 0,
        path: str = 'html',
        message: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ):
        self.records = records
        self.skipped = skipped  # elements that failed extraction
        self.path = path  # 'html' or 'api'
        self.message = message
        self.metadata = metadata or {}
        self.attempts = 1
        self.found = len(records)  # before the seen-set filter
        self.already_seen = 0

    def is_success(self) -> bool:
        return len(self.records) > 0

    def merge(self, other: 'FetchResult'):
        self.records.extend(other.records)
        self.skipped += other.skipped
        self.found += other.found
        self.already_seen += other.already_seen
        self.attempts += other.attempts

    def to_dict(self) -> Dict:
        return {
            'records': len(self.records),
            'skipped': self.skipped,
            'already_seen': self.already_seen,
            'path': self.path,
            'attempts': self.attempts,
            'message': self.message,
        }

    def __repr__(self):
        return f"FetchResult(records={len(self.records)}, skipped={self.skipped}, path={self.path})"


class SeenCache:
    """Bounded set of external ids, oldest evicted first"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._keys: 'OrderedDict[str, None]' = OrderedDict()

    def add(self, key: str) -> bool:
        """Record key. Returns False if it was already present."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            self._keys.popitem(last=False)
        return True

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self):
        return len(self._keys)

    def clear(self):
        self._keys.clear()


class SourceAdapter(ABC):
    """
    Base class for source adapters.

    Each adapter:
    1. Fetches one page of listings in _fetch_once()
    2. Checks each extracted element with validate_shape()
    3. Maps raw records to canonical ones through normalize()
    """

    def __init__(
        self,
        name: str,
        rate_limiter: SourceRateLimiter,
        proxy_pool: Optional[ProxyPool] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        seen_cache_size: int = 10000,
    ):
        """
        Args:
            name: Source name (e.g., 'internshala')
            rate_limiter: Shared per-source limiter
            proxy_pool: Shared proxy pool (None for direct connections)
            max_retries: Retries after the first attempt for transient errors
            retry_delay: Base backoff in seconds, doubled per retry
            timeout: Seconds allowed per attempt
            seen_cache_size: Bound on the per-session seen-set
        """
        self.name = name
        self.rate_limiter = rate_limiter
        self.proxy_pool = proxy_pool
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.seen = SeenCache(seen_cache_size)
        self.page_delay = 2.0
        self.logger = logging.getLogger(f"{__name__}.{name}")

    @abstractmethod
    async def _fetch_once(self, url: str, proxy: Optional[ProxyEndpoint]) -> FetchResult:
        """
        Make a single fetch attempt.

        Raises:
            TransientFetchError: Worth retrying
            TerminalFetchError: Not worth retrying
        """
        pass

    @abstractmethod
    def validate_shape(self, data: Dict[str, Any]) -> bool:
        """Check that an extracted element has the fields the normalizer needs"""
        pass

    def normalize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return get_normalizer(self.name)(raw)

    def page_url(self, url: str, page: int) -> str:
        """URL of the given 1-based results page"""
        parsed = urlparse(url)
        query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != 'page']
        if page > 1:
            query.append(('page', str(page)))
        return urlunparse(parsed._replace(query=urlencode(query)))

    def get_soup(self, html: str) -> BeautifulSoup:
        """Helper to create BeautifulSoup instance"""
        return BeautifulSoup(html, 'lxml')

    def _proxy_feedback(self, proxy: Optional[ProxyEndpoint], healthy: bool, started: float):
        if proxy is not None and self.proxy_pool is not None:
            self.proxy_pool.record_result(proxy, healthy, (time.monotonic() - started) * 1000)

    async def _attempt(self, url: str) -> FetchResult:
        await self.rate_limiter.await_slot(self.name)
        proxy = self.proxy_pool.next() if self.proxy_pool is not None else None
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(self._fetch_once(url, proxy), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._proxy_feedback(proxy, False, started)
            raise TransientFetchError(f"Fetch timed out after {self.timeout}s: {url}") from e
        except TransientFetchError:
            self._proxy_feedback(proxy, False, started)
            raise

        self._proxy_feedback(proxy, True, started)
        return result

    def _log_retry(self, retry_state: RetryCallState):
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self.logger.warning(
            f"[{self.name}] Attempt {retry_state.attempt_number} failed, retrying: {error}"
        )

    def _filter_seen(self, result: FetchResult, exclude: Optional[Set[str]] = None) -> FetchResult:
        emitted = exclude if exclude is not None else set()
        fresh = []
        for record in result.records:
            external_id = record.get('external_id')
            if external_id:
                key = str(external_id)
                if key in self.seen or key in emitted:
                    result.already_seen += 1
                    continue
                emitted.add(key)
            fresh.append(record)
        result.records = fresh
        return result

    def mark_seen(self, external_ids: Iterable[Any]) -> int:
        """
        Remember listings as handled for the rest of the session.

        Called once the records are stored, so a failed attempt can refetch
        the same listings on retry.

        Returns:
            Number of ids not seen before
        """
        added = 0
        for external_id in external_ids:
            if external_id and self.seen.add(str(external_id)):
                added += 1
        return added

    async def fetch(self, url: str, exclude: Optional[Set[str]] = None) -> FetchResult:
        """
        Fetch and extract one page of listings.

        Listings marked seen in this session, or already emitted into
        exclude, are filtered out. The seen-set itself is not updated here;
        see mark_seen().

        Raises:
            TransientFetchError: Retries exhausted
            TerminalFetchError: Non-retryable failure
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, max=60),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=self._log_retry,
            reraise=True,
        )

        result = None
        attempts = 0
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                result = await self._attempt(url)

        result.attempts = attempts
        result = self._filter_seen(result, exclude)
        self.logger.info(
            f"[{self.name}] {url}: {len(result.records)} records via {result.path} "
            f"({result.skipped} skipped, {result.already_seen} already seen, {attempts} attempts)"
        )
        return result

    async def fetch_all(self, url: str, max_pages: int = 5) -> FetchResult:
        """
        Walk result pages until one comes back empty or max_pages is reached.
        """
        combined: Optional[FetchResult] = None
        emitted: Set[str] = set()
        max_pages = max(1, max_pages)
        for page in range(1, max_pages + 1):
            result = await self.fetch(self.page_url(url, page), exclude=emitted)
            if combined is None:
                combined = result
            else:
                combined.merge(result)
            if result.found == 0:
                break
            if page < max_pages and self.page_delay:
                await asyncio.sleep(self.page_delay)

        combined.metadata['pages'] = page
        return combined

    def clear(self):
        """Reset the session: forget seen listings"""
        self.seen.clear()
        self.logger.debug(f"[{self.name}] Session cache cleared")

    def cache_stats(self) -> Dict:
        return {'size': len(self.seen), 'max_size': self.seen.max_size}

    def __repr__(self):
        return f"<{self.__class__.__name__}(name={self.name})>"


__all__ = [
    'FetchResult',
    'SeenCache',
    'SourceAdapter',
    'TransientFetchError',
    'TerminalFetchError',
]
