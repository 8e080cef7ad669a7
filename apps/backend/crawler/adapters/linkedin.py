"""
LinkedIn adapter.

Uses the job search API when credentials are configured and falls back to
rendering the public search page when the API path fails for any reason.
"""
import re
import time
import hashlib
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from bs4 import Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from crawler.browser_crawler import BrowserCrawler
from core.net import HTTPClient, QuotaExceededError, TerminalFetchError, TransientFetchError
from core.proxy_pool import ProxyEndpoint, ProxyPool
from core.rate_limiter import SourceRateLimiter

from .base import FetchResult, SourceAdapter

API_BASE_URL = 'https://api.linkedin.com/v2'
TOKEN_URL = 'https://www.linkedin.com/oauth/v2/accessToken'
JOB_VIEW_RE = re.compile(r'/jobs/view/(\d+)')
PAGE_SIZE = 25

CARD_SELECTOR = '.job-card-container, .jobs-search-results__list-item'
RESULTS_SELECTOR = '.jobs-search__results-list, .job-card-container'


def _text(element: Optional[Tag]) -> str:
    if element is None:
        return ''
    return element.get_text(' ', strip=True)


class ApiFallbackPolicy:
    """
    Decides whether the API path is tried at all.

    With a cool-down of 0 every call tries the API first. A positive
    cool-down suspends API attempts for that long after a quota error
    (or for the server's Retry-After, if longer).
    """

    def __init__(self, quota_cooldown_seconds: float = 0, clock: Callable[[], float] = time.monotonic):
        self.quota_cooldown_seconds = quota_cooldown_seconds
        self._clock = clock
        self._suspended_until = 0.0
        self.failures = 0
        self.last_error: Optional[str] = None

    def in_cooldown(self) -> bool:
        return self._clock() < self._suspended_until

    def record_failure(self, error: Exception):
        self.failures += 1
        self.last_error = str(error)
        if isinstance(error, QuotaExceededError) and self.quota_cooldown_seconds > 0:
            cooldown = max(self.quota_cooldown_seconds, error.retry_after or 0)
            self._suspended_until = self._clock() + cooldown

    def reset(self):
        self._suspended_until = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'quota_cooldown_seconds': self.quota_cooldown_seconds,
            'in_cooldown': self.in_cooldown(),
            'failures': self.failures,
            'last_error': self.last_error,
        }


class LinkedInAdapter(SourceAdapter):
    """API-first extraction for linkedin.com job search, HTML as fallback"""

    BASE_URL = 'https://www.linkedin.com'

    def __init__(
        self,
        rate_limiter: SourceRateLimiter,
        proxy_pool: Optional[ProxyPool] = None,
        browser: Optional[BrowserCrawler] = None,
        http_client: Optional[HTTPClient] = None,
        access_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        fallback_policy: Optional[ApiFallbackPolicy] = None,
        base_url: str = BASE_URL,
        **kwargs,
    ):
        super().__init__('linkedin', rate_limiter, proxy_pool, **kwargs)
        self.browser = browser or BrowserCrawler()
        self.http_client = http_client or HTTPClient(timeout=self.timeout)
        self.access_token = access_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.fallback_policy = fallback_policy or ApiFallbackPolicy()
        self.base_url = base_url.rstrip('/')

    def has_api_credentials(self) -> bool:
        return bool(self.access_token or (self.client_id and self.client_secret))

    def is_api_url(self, url: str) -> bool:
        return '/jobs/search' in url or 'api.linkedin.com' in url

    def should_use_api(self, url: str) -> bool:
        return self.has_api_credentials() and self.is_api_url(url) and not self.fallback_policy.in_cooldown()

    async def _fetch_once(self, url: str, proxy: Optional[ProxyEndpoint]) -> FetchResult:
        if self.should_use_api(url):
            try:
                return await self._fetch_api(url, proxy)
            except (TransientFetchError, TerminalFetchError) as e:
                self.fallback_policy.record_failure(e)
                self.logger.warning(f"[linkedin] API fetch failed ({e}), falling back to HTML")

        return await self._fetch_html(url, proxy)

    async def _token(self) -> str:
        if self.access_token:
            return self.access_token
        return await self.http_client.get_oauth2_token(TOKEN_URL, self.client_id, self.client_secret)

    def search_params(self, url: str) -> Dict[str, Any]:
        """Translate a search page URL into jobSearch query parameters"""
        query = dict(parse_qsl(urlparse(url).query))
        params = {
            'keywords': query.get('keywords') or 'internship',
            'experienceLevel': 'INTERNSHIP',
            'count': int(query.get('count') or PAGE_SIZE),
            'start': int(query.get('start') or 0),
        }
        if query.get('location'):
            params['location'] = query['location']
        return params

    async def _fetch_api(self, url: str, proxy: Optional[ProxyEndpoint]) -> FetchResult:
        token = await self._token()
        data = await self.http_client.get_json(
            f"{API_BASE_URL}/jobSearch",
            params=self.search_params(url),
            headers={'X-Restli-Protocol-Version': '2.0.0'},
            auth_header=f"Bearer {token}",
            proxy=proxy.url if proxy is not None else None,
        )
        if not isinstance(data, dict):
            raise TerminalFetchError("Unexpected jobSearch payload")

        records = []
        skipped = 0
        for job in data.get('elements') or []:
            raw = self._from_api(job)
            if raw is None or not self.validate_shape(raw):
                skipped += 1
                continue
            records.append(raw)

        return FetchResult(records, skipped=skipped, path='api', metadata={'elements': len(data.get('elements') or [])})

    def _from_api(self, job: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(job, dict):
            return None
        job_id = str(job.get('id') or '')
        company = job.get('companyName') or (job.get('company') or {}).get('name') or ''
        return {
            'title': job.get('title') or '',
            'company': company,
            'location': job.get('location') or '',
            'description': job.get('description') or '',
            'posted': job.get('listedAt'),
            'url': job.get('applyUrl') or (f"{self.base_url}/jobs/view/{job_id}" if job_id else ''),
            'workplace_types': job.get('workplaceTypes') or [],
            'skills': job.get('skills') or [],
            'salary': job.get('salary'),
            'external_id': f"linkedin-{job_id}" if job_id else '',
        }

    async def _prepare_page(self, page: Page):
        """Dismiss the cookie banner and note login walls"""
        try:
            consent = await page.query_selector('button[action-type="ACCEPT"], .artdeco-global-alert-action')
            if consent is not None:
                await consent.click()
            if await page.query_selector('.login-form, .sign-in-form'):
                self.logger.warning("[linkedin] Login wall shown, results may be partial")
        except PlaywrightError as e:
            self.logger.debug(f"[linkedin] Page preparation failed: {e}")

    async def _fetch_html(self, url: str, proxy: Optional[ProxyEndpoint]) -> FetchResult:
        html = await self.browser.fetch_html(
            url,
            wait_selector=RESULTS_SELECTOR,
            timeout_ms=int(self.timeout * 1000),
            proxy=proxy,
            prepare_page=self._prepare_page,
        )
        return self.extract(html, url)

    def extract(self, html: str, page_url: str) -> FetchResult:
        """Parse job cards from a rendered search page"""
        soup = self.get_soup(html)
        cards = soup.select(CARD_SELECTOR)
        records = []
        skipped = 0

        for index, card in enumerate(cards):
            try:
                raw = self._extract_card(card)
            except (AttributeError, KeyError, ValueError) as e:
                self.logger.debug(f"[linkedin] Card {index} failed to parse: {e}")
                skipped += 1
                continue

            if not self.validate_shape(raw):
                skipped += 1
                continue
            records.append(raw)

        self.logger.debug(f"[linkedin] Found {len(cards)} cards on {page_url}")
        return FetchResult(records, skipped=skipped, path='html', metadata={'cards': len(cards)})

    def _extract_card(self, card: Tag) -> Dict[str, Any]:
        link = card.select_one('a[href*="/jobs/view/"]')
        href = link.get('href', '') if link is not None else ''
        url = urljoin(self.base_url + '/', href.split('?')[0]) if href else ''

        return {
            'title': _text(card.select_one('.job-card-list__title, .sr-only')),
            'company': _text(card.select_one('.job-card-container__company-name, .job-card-list__company-name')),
            'location': _text(card.select_one('.job-card-container__metadata-item, .job-card-list__metadata')),
            'description': _text(card.select_one('.job-card-list__description, .job-card-container__description')),
            'posted': _text(card.select_one('.job-card-container__listed-time, .job-card-list__posted-date')) or None,
            'url': url,
            'workplace_types': [],
            'skills': [],
            'external_id': self.external_id(url),
        }

    @staticmethod
    def external_id(url: str) -> str:
        if not url:
            return ''
        match = JOB_VIEW_RE.search(url)
        if match:
            return f"linkedin-{match.group(1)}"
        return 'linkedin-' + hashlib.sha1(url.encode()).hexdigest()[:16]

    def validate_shape(self, data: Dict[str, Any]) -> bool:
        return all(data.get(field) for field in ('title', 'company', 'url', 'external_id'))

    def page_url(self, url: str, page: int) -> str:
        """LinkedIn paginates by result offset rather than page number"""
        parsed = urlparse(url)
        query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != 'start']
        if page > 1:
            query.append(('start', str((page - 1) * PAGE_SIZE)))
        return urlunparse(parsed._replace(query=urlencode(query)))

    def search_url(
        self,
        keywords: str = 'internship',
        location: Optional[str] = None,
        experience: str = '1',
        count: Optional[int] = None,
    ) -> str:
        """Public job search URL; experience '1' is LinkedIn's internship level"""
        params: List[tuple] = [('keywords', keywords), ('f_E', experience)]
        if location:
            params.append(('location', location))
        if count:
            params.append(('count', str(count)))
        return f"{self.base_url}/jobs/search/?{urlencode(params)}"

    def api_status(self) -> Dict[str, Any]:
        return {
            'available': self.has_api_credentials(),
            'has_access_token': bool(self.access_token),
            'has_client_id': bool(self.client_id),
            'has_client_secret': bool(self.client_secret),
            'fallback': self.fallback_policy.to_dict(),
        }

    def clear(self):
        super().clear()
        self.browser.new_session()
