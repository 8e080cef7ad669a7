"""
Internshala adapter.

Internshala has no public API, so listing pages are rendered in a headless
browser and the listing cards are parsed with BeautifulSoup.
"""
import re
import hashlib
from typing import Any, Dict, Optional
from urllib.parse import quote, urljoin

from bs4 import Tag

from crawler.browser_crawler import BrowserCrawler
from core.proxy_pool import ProxyEndpoint, ProxyPool
from core.rate_limiter import SourceRateLimiter

from .base import FetchResult, SourceAdapter

DETAIL_ID_RE = re.compile(r'/internship/detail/([^/?#]+)')


def _text(element: Optional[Tag]) -> str:
    if element is None:
        return ''
    return element.get_text(' ', strip=True)


class InternshalaAdapter(SourceAdapter):
    """Browser-rendered HTML extraction for internshala.com"""

    BASE_URL = 'https://internshala.com'
    LISTING_SELECTOR = '.internship_meta'

    def __init__(
        self,
        rate_limiter: SourceRateLimiter,
        proxy_pool: Optional[ProxyPool] = None,
        browser: Optional[BrowserCrawler] = None,
        base_url: str = BASE_URL,
        **kwargs,
    ):
        super().__init__('internshala', rate_limiter, proxy_pool, **kwargs)
        self.browser = browser or BrowserCrawler()
        self.base_url = base_url.rstrip('/')

    async def _fetch_once(self, url: str, proxy: Optional[ProxyEndpoint]) -> FetchResult:
        html = await self.browser.fetch_html(
            url,
            wait_selector=self.LISTING_SELECTOR,
            timeout_ms=int(self.timeout * 1000),
            proxy=proxy,
        )
        return self.extract(html, url)

    def extract(self, html: str, page_url: str) -> FetchResult:
        """
        Parse listing cards from a rendered results page.

        Cards that fail to parse or lack required fields are counted as
        skipped; the rest are returned.
        """
        soup = self.get_soup(html)
        cards = soup.select(self.LISTING_SELECTOR)
        records = []
        skipped = 0

        for index, card in enumerate(cards):
            try:
                raw = self._extract_card(card, page_url)
            except (AttributeError, KeyError, ValueError) as e:
                self.logger.debug(f"[internshala] Card {index} failed to parse: {e}")
                skipped += 1
                continue

            if not self.validate_shape(raw):
                self.logger.debug(f"[internshala] Card {index} missing required fields")
                skipped += 1
                continue
            records.append(raw)

        self.logger.debug(f"[internshala] Found {len(cards)} cards on {page_url}")
        return FetchResult(records, skipped=skipped, path='html', metadata={'cards': len(cards)})

    def _extract_card(self, card: Tag, page_url: str) -> Dict[str, Any]:
        link = card.select_one('.job-title a')
        href = link.get('href', '') if link is not None else ''
        url = urljoin(self.base_url + '/', href) if href else ''

        skills = []
        for skill in card.select('.skill-tag, .skills-required span'):
            name = _text(skill)
            if name and name not in skills:
                skills.append(name)

        return {
            'title': _text(link),
            'company': _text(card.select_one('.company-name')),
            'location': _text(card.select_one('.location_link')),
            'duration': _text(card.select_one('.duration')),
            'stipend': _text(card.select_one('.stipend')),
            'posted': _text(card.select_one('.status-success')) or None,
            'deadline': _text(card.select_one('.apply_by, .deadline')) or None,
            'description': _text(card.select_one('.internship_other_details_container, .job-description')),
            'skills': skills,
            'url': url,
            'external_id': self.external_id(url),
        }

    @staticmethod
    def external_id(url: str) -> str:
        """Detail slug from the listing URL, or a stable hash when there is none"""
        if not url:
            return ''
        match = DETAIL_ID_RE.search(url)
        if match:
            return match.group(1)
        return 'ish-' + hashlib.sha1(url.encode()).hexdigest()[:16]

    def validate_shape(self, data: Dict[str, Any]) -> bool:
        return all(data.get(field) for field in ('title', 'company', 'url', 'external_id'))

    def category_url(self, category: str, location: Optional[str] = None) -> str:
        """Listing URL for a category, optionally narrowed to a location"""
        url = f"{self.base_url}/internships/{quote(category.strip().lower().replace(' ', '-'))}"
        if location:
            url += f"/{quote(location.strip().lower().replace(' ', '-'))}"
        return url

    def clear(self):
        super().clear()
        self.browser.new_session()
