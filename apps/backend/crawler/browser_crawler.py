"""
Browser-based fetching using Playwright for JavaScript-heavy sites.
"""
import hashlib
import logging
from typing import Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from core.net import BrowserIdentity, TransientFetchError, random_identity
from core.proxy_pool import ProxyEndpoint

logger = logging.getLogger(__name__)


class BrowserCrawler:
    """Render pages in headless Chromium under a per-session identity"""

    def __init__(self, settle_ms: int = 2000, screenshot_dir: Optional[str] = "/tmp"):
        """
        Args:
            settle_ms: Extra wait after load for late AJAX content
            screenshot_dir: Where to save a screenshot when a fetch fails (None disables)
        """
        self.settle_ms = settle_ms
        self.screenshot_dir = screenshot_dir
        self.identity: BrowserIdentity = random_identity()

    def new_session(self) -> BrowserIdentity:
        """Pick a fresh user agent and viewport for subsequent fetches"""
        self.identity = random_identity()
        logger.debug(f"[browser] New session identity {self.identity}")
        return self.identity

    async def fetch_html(
        self,
        url: str,
        wait_selector: Optional[str] = None,
        timeout_ms: int = 30000,
        proxy: Optional[ProxyEndpoint] = None,
        prepare_page: Optional[Callable[[Page], Awaitable[None]]] = None,
    ) -> str:
        """
        Fetch HTML from URL using browser rendering.

        Args:
            url: URL to fetch
            wait_selector: CSS selector to wait for (e.g., '.internship_meta')
            timeout_ms: Navigation timeout in milliseconds
            proxy: Proxy to route the browser through
            prepare_page: Hook run after navigation (consent dialogs, login walls)

        Returns:
            Rendered HTML content

        Raises:
            TransientFetchError: Navigation timeout or browser failure
        """
        async with async_playwright() as p:
            launch_args = {'headless': True}
            if proxy is not None:
                launch_args['proxy'] = proxy.to_playwright()
            browser = await p.chromium.launch(**launch_args)
            context = await browser.new_context(
                user_agent=self.identity.user_agent,
                viewport=self.identity.viewport,
                locale='en-US',
            )
            page = await context.new_page()
            await page.set_extra_http_headers({
                'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
                'Accept-Language': 'en-US,en;q=0.9',
            })

            try:
                await page.goto(url, wait_until='networkidle', timeout=timeout_ms)

                if prepare_page is not None:
                    await prepare_page(page)

                if wait_selector:
                    try:
                        await page.wait_for_selector(wait_selector, timeout=timeout_ms)
                    except PlaywrightTimeoutError:
                        logger.warning(f"[browser] Selector {wait_selector} not found on {url}")

                if self.settle_ms:
                    await page.wait_for_timeout(self.settle_ms)

                return await page.content()
            except PlaywrightTimeoutError as e:
                await self._screenshot(page, url)
                raise TransientFetchError(f"Browser timeout loading {url}") from e
            except PlaywrightError as e:
                await self._screenshot(page, url)
                raise TransientFetchError(f"Browser error loading {url}: {e}") from e
            finally:
                await context.close()
                await browser.close()

    async def _screenshot(self, page: Page, url: str):
        if not self.screenshot_dir:
            return
        screenshot_path = f"{self.screenshot_dir}/browser_error_{hashlib.sha256(url.encode()).hexdigest()[:8]}.png"
        try:
            await page.screenshot(path=screenshot_path, full_page=True)
            logger.info(f"[browser] Screenshot saved: {screenshot_path}")
        except PlaywrightError as screenshot_error:
            logger.debug(f"[browser] Failed to capture screenshot: {screenshot_error}")
