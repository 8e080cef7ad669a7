"""
HTTP client and fetch error taxonomy.

Transient errors (timeouts, connection failures, 429, 5xx) are retried by
the adapters; terminal errors (auth, other 4xx, malformed payloads) are not.
"""
import os
import time
import random
import logging
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_UA = "InternScoutBot/1.0 (+ops@internscout.dev)"
DEFAULT_TIMEOUT = 30.0

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
]


class TransientFetchError(Exception):
    """Retryable failure: timeout, connection error, throttling, 5xx"""
    pass


class QuotaExceededError(TransientFetchError):
    """HTTP 429 from an API; retry_after is in seconds when the server sent one"""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TerminalFetchError(Exception):
    """Non-retryable failure: auth, client errors, malformed responses"""
    pass


class AuthError(TerminalFetchError):
    """Credentials missing, expired or rejected"""
    pass


class BrowserIdentity:
    """User agent and viewport presented for one session"""

    def __init__(self, user_agent: str, width: int, height: int):
        self.user_agent = user_agent
        self.width = width
        self.height = height

    @property
    def viewport(self) -> Dict[str, int]:
        return {'width': self.width, 'height': self.height}

    def __repr__(self):
        return f"BrowserIdentity({self.width}x{self.height})"


def random_identity(rng: Optional[random.Random] = None) -> BrowserIdentity:
    """Pick a user agent and jitter the viewport around 1366x768"""
    rng = rng or random
    return BrowserIdentity(
        user_agent=rng.choice(USER_AGENTS),
        width=1366 + rng.randint(0, 99),
        height=768 + rng.randint(0, 99),
    )


def parse_retry_after(headers: Dict[str, str]) -> Optional[float]:
    """Read Retry-After as seconds (integer or HTTP date)"""
    retry_after = headers.get("Retry-After") or headers.get("retry-after")
    if not retry_after:
        return None
    try:
        return max(0.0, float(int(retry_after)))
    except ValueError:
        pass
    try:
        retry_date = parsedate_to_datetime(retry_after)
        return max(0.0, retry_date.timestamp() - time.time())
    except (TypeError, ValueError):
        logger.warning(f"[net] Could not parse Retry-After header: {retry_after}")
        return None


def raise_for_status(status: int, headers: Dict[str, str], url: str):
    """Map an HTTP status to the fetch error taxonomy"""
    if status < 400:
        return
    if status == 429:
        raise QuotaExceededError(f"HTTP 429 from {url}", retry_after=parse_retry_after(headers))
    if status >= 500:
        raise TransientFetchError(f"HTTP {status} from {url}")
    if status in (401, 403):
        raise AuthError(f"HTTP {status} from {url}")
    raise TerminalFetchError(f"HTTP {status} from {url}")


class HTTPClient:
    """Async JSON client used by API-backed adapters and health checks"""

    def __init__(self, user_agent: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        self.user_agent = user_agent or os.getenv("INTERNSCOUT_CRAWLER_UA", DEFAULT_UA)
        self.timeout = httpx.Timeout(timeout)
        # OAuth2 token cache (token_url:client_id -> (token, expires_at))
        self._oauth2_tokens: Dict[str, Tuple[str, float]] = {}

    def _get_headers(
        self,
        custom_headers: Optional[Dict[str, str]] = None,
        auth_header: Optional[str] = None,
    ) -> Dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.5",
        }
        if custom_headers:
            headers.update(custom_headers)
        if auth_header:
            headers["Authorization"] = auth_header
        return headers

    async def get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth_header: Optional[str] = None,
        proxy: Optional[str] = None,
    ) -> Any:
        """
        GET a JSON document.

        Args:
            url: Endpoint URL
            params: Query parameters
            headers: Extra headers
            auth_header: Authorization header value
            proxy: Proxy URL for this request

        Returns:
            Decoded JSON body

        Raises:
            TransientFetchError: Timeout, connection error, 429 or 5xx
            TerminalFetchError: Auth failure, other 4xx, non-JSON body
        """
        request_headers = self._get_headers(headers, auth_header)
        start_time = time.time()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, proxy=proxy) as client:
                response = await client.get(url, headers=request_headers, params=params)
        except httpx.TimeoutException as e:
            logger.error(f"[net] Timeout fetching {url}: {e}")
            raise TransientFetchError(f"Timeout fetching {url}") from e
        except (httpx.ConnectError, httpx.ProxyError, httpx.NetworkError) as e:
            logger.error(f"[net] Connection error fetching {url}: {e}")
            raise TransientFetchError(f"Connection error fetching {url}: {e}") from e

        elapsed_ms = int((time.time() - start_time) * 1000)
        logger.info(f"[net] GET {response.status_code} {url} ({len(response.content)} bytes, {elapsed_ms}ms)")

        raise_for_status(response.status_code, dict(response.headers), url)

        try:
            return response.json()
        except ValueError as e:
            raise TerminalFetchError(f"Invalid JSON from {url}") from e

    async def get_oauth2_token(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: Optional[str] = None,
    ) -> str:
        """
        Get OAuth2 client credentials token with caching.

        Returns:
            Access token
        """
        cache_key = f"{token_url}:{client_id}"
        if cache_key in self._oauth2_tokens:
            token, expires_at = self._oauth2_tokens[cache_key]
            if time.time() < expires_at - 60:  # Refresh 1 minute before expiry
                return token

        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scope:
            data["scope"] = scope

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(token_url, data=data)
        except httpx.HTTPError as e:
            logger.error(f"[net] Failed to get OAuth2 token from {token_url}: {e}")
            raise TransientFetchError(f"Token request failed: {e}") from e

        if response.status_code >= 400:
            raise AuthError(f"Token request rejected with HTTP {response.status_code}")

        token_data = response.json()
        access_token = token_data["access_token"]
        expires_in = token_data.get("expires_in", 3600)
        self._oauth2_tokens[cache_key] = (access_token, time.time() + expires_in)

        logger.info(f"[net] OAuth2 token obtained for {token_url}")
        return access_token

    def invalidate_tokens(self):
        self._oauth2_tokens.clear()
