"""
Proxy rotation with per-endpoint health tracking.

Selection is round-robin over healthy endpoints. When every endpoint is
unhealthy the pool resets failure streaks and hands back the first proxy
instead of blocking.
"""
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CHECK_URL = "https://httpbin.org/ip"


class ProxyEndpoint:
    """A single proxy server"""

    def __init__(
        self,
        host: str,
        port: int,
        protocol: str = "http",
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.host = host
        self.port = int(port)
        self.protocol = protocol
        self.username = username
        self.password = password

    @property
    def key(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def url(self) -> str:
        """Proxy URL with credentials, as accepted by httpx"""
        if self.username:
            auth = self.username
            if self.password:
                auth = f"{auth}:{self.password}"
            return f"{self.protocol}://{auth}@{self.host}:{self.port}"
        return self.key

    def to_playwright(self) -> Dict:
        """Proxy settings in Playwright's launch/context format"""
        settings = {'server': self.key}
        if self.username:
            settings['username'] = self.username
        if self.password:
            settings['password'] = self.password
        return settings

    def __eq__(self, other):
        return isinstance(other, ProxyEndpoint) and other.key == self.key

    def __hash__(self):
        return hash(self.key)

    def __repr__(self):
        return f"ProxyEndpoint({self.key})"


class ProxyHealth:
    """Rolling health record for one proxy"""

    def __init__(self, proxy: ProxyEndpoint):
        self.proxy = proxy
        self.is_healthy = True
        self.response_time_ms: Optional[float] = None
        self.last_checked: Optional[datetime] = None
        self.failure_count = 0

    def to_dict(self) -> Dict:
        return {
            'proxy': self.proxy.key,
            'is_healthy': self.is_healthy,
            'response_time_ms': self.response_time_ms,
            'last_checked': self.last_checked.isoformat() if self.last_checked else None,
            'failure_count': self.failure_count,
        }


class ProxyPool:
    """Round-robin proxy selection with health checks"""

    def __init__(
        self,
        proxies: Optional[List[ProxyEndpoint]] = None,
        failure_threshold: int = 5,
        check_interval: float = 300,
        check_url: str = DEFAULT_CHECK_URL,
        check_timeout: float = 10.0,
    ):
        self.failure_threshold = failure_threshold
        self.check_interval = check_interval
        self.check_url = check_url
        self.check_timeout = check_timeout
        self._proxies: List[ProxyEndpoint] = []
        self._health: Dict[str, ProxyHealth] = {}
        self._cursor = 0
        self._task: Optional[asyncio.Task] = None
        for proxy in proxies or []:
            self.add(proxy)

    def __len__(self):
        return len(self._proxies)

    @property
    def proxies(self) -> List[ProxyEndpoint]:
        return list(self._proxies)

    def add(self, proxy: ProxyEndpoint):
        if proxy.key in self._health:
            logger.warning(f"[proxy_pool] Proxy {proxy.key} already registered")
            return
        self._proxies.append(proxy)
        self._health[proxy.key] = ProxyHealth(proxy)
        logger.info(f"[proxy_pool] Added proxy {proxy.key}")

    def remove(self, proxy: ProxyEndpoint) -> bool:
        if proxy.key not in self._health:
            return False
        self._proxies = [p for p in self._proxies if p.key != proxy.key]
        del self._health[proxy.key]
        logger.info(f"[proxy_pool] Removed proxy {proxy.key}")
        return True

    def health(self, proxy: ProxyEndpoint) -> Optional[ProxyHealth]:
        return self._health.get(proxy.key)

    def _is_usable(self, proxy: ProxyEndpoint) -> bool:
        health = self._health[proxy.key]
        return health.is_healthy and health.failure_count < self.failure_threshold

    def next(self) -> Optional[ProxyEndpoint]:
        """
        Return the next proxy to use.

        Round-robin over usable proxies. If none are usable, every failure
        streak is reset and the first configured proxy is returned.
        Returns None only when the pool is empty.
        """
        if not self._proxies:
            return None

        candidates = [p for p in self._proxies if self._is_usable(p)]
        if not candidates:
            logger.warning("[proxy_pool] No healthy proxies available, resetting failure counts")
            for health in self._health.values():
                health.failure_count = 0
                health.is_healthy = True
            return self._proxies[0]

        proxy = candidates[self._cursor % len(candidates)]
        self._cursor += 1
        return proxy

    def record_result(self, proxy: ProxyEndpoint, healthy: bool, latency_ms: Optional[float] = None):
        """Update the health record of a single proxy"""
        health = self._health.get(proxy.key)
        if health is None:
            return
        health.is_healthy = healthy
        health.response_time_ms = latency_ms
        health.last_checked = datetime.now(timezone.utc)
        if healthy:
            health.failure_count = 0
        else:
            health.failure_count += 1
            if health.failure_count >= self.failure_threshold:
                logger.warning(
                    f"[proxy_pool] Proxy {proxy.key} reached {health.failure_count} consecutive failures"
                )

    async def check_proxy(self, proxy: ProxyEndpoint) -> bool:
        """Probe one proxy and record the result"""
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(proxy=proxy.url, timeout=self.check_timeout) as client:
                response = await client.get(self.check_url)
            healthy = response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"[proxy_pool] Health check failed for {proxy.key}: {e}")
            healthy = False
        latency_ms = (time.monotonic() - start) * 1000
        self.record_result(proxy, healthy, latency_ms)
        return healthy

    async def check_all(self) -> int:
        """Probe every proxy concurrently. Returns the healthy count."""
        if not self._proxies:
            return 0
        results = await asyncio.gather(*(self.check_proxy(p) for p in self.proxies))
        healthy = sum(1 for r in results if r)
        logger.info(f"[proxy_pool] Health check complete: {healthy}/{len(results)} healthy")
        return healthy

    async def _check_loop(self):
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f"[proxy_pool] Health check loop error: {e}", exc_info=True)

    def start(self):
        """Start the periodic background health check"""
        if self._task is None and self._proxies:
            self._task = asyncio.create_task(self._check_loop())
            logger.info(f"[proxy_pool] Health checks every {self.check_interval}s for {len(self._proxies)} proxies")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def healthy_count(self) -> int:
        return sum(1 for p in self._proxies if self._is_usable(p))

    def stats(self) -> Dict:
        return {
            'total': len(self._proxies),
            'healthy': self.healthy_count(),
            'proxies': [self._health[p.key].to_dict() for p in self._proxies],
        }
