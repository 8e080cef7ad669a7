"""
Runtime configuration for the ingestion pipeline.

Everything is read from environment variables (a .env file is loaded by
main.py through python-dotenv before this module is used). Per-source
settings follow the SOURCE_SETTING pattern, e.g. INTERNSHALA_RATE_LIMIT_REQUESTS.
"""
import os
import logging
from typing import Dict, List, Optional

from core.proxy_pool import ProxyEndpoint

logger = logging.getLogger(__name__)

# Source defaults. Window and timeout values are in milliseconds to match
# the env variable names operators already use.
SOURCE_DEFAULTS: Dict[str, Dict] = {
    'internshala': {
        'base_url': 'https://internshala.com',
        'rate_limit_requests': 10,
        'rate_limit_window_ms': 60000,
        'max_retries': 3,
        'timeout_ms': 30000,
        'schedule': '0 */6 * * *',
        'start_url': 'https://internshala.com/internships',
    },
    'linkedin': {
        'base_url': 'https://www.linkedin.com',
        'rate_limit_requests': 5,
        'rate_limit_window_ms': 60000,
        'max_retries': 3,
        'timeout_ms': 45000,
        'schedule': '0 */8 * * *',
        'start_url': 'https://www.linkedin.com/jobs/search/?keywords=internship&f_E=1',
    },
}


class ConfigError(Exception):
    """Raised when settings fail validation"""
    pass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in ('false', '0', 'no', 'off')


class SourceSettings:
    """Limits and schedule for one source"""

    def __init__(
        self,
        name: str,
        enabled: bool,
        base_url: str,
        start_url: str,
        rate_limit_requests: int,
        rate_limit_window_ms: int,
        max_retries: int,
        timeout_ms: int,
        schedule: Optional[str],
    ):
        self.name = name
        self.enabled = enabled
        self.base_url = base_url
        self.start_url = start_url
        self.rate_limit_requests = rate_limit_requests
        self.rate_limit_window_ms = rate_limit_window_ms
        self.max_retries = max_retries
        self.timeout_ms = timeout_ms
        self.schedule = schedule

    @property
    def window_seconds(self) -> float:
        return self.rate_limit_window_ms / 1000.0

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'enabled': self.enabled,
            'base_url': self.base_url,
            'start_url': self.start_url,
            'rate_limit_requests': self.rate_limit_requests,
            'rate_limit_window_ms': self.rate_limit_window_ms,
            'max_retries': self.max_retries,
            'timeout_ms': self.timeout_ms,
            'schedule': self.schedule,
        }


def load_source_settings(name: str) -> SourceSettings:
    """Build settings for a source from defaults plus env overrides."""
    defaults = SOURCE_DEFAULTS.get(name)
    if defaults is None:
        raise ConfigError(f"No defaults for source '{name}'")

    prefix = name.upper()
    schedule = os.getenv(f"{prefix}_SCHEDULE", defaults['schedule'])

    return SourceSettings(
        name=name,
        enabled=_env_bool(f"{prefix}_SCRAPING_ENABLED", True),
        base_url=os.getenv(f"{prefix}_BASE_URL", defaults['base_url']),
        start_url=os.getenv(f"{prefix}_START_URL", defaults['start_url']),
        rate_limit_requests=_env_int(f"{prefix}_RATE_LIMIT_REQUESTS", defaults['rate_limit_requests']),
        rate_limit_window_ms=_env_int(f"{prefix}_RATE_LIMIT_WINDOW_MS", defaults['rate_limit_window_ms']),
        max_retries=_env_int(f"{prefix}_MAX_RETRIES", defaults['max_retries']),
        timeout_ms=_env_int(f"{prefix}_TIMEOUT_MS", defaults['timeout_ms']),
        schedule=schedule or None,
    )


def load_proxies_from_env() -> List[ProxyEndpoint]:
    """
    Read PROXY_1_HOST, PROXY_2_HOST, ... until the first gap.

    Port defaults to 8080 and protocol to http.
    """
    proxies = []
    index = 1
    while True:
        host = os.getenv(f"PROXY_{index}_HOST")
        if not host:
            break
        proxies.append(ProxyEndpoint(
            host=host,
            port=_env_int(f"PROXY_{index}_PORT", 8080),
            protocol=os.getenv(f"PROXY_{index}_PROTOCOL", "http"),
            username=os.getenv(f"PROXY_{index}_USERNAME") or None,
            password=os.getenv(f"PROXY_{index}_PASSWORD") or None,
        ))
        index += 1
    return proxies


class PipelineSettings:
    """Process-wide settings assembled once by the composition root"""

    def __init__(self):
        self.database_url = os.getenv("DATABASE_URL") or None
        self.concurrency = _env_int("INTERNSCOUT_CONCURRENCY", 3)
        self.job_max_attempts = _env_int("INTERNSCOUT_JOB_MAX_ATTEMPTS", 3)
        self.job_backoff_seconds = _env_float("INTERNSCOUT_JOB_BACKOFF_SECONDS", 2.0)
        self.stall_timeout_seconds = _env_int("INTERNSCOUT_STALL_TIMEOUT_SECONDS", 900)
        self.log_buffer_size = _env_int("INTERNSCOUT_LOG_BUFFER_SIZE", 100)
        self.log_max_buffer = _env_int("INTERNSCOUT_LOG_MAX_BUFFER", self.log_buffer_size * 5)
        self.log_flush_seconds = _env_float("INTERNSCOUT_LOG_FLUSH_SECONDS", 30.0)
        self.proxy_check_interval = _env_int("INTERNSCOUT_PROXY_CHECK_INTERVAL", 300)
        self.proxy_check_url = os.getenv("INTERNSCOUT_PROXY_CHECK_URL", "https://httpbin.org/ip")
        self.linkedin_access_token = os.getenv("LINKEDIN_ACCESS_TOKEN") or None
        self.linkedin_client_id = os.getenv("LINKEDIN_CLIENT_ID") or None
        self.linkedin_client_secret = os.getenv("LINKEDIN_CLIENT_SECRET") or None
        self.linkedin_quota_cooldown = _env_float("LINKEDIN_API_QUOTA_COOLDOWN_SECONDS", 0.0)
        self.sources = {name: load_source_settings(name) for name in SOURCE_DEFAULTS}
        self.proxies = load_proxies_from_env()

    def enabled_sources(self) -> List[SourceSettings]:
        return [s for s in self.sources.values() if s.enabled]


def validate_settings(settings: PipelineSettings) -> None:
    """Raise ConfigError listing every invalid value."""
    errors = []

    if not 1 <= settings.concurrency <= 10:
        errors.append("INTERNSCOUT_CONCURRENCY must be between 1 and 10")
    if settings.job_max_attempts < 1:
        errors.append("INTERNSCOUT_JOB_MAX_ATTEMPTS must be at least 1")
    if settings.job_backoff_seconds < 0:
        errors.append("INTERNSCOUT_JOB_BACKOFF_SECONDS must not be negative")
    if settings.log_buffer_size < 1:
        errors.append("INTERNSCOUT_LOG_BUFFER_SIZE must be at least 1")
    if settings.log_max_buffer < settings.log_buffer_size:
        errors.append("INTERNSCOUT_LOG_MAX_BUFFER must not be below INTERNSCOUT_LOG_BUFFER_SIZE")

    for source in settings.sources.values():
        if source.rate_limit_requests < 1:
            errors.append(f"{source.name}: rate limit requests must be at least 1")
        if source.rate_limit_window_ms < 1000:
            errors.append(f"{source.name}: rate limit window must be at least 1000ms")
        if source.timeout_ms < 5000:
            errors.append(f"{source.name}: timeout must be at least 5000ms")
        if source.max_retries < 0:
            errors.append(f"{source.name}: max retries must not be negative")

    for proxy in settings.proxies:
        if not 0 < proxy.port < 65536:
            errors.append(f"proxy {proxy.key}: invalid port")
        if proxy.protocol not in ('http', 'https', 'socks5'):
            errors.append(f"proxy {proxy.key}: unsupported protocol '{proxy.protocol}'")

    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))

    if not settings.database_url:
        logger.warning("[config] DATABASE_URL not set, using in-memory store, log sink and job queue")
