"""
Tests for environment configuration and HTTP error mapping.
"""

import pytest
from core.config import ConfigError, PipelineSettings, load_proxies_from_env, validate_settings
from core.net import AuthError, QuotaExceededError, TerminalFetchError, TransientFetchError, parse_retry_after, raise_for_status
from main import main


class TestSettings:
    def test_source_defaults(self, monkeypatch):
        monkeypatch.delenv('INTERNSHALA_RATE_LIMIT_REQUESTS', raising=False)
        settings = PipelineSettings()
        internshala = settings.sources['internshala']
        assert internshala.rate_limit_requests == 10
        assert internshala.window_seconds == 60.0

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv('LINKEDIN_RATE_LIMIT_REQUESTS', '2')
        monkeypatch.setenv('LINKEDIN_SCRAPING_ENABLED', 'false')
        monkeypatch.setenv('INTERNSHALA_SCRAPING_ENABLED', 'true')
        settings = PipelineSettings()

        assert settings.sources['linkedin'].rate_limit_requests == 2
        assert [s.name for s in settings.enabled_sources()] == ['internshala']

    def test_non_integer_rejected(self, monkeypatch):
        monkeypatch.setenv('INTERNSCOUT_CONCURRENCY', 'many')
        with pytest.raises(ConfigError):
            PipelineSettings()

    @pytest.mark.parametrize('name', [
        'INTERNSCOUT_JOB_BACKOFF_SECONDS',
        'INTERNSCOUT_LOG_FLUSH_SECONDS',
        'LINKEDIN_API_QUOTA_COOLDOWN_SECONDS',
    ])
    def test_non_numeric_float_rejected(self, monkeypatch, name):
        monkeypatch.setenv(name, 'soon')
        with pytest.raises(ConfigError) as exc:
            PipelineSettings()
        assert name in str(exc.value)

    def test_cli_exits_cleanly_on_unparseable_env(self, monkeypatch):
        monkeypatch.setenv('INTERNSCOUT_CONCURRENCY', 'many')
        assert main(['status']) == 2

    def test_log_max_buffer_defaults_to_multiple_of_buffer(self, monkeypatch):
        monkeypatch.setenv('INTERNSCOUT_LOG_BUFFER_SIZE', '20')
        settings = PipelineSettings()
        assert settings.log_max_buffer == 100

        monkeypatch.setenv('INTERNSCOUT_LOG_MAX_BUFFER', '10')
        with pytest.raises(ConfigError):
            validate_settings(PipelineSettings())

    def test_validate_collects_errors(self, monkeypatch):
        monkeypatch.setenv('INTERNSCOUT_CONCURRENCY', '50')
        monkeypatch.setenv('LINKEDIN_TIMEOUT_MS', '100')
        with pytest.raises(ConfigError) as exc:
            validate_settings(PipelineSettings())
        assert 'INTERNSCOUT_CONCURRENCY' in str(exc.value)
        assert 'linkedin: timeout' in str(exc.value)

    def test_proxies_from_env(self, monkeypatch):
        monkeypatch.setenv('PROXY_1_HOST', '10.0.0.1')
        monkeypatch.setenv('PROXY_1_PORT', '3128')
        monkeypatch.setenv('PROXY_2_HOST', '10.0.0.2')
        monkeypatch.delenv('PROXY_2_PORT', raising=False)
        monkeypatch.delenv('PROXY_3_HOST', raising=False)

        proxies = load_proxies_from_env()
        assert [(p.host, p.port) for p in proxies] == [('10.0.0.1', 3128), ('10.0.0.2', 8080)]


class TestErrorMapping:
    @pytest.mark.parametrize('status,error', [
        (429, QuotaExceededError),
        (503, TransientFetchError),
        (401, AuthError),
        (403, AuthError),
        (404, TerminalFetchError),
    ])
    def test_raise_for_status(self, status, error):
        with pytest.raises(error):
            raise_for_status(status, {}, 'https://api.linkedin.com/v2/jobSearch')

    def test_success_passes(self):
        raise_for_status(200, {}, 'https://internshala.com')

    def test_quota_carries_retry_after(self):
        with pytest.raises(QuotaExceededError) as exc:
            raise_for_status(429, {'Retry-After': '120'}, 'https://api.linkedin.com')
        assert exc.value.retry_after == 120.0

    def test_parse_retry_after(self):
        assert parse_retry_after({}) is None
        assert parse_retry_after({'retry-after': '5'}) == 5.0
        assert parse_retry_after({'Retry-After': 'Wed, 21 Oct 2015 07:28:00 GMT'}) == 0.0
        assert parse_retry_after({'Retry-After': 'soon'}) is None
