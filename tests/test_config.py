"""
Tests for configuration module.
Tests PipelineConfig loading, validation, and LogLevel.
"""

import pytest
import os
import sys
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import (
    AggregationConfig,
    CacheConfig,
    CircuitBreakerConfig,
    LedgerAPIConfig,
    LoggingConfig,
    LogLevel,
    PipelineConfig,
    RateLimitConfig,
    RetryConfig,
    get_config,
    set_config,
    setup_logging
)
from exceptions import ConfigurationError


class TestLogLevel:
    """Tests for LogLevel enum"""

    def test_log_level_values(self):
        """Log levels should have correct numeric values"""
        assert LogLevel.DEBUG.value < LogLevel.INFO.value
        assert LogLevel.INFO.value < LogLevel.WARNING.value
        assert LogLevel.WARNING.value < LogLevel.ERROR.value
        assert LogLevel.ERROR.value < LogLevel.CRITICAL.value


class TestSectionDefaults:
    """Tests for section dataclasses"""

    def test_ledger_defaults(self):
        """Should point at Horizon with full pages"""
        config = LedgerAPIConfig()
        assert config.base_url == "https://horizon.stellar.org"
        assert config.page_size == 200
        assert config.max_records == 10_000
        assert config.include_failed is True

    def test_resilience_defaults(self):
        """Should have the documented breaker and retry defaults"""
        assert CircuitBreakerConfig().failure_threshold == 5
        assert CircuitBreakerConfig().timeout_duration == 30.0
        assert CircuitBreakerConfig().success_threshold == 2
        assert RetryConfig().max_attempts == 4
        assert RetryConfig().jitter is True

    def test_aggregation_defaults(self):
        """Should use the fixed latency buckets and five related corridors"""
        config = AggregationConfig()
        assert config.related_corridor_limit == 5
        assert config.latency_bounds_ms == (100.0, 250.0, 500.0, 1000.0, 2000.0)

    def test_section_validation(self):
        """Should reject nonsensical values"""
        with pytest.raises(ValueError):
            LedgerAPIConfig(page_size=500)
        with pytest.raises(ValueError):
            RateLimitConfig(capacity=0)
        with pytest.raises(ValueError):
            CircuitBreakerConfig(failure_threshold=0)
        with pytest.raises(ValueError):
            RetryConfig(base_backoff_seconds=10, max_backoff_seconds=1)
        with pytest.raises(ValueError):
            CacheConfig(ttl_seconds=0)
        with pytest.raises(ValueError):
            AggregationConfig(latency_bounds_ms=(500.0, 100.0))


class TestPipelineConfig:
    """Tests for PipelineConfig"""

    def test_defaults(self):
        """Should create config with default sections"""
        config = PipelineConfig()
        assert config.ledger is not None
        assert config.cache.ttl_seconds == 300.0
        assert config.logging.level == LogLevel.INFO

    @patch.dict(os.environ, {
        "LEDGER_API_URL": "https://ledger.example",
        "LEDGER_PAGE_SIZE": "50",
        "LEDGER_MAX_RECORDS": "500",
        "RATE_LIMIT_CAPACITY": "20",
        "RATE_LIMIT_REFILL_RATE": "2.5",
        "CB_FAILURE_THRESHOLD": "3",
        "RETRY_MAX_ATTEMPTS": "6",
        "CACHE_TTL_SECONDS": "120",
        "RELATED_CORRIDOR_LIMIT": "8",
        "LOG_LEVEL": "DEBUG",
    }, clear=False)
    def test_from_env(self):
        """Should load configuration from environment"""
        config = PipelineConfig.from_env()
        assert config.ledger.base_url == "https://ledger.example"
        assert config.ledger.page_size == 50
        assert config.ledger.max_records == 500
        assert config.rate_limit.capacity == 20
        assert config.rate_limit.refill_rate == 2.5
        assert config.circuit_breaker.failure_threshold == 3
        assert config.retry.max_attempts == 6
        assert config.cache.ttl_seconds == 120.0
        assert config.aggregation.related_corridor_limit == 8
        assert config.logging.level == LogLevel.DEBUG

    @patch.dict(os.environ, {"RATE_LIMIT_CAPACITY": "lots"}, clear=False)
    def test_from_env_invalid_number_falls_back(self):
        """Should keep defaults for unparseable numbers"""
        config = PipelineConfig.from_env()
        assert config.rate_limit.capacity == 10

    @patch.dict(os.environ, {"RATE_LIMIT_CAPACITY": "lots"}, clear=False)
    def test_from_env_invalid_number_strict(self):
        """Should raise ConfigurationError when validating"""
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_env(validate=True)

    @patch.dict(os.environ, {"CB_FAILURE_THRESHOLD": "0"}, clear=False)
    def test_from_env_invalid_section_falls_back(self):
        """A section that fails validation reverts to its defaults"""
        config = PipelineConfig.from_env()
        assert config.circuit_breaker.failure_threshold == 5

    @patch.dict(os.environ, {"LOG_LEVEL": "INVALID"}, clear=False)
    def test_from_env_invalid_log_level(self):
        """Should fall back to INFO for invalid log level"""
        config = PipelineConfig.from_env()
        assert config.logging.level == LogLevel.INFO

    def test_validate_warnings(self):
        """Should report questionable combinations"""
        config = PipelineConfig(
            ledger=LedgerAPIConfig(base_url="http://insecure.example", max_records=50),
            retry=RetryConfig(max_attempts=1),
        )
        issues = config.validate()
        assert any("HTTPS" in issue for issue in issues)
        assert any("smaller than one page" in issue for issue in issues)
        assert any("Retries disabled" in issue for issue in issues)

    def test_validate_defaults_clean(self):
        """Defaults should not produce warnings"""
        assert not [i for i in PipelineConfig().validate() if i.startswith("WARNING")]


class TestGlobalConfig:
    """Tests for global config functions"""

    def test_set_and_get_config(self):
        """Should set and retrieve global config"""
        custom = PipelineConfig(cache=CacheConfig(ttl_seconds=42))
        set_config(custom)
        assert get_config().cache.ttl_seconds == 42


class TestLoggingSetup:
    """Tests for logging setup"""

    def test_setup_logging_console(self):
        """Should create the package logger with a console handler"""
        logger = setup_logging(LoggingConfig(level=LogLevel.WARNING, console_output=True))
        assert logger.name == "CorridorScope"
        assert logger.level == LogLevel.WARNING.value
        assert len(logger.handlers) >= 1

    def test_setup_logging_file(self, tmp_path):
        """Should add a file handler when a path is given"""
        log_file = tmp_path / "pipeline.log"
        logger = setup_logging(LoggingConfig(console_output=False, file_path=str(log_file)))
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        assert log_file.exists()
