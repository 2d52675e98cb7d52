"""
Configuration Management Module
Centralized configuration with validation and type safety.
"""

from dataclasses import dataclass, field
from typing import Optional, List, Tuple
from enum import Enum
import os
import logging
from dotenv import load_dotenv

from constants import (
    DEFAULT_LEDGER_API_URL,
    DEFAULT_API_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_PAGE_SIZE,
    DEFAULT_MAX_RECORDS,
    DEFAULT_RATE_LIMIT_CAPACITY,
    DEFAULT_RATE_LIMIT_REFILL_RATE,
    LOW_QUOTA_THRESHOLD,
    CB_FAILURE_THRESHOLD,
    CB_TIMEOUT_DURATION,
    CB_SUCCESS_THRESHOLD,
    CB_HALF_OPEN_MAX_CALLS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_BASE_BACKOFF,
    DEFAULT_MAX_BACKOFF,
    DEFAULT_CACHE_TTL,
    DEFAULT_STALE_GRACE,
    DEFAULT_SWEEP_INTERVAL,
    DEFAULT_RELATED_CORRIDOR_LIMIT,
    LATENCY_BUCKET_BOUNDS_MS,
)
from exceptions import ConfigurationError

load_dotenv()


class LogLevel(Enum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


@dataclass(frozen=True)
class LedgerAPIConfig:
    """Upstream ledger API connection configuration"""
    base_url: str = DEFAULT_LEDGER_API_URL
    timeout_seconds: float = DEFAULT_API_TIMEOUT
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT
    page_size: int = DEFAULT_PAGE_SIZE
    max_records: int = DEFAULT_MAX_RECORDS
    include_failed: bool = True

    def __post_init__(self):
        if not self.base_url:
            raise ValueError("base_url is required")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not 1 <= self.page_size <= 200:
            raise ValueError("page_size must be between 1 and 200")
        if self.max_records <= 0:
            raise ValueError("max_records must be positive")


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket configuration"""
    capacity: int = DEFAULT_RATE_LIMIT_CAPACITY
    refill_rate: float = DEFAULT_RATE_LIMIT_REFILL_RATE
    low_quota_threshold: int = LOW_QUOTA_THRESHOLD

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError("capacity must be positive")
        if self.refill_rate <= 0:
            raise ValueError("refill_rate must be positive")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Circuit breaker configuration (applied per operation)"""
    failure_threshold: int = CB_FAILURE_THRESHOLD
    timeout_duration: float = CB_TIMEOUT_DURATION
    success_threshold: int = CB_SUCCESS_THRESHOLD
    half_open_max_calls: int = CB_HALF_OPEN_MAX_CALLS

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")
        if self.timeout_duration < 0:
            raise ValueError("timeout_duration cannot be negative")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_backoff_seconds: float = DEFAULT_BASE_BACKOFF
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF
    jitter: bool = True  # Add randomness to prevent thundering herd

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds cannot be below base_backoff_seconds")


@dataclass(frozen=True)
class CacheConfig:
    """Corridor cache configuration"""
    ttl_seconds: float = DEFAULT_CACHE_TTL
    stale_grace_seconds: float = DEFAULT_STALE_GRACE
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL
    serve_stale_on_error: bool = True

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.stale_grace_seconds < 0:
            raise ValueError("stale_grace_seconds cannot be negative")


@dataclass(frozen=True)
class AggregationConfig:
    """Corridor aggregation configuration"""
    related_corridor_limit: int = DEFAULT_RELATED_CORRIDOR_LIMIT
    latency_bounds_ms: Tuple[float, ...] = LATENCY_BUCKET_BOUNDS_MS

    def __post_init__(self):
        if self.related_corridor_limit < 0:
            raise ValueError("related_corridor_limit cannot be negative")
        if list(self.latency_bounds_ms) != sorted(set(self.latency_bounds_ms)):
            raise ValueError("latency_bounds_ms must be strictly increasing")


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration"""
    level: LogLevel = LogLevel.INFO
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None
    console_output: bool = True


@dataclass
class PipelineConfig:
    """Master configuration for the corridor pipeline"""
    ledger: LedgerAPIConfig = field(default_factory=LedgerAPIConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls, validate: bool = False) -> "PipelineConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: If True, raise ConfigurationError on invalid values

        Returns:
            PipelineConfig instance

        Raises:
            ConfigurationError: If validate=True and any value is invalid
        """
        errors = []

        def parse_float(env_var: str, default: float) -> float:
            value = os.getenv(env_var, str(default))
            try:
                parsed = float(value)
                if parsed < 0:
                    errors.append(f"{env_var} must be non-negative, got {parsed}")
                    return default
                return parsed
            except ValueError:
                errors.append(f"Invalid {env_var}: '{value}' is not a valid number")
                return default

        def parse_int(env_var: str, default: int) -> int:
            value = os.getenv(env_var, str(default))
            try:
                parsed = int(value)
                if parsed < 0:
                    errors.append(f"{env_var} must be non-negative, got {parsed}")
                    return default
                return parsed
            except ValueError:
                errors.append(f"Invalid {env_var}: '{value}' is not a valid integer")
                return default

        def parse_bool(env_var: str, default: bool) -> bool:
            value = os.getenv(env_var, str(default).lower())
            return value.lower() in ("true", "1", "yes", "on")

        log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
        try:
            log_level = LogLevel[log_level_str]
        except KeyError:
            errors.append(f"Invalid LOG_LEVEL: {log_level_str}")
            log_level = LogLevel.INFO

        page_size = parse_int("LEDGER_PAGE_SIZE", DEFAULT_PAGE_SIZE)
        if not 1 <= page_size <= 200:
            errors.append(f"LEDGER_PAGE_SIZE must be between 1 and 200, got {page_size}")
            page_size = DEFAULT_PAGE_SIZE

        settings = dict(
            ledger=dict(
                base_url=os.getenv("LEDGER_API_URL", DEFAULT_LEDGER_API_URL).strip() or DEFAULT_LEDGER_API_URL,
                timeout_seconds=parse_float("LEDGER_API_TIMEOUT", DEFAULT_API_TIMEOUT),
                page_size=page_size,
                max_records=parse_int("LEDGER_MAX_RECORDS", DEFAULT_MAX_RECORDS),
                include_failed=parse_bool("LEDGER_INCLUDE_FAILED", True),
            ),
            rate_limit=dict(
                capacity=parse_int("RATE_LIMIT_CAPACITY", DEFAULT_RATE_LIMIT_CAPACITY),
                refill_rate=parse_float("RATE_LIMIT_REFILL_RATE", DEFAULT_RATE_LIMIT_REFILL_RATE),
            ),
            circuit_breaker=dict(
                failure_threshold=parse_int("CB_FAILURE_THRESHOLD", CB_FAILURE_THRESHOLD),
                timeout_duration=parse_float("CB_TIMEOUT_SECONDS", CB_TIMEOUT_DURATION),
                success_threshold=parse_int("CB_SUCCESS_THRESHOLD", CB_SUCCESS_THRESHOLD),
            ),
            retry=dict(
                max_attempts=parse_int("RETRY_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                base_backoff_seconds=parse_float("RETRY_BASE_BACKOFF", DEFAULT_BASE_BACKOFF),
                max_backoff_seconds=parse_float("RETRY_MAX_BACKOFF", DEFAULT_MAX_BACKOFF),
            ),
            cache=dict(
                ttl_seconds=parse_float("CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL),
                stale_grace_seconds=parse_float("CACHE_STALE_GRACE_SECONDS", DEFAULT_STALE_GRACE),
                sweep_interval_seconds=parse_float("CACHE_SWEEP_INTERVAL", DEFAULT_SWEEP_INTERVAL),
            ),
            aggregation=dict(
                related_corridor_limit=parse_int("RELATED_CORRIDOR_LIMIT", DEFAULT_RELATED_CORRIDOR_LIMIT),
            ),
        )

        sections = {
            "ledger": LedgerAPIConfig,
            "rate_limit": RateLimitConfig,
            "circuit_breaker": CircuitBreakerConfig,
            "retry": RetryConfig,
            "cache": CacheConfig,
            "aggregation": AggregationConfig,
        }
        built = {}
        for name, section_cls in sections.items():
            try:
                built[name] = section_cls(**settings[name])
            except ValueError as e:
                errors.append(f"{name}: {e}")
                built[name] = section_cls()

        if errors and validate:
            raise ConfigurationError(f"Configuration errors: {'; '.join(errors)}")

        return cls(
            logging=LoggingConfig(
                level=log_level,
                file_path=os.getenv("LOG_FILE"),
            ),
            **built
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of warnings"""
        issues = []

        if not self.ledger.base_url.startswith("https://"):
            issues.append("WARNING: Ledger API URL is not HTTPS")

        if self.ledger.max_records < self.ledger.page_size:
            issues.append("WARNING: max_records is smaller than one page")

        if self.cache.ttl_seconds < self.circuit_breaker.timeout_duration:
            issues.append("INFO: Cache TTL is shorter than the circuit breaker timeout")

        if self.retry.max_attempts == 1:
            issues.append("INFO: Retries disabled (max_attempts=1)")

        return issues


def setup_logging(config: LoggingConfig) -> logging.Logger:
    """Setup logging based on configuration"""
    logger = logging.getLogger("CorridorScope")
    logger.setLevel(config.level.value)

    formatter = logging.Formatter(config.format)

    if config.console_output:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if config.file_path:
        file_handler = logging.FileHandler(config.file_path)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# Global config instance
_config: Optional[PipelineConfig] = None


def get_config() -> PipelineConfig:
    """Get global configuration instance"""
    global _config
    if _config is None:
        _config = PipelineConfig.from_env()
    return _config


def set_config(config: PipelineConfig) -> None:
    """Set global configuration instance"""
    global _config
    _config = config
