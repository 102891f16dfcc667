from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StrategyOverride(BaseModel):
    """Per-strategy limit override loaded from ``RATE_LIMIT_OVERRIDES``.

    Example value: ``{"ai": {"points": 20}, "auth": {"block_duration": 600}}``
    """

    points: Optional[int] = Field(default=None, gt=0)
    duration: Optional[int] = Field(default=None, gt=0)
    block_duration: Optional[int] = Field(default=None, gt=0)
    message: Optional[str] = None
    skip_successful: Optional[bool] = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (counter store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/1"
    redis_key_prefix: str = "ratelimit:"

    # Counter store call budget
    store_timeout_seconds: float = 0.5  # Per-attempt timeout
    store_max_retries: int = 1  # Retries after the first attempt
    store_retry_base_delay: float = 0.05
    store_retry_max_delay: float = 0.5

    # Rate limiting settings
    global_rate_limit_enabled: bool = True
    rate_limit_exempt_paths: list[str] = ["/health", "/api/health"]
    rate_limit_overrides: dict[str, StrategyOverride] = {}

    # Token bucket defaults (AI-backed endpoints)
    ai_tokens_per_interval: int = 10
    ai_interval_seconds: float = 60.0
    ai_max_burst: int = 5
    ai_cost_per_request: int = 1

    # Adaptive limiting
    adaptive_base_limit: int = 100
    adaptive_min_limit: int = 10
    adaptive_window_seconds: int = 60
    adaptive_sample_interval_seconds: float = 1.0
    adaptive_memory_budget_mb: int = 512

    # Performance monitoring
    metrics_window_seconds: int = 300  # Rolling ledger (5 minutes)
    metrics_max_endpoints: int = 200  # Distinct endpoint labels tracked
    slow_request_threshold_ms: float = 1000.0
    memory_spike_threshold_mb: float = 50.0
    health_error_rate_threshold: float = 0.05
    health_memory_threshold_mb: float = 500.0
    health_min_throughput: float = 0.1  # req/s

    # Request deduplication
    dedup_enabled: bool = True
    dedup_execution_timeout_seconds: Optional[float] = 30.0

    # Periodic maintenance (cleanup + ledger pruning)
    maintenance_interval_seconds: float = 60.0

    # Admin endpoints (empty token disables them)
    admin_token: str = ""

    @field_validator(
        "ai_tokens_per_interval",
        "ai_max_burst",
        "ai_cost_per_request",
        "adaptive_base_limit",
        "adaptive_min_limit",
        "adaptive_window_seconds",
        "adaptive_memory_budget_mb",
        "metrics_window_seconds",
        "metrics_max_endpoints",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator(
        "store_timeout_seconds",
        "ai_interval_seconds",
        "adaptive_sample_interval_seconds",
        "slow_request_threshold_ms",
        "memory_spike_threshold_mb",
        "maintenance_interval_seconds",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate timeout and threshold values are positive."""
        if v <= 0:
            raise ValueError("Timeout and threshold values must be positive")
        return v

    @field_validator("store_max_retries")
    @classmethod
    def validate_retry_budget(cls, v: int) -> int:
        """Keep the retry budget bounded."""
        if v < 0:
            raise ValueError("store_max_retries must not be negative")
        if v > 5:
            raise ValueError("store_max_retries should not exceed 5")
        return v

    @field_validator("dedup_execution_timeout_seconds")
    @classmethod
    def validate_dedup_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("dedup_execution_timeout_seconds must be positive")
        return v

    @field_validator("health_error_rate_threshold")
    @classmethod
    def validate_error_rate(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("health_error_rate_threshold must be in (0, 1]")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Default settings instance; create_app() accepts an explicit one
settings = Settings()
