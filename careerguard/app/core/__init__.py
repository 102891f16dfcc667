"""Core utilities for the throttling layer."""

from careerguard.app.core.config import Settings, StrategyOverride, settings
from careerguard.app.core.logging import get_log_context, get_logger, setup_logging
from careerguard.app.core.retry import RetryPolicy, call_with_retry

__all__ = [
    "Settings",
    "StrategyOverride",
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "RetryPolicy",
    "call_with_retry",
]
