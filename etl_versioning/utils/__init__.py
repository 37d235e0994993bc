"""
유틸리티 모듈
"""

from .retry import (
    RetryConfig,
    RetryStrategy,
    calculate_delay,
    retry_async_operation,
    storage_retry_config,
    STORAGE_RETRY_CONFIG,
)

__all__ = [
    "RetryConfig",
    "RetryStrategy",
    "calculate_delay",
    "retry_async_operation",
    "storage_retry_config",
    "STORAGE_RETRY_CONFIG",
]
