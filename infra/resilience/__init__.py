"""
容错与弹性模块

提供步骤执行使用的超时与重试机制
"""

from infra.resilience.retry import (
    RetryConfig,
    get_retry_config,
    retry_async,
    set_retry_config,
    with_retry,
)
from infra.resilience.timeout import (
    Deadline,
    TimeoutConfig,
    get_timeout_config,
    set_timeout_config,
    with_timeout,
)

__all__ = [
    "with_timeout",
    "Deadline",
    "TimeoutConfig",
    "get_timeout_config",
    "set_timeout_config",
    "with_retry",
    "retry_async",
    "RetryConfig",
    "get_retry_config",
    "set_retry_config",
]
