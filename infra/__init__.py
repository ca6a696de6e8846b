"""
Infrastructure 层 - 基础设施服务

┌─────────────────────────────────────────────────────────────┐
│                        infra/                               │
├─────────────────────────────────────────────────────────────┤
│  resilience/  │ 弹性机制 (重试/超时/截止时间)                 │
│               │ 步骤工作单元保护                              │
└─────────────────────────────────────────────────────────────┘
"""

from infra.resilience import (
    Deadline,
    RetryConfig,
    TimeoutConfig,
    retry_async,
    with_retry,
    with_timeout,
)

__all__ = [
    "Deadline",
    "RetryConfig",
    "TimeoutConfig",
    "retry_async",
    "with_retry",
    "with_timeout",
]
