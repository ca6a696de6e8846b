"""
重试机制模块

步骤工作单元失败后按指数退避重试。全局默认值来自 RetryConfig，
调用方传入的参数逐项覆盖。
"""

import asyncio
import functools
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from infra.resilience.timeout import Deadline
from logger import get_logger

logger = get_logger(__name__)

RetryCallback = Callable[[int, BaseException], None]


@dataclass
class RetryConfig:
    """重试配置"""
    max_retries: int = 0                    # 0 = 不重试
    base_delay: float = 0.5                 # 秒
    max_delay: float = 30.0
    exponential_base: float = 2.0
    retryable_errors: Tuple[Type[BaseException], ...] = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )

    def delay_for(self, retry_index: int) -> float:
        """第 retry_index 次重试（从 0 开始）前的等待时间，不超过 max_delay"""
        return min(self.base_delay * self.exponential_base ** retry_index, self.max_delay)

    def merged(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        retryable_errors: Optional[Tuple[Type[BaseException], ...]] = None,
    ) -> "RetryConfig":
        overrides = {
            "max_retries": max_retries,
            "base_delay": base_delay,
            "retryable_errors": retryable_errors,
        }
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


_retry_config = RetryConfig()


def get_retry_config() -> RetryConfig:
    return _retry_config


def set_retry_config(config: RetryConfig):
    """替换全局重试配置"""
    global _retry_config
    _retry_config = config
    logger.info(f"🔁 重试配置: max_retries={config.max_retries}, base_delay={config.base_delay}s")


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    retryable_errors: Optional[Tuple[Type[BaseException], ...]] = None,
    on_retry: Optional[RetryCallback] = None,
    deadline: Optional[Deadline] = None,
    **kwargs
) -> Any:
    """
    执行 func，遇到可重试异常时退避后重来

    不可重试的异常立即抛出；重试耗尽后抛出最后一次的异常。
    on_retry 在每次等待前以 (第几次重试, 异常) 调用。
    给出 deadline 时，剩余时间不超过退避时长就不再重试，直接抛出最后一次的异常。

    使用示例:
        result = await retry_async(handler.handle, step, context, max_retries=3)
    """
    policy = get_retry_config().merged(max_retries, base_delay, retryable_errors)
    label = getattr(func, "__name__", type(func).__name__)
    retry_index = 0

    while True:
        try:
            result = await func(*args, **kwargs)
        except policy.retryable_errors as e:
            if retry_index >= policy.max_retries:
                if policy.max_retries:
                    logger.error(f"❌ {label} 重试 {policy.max_retries} 次后仍失败: {e}")
                raise

            delay = policy.delay_for(retry_index)
            remaining = deadline.remaining if deadline is not None else None
            if remaining is not None and remaining <= delay:
                logger.warning(f"⏰ {label} 失败且截止时间不足以再次重试: {e}")
                raise
            retry_index += 1
            logger.warning(f"⚠️ {label} 失败，{delay:.2f}s 后第 {retry_index} 次重试: {e}")
            if on_retry:
                on_retry(retry_index, e)
            await asyncio.sleep(delay)
        else:
            if retry_index:
                logger.info(f"✅ {label} 第 {retry_index} 次重试成功")
            return result


def with_retry(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    retryable_errors: Optional[Tuple[Type[BaseException], ...]] = None,
    on_retry: Optional[RetryCallback] = None,
):
    """
    retry_async 的装饰器形式

        @with_retry(max_retries=3, base_delay=1.0)
        async def call_handler():
            ...
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(
                func,
                *args,
                max_retries=max_retries,
                base_delay=base_delay,
                retryable_errors=retryable_errors,
                on_retry=on_retry,
                **kwargs,
            )
        return wrapper
    return decorator
