"""
超时控制模块

提供统一的异步超时控制装饰器和截止时间计算
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Callable, Optional

from logger import get_logger

logger = get_logger(__name__)


@dataclass
class TimeoutConfig:
    """超时配置（None 表示不限制）"""
    step_timeout: Optional[float] = None     # 单步骤工作单元超时（秒）
    plan_timeout: Optional[float] = None     # 整次 Plan 执行超时（秒）


# 全局超时配置实例
_timeout_config = TimeoutConfig()


def get_timeout_config() -> TimeoutConfig:
    """获取全局超时配置"""
    return _timeout_config


def set_timeout_config(config: TimeoutConfig):
    """设置全局超时配置"""
    global _timeout_config
    _timeout_config = config
    logger.info(f"✅ 超时配置已更新: step={config.step_timeout}s, plan={config.plan_timeout}s")


def with_timeout(timeout: Optional[float] = None):
    """
    超时装饰器

    Args:
        timeout: 超时时间（秒），为 None 时从全局配置读取 step_timeout，
            仍为 None 则不限制

    Returns:
        装饰器函数，超时抛出内置 TimeoutError

    使用示例:
        @with_timeout(timeout=60)
        async def run_handler():
            ...
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            actual_timeout = timeout if timeout is not None else get_timeout_config().step_timeout
            if actual_timeout is None:
                return await func(*args, **kwargs)

            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=actual_timeout)
            except asyncio.TimeoutError:
                func_name = getattr(func, "__name__", type(func).__name__)
                logger.error(f"⏰ {func_name} 超时 ({actual_timeout}s)")
                raise TimeoutError(f"{func_name} 执行超时 ({actual_timeout}s)")

        return wrapper
    return decorator


class Deadline:
    """
    截止时间

    使用事件循环时钟记录一个绝对截止点，供调度器在每个步骤开始前检查。

    使用示例:
        deadline = Deadline(30)
        if deadline.expired:
            ...
        step_timeout = deadline.bound(10)  # min(10, 剩余时间)
    """

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self._expires_at = (
            asyncio.get_running_loop().time() + timeout if timeout is not None else None
        )

    @property
    def remaining(self) -> Optional[float]:
        """剩余秒数，不限制时为 None"""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - asyncio.get_running_loop().time())

    @property
    def expired(self) -> bool:
        remaining = self.remaining
        return remaining is not None and remaining <= 0

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """返回 timeout 与剩余时间中较小者"""
        remaining = self.remaining
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
