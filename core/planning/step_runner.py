"""
步骤执行器（StepRunner）

执行单个步骤：
1. 前置条件求值
2. 工作单元（调用方 StepHandler，缺省时按预估耗时模拟等待）
3. 后置条件求值
4. 更新步骤状态、耗时、结果

工作单元受超时约束，并按 ExecutionOptions.max_retries 指数退避重试；
前置/后置条件失败不重试。同步 handler 在线程中执行，超时后调用方不再等待，
但线程本身会运行到结束。任何阶段的错误都会记录到步骤上并重新抛出，
StepRunner 从不吞掉异常。
"""

import asyncio
import inspect
import time
from typing import Any, Callable, Dict, Optional, Union

from core.planning.errors import (
    PostconditionFailedError,
    PreconditionFailedError,
    StepExecutionError,
    StepTimeoutError,
)
from core.planning.protocol import (
    ConditionEvaluator,
    ExecutionOptions,
    PlanContext,
    Step,
    StepHandler,
    StepKind,
)
from infra.resilience import Deadline, get_timeout_config, retry_async, with_timeout
from logger import get_logger

logger = get_logger(__name__)

# 无 handler 且步骤未给出预估耗时时的模拟执行时长（秒）
DEFAULT_SIMULATED_DURATION = 0.1

# StepHandler 对象或 (step, context) -> result 形式的普通/异步函数
HandlerLike = Union[StepHandler, Callable[[Step, PlanContext], Any]]


class SimpleConditionEvaluator:
    """
    默认条件求值器

    支持的表达式：
    - "true" / "false"
    - "not <expr>"
    - "context.<key>"：context.values[key] 的真值
    - "step.<id>.<status>"：指定步骤当前是否处于该状态，如 step.fetch.completed
    - 其他表达式一律视为满足
    """

    def evaluate(self, condition: str, context: PlanContext) -> bool:
        expr = condition.strip()
        lowered = expr.lower()

        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered.startswith("not "):
            return not self.evaluate(expr[4:], context)
        if expr.startswith("context."):
            return bool(context.values.get(expr[len("context."):]))
        if expr.startswith("step."):
            step_id, _, status = expr[len("step."):].rpartition(".")
            step = context.plan.get_step(step_id)
            return step is not None and step.status.value == status

        return True


class StepRunner:
    """
    步骤执行器

    使用方式：
        runner = StepRunner(default_handler=my_handler)
        runner.register_handler(StepKind.CONDITIONAL, branch_handler)

        await runner.run(step, options, context)
    """

    def __init__(
        self,
        handlers: Optional[Dict[StepKind, HandlerLike]] = None,
        default_handler: Optional[HandlerLike] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        simulated_step_duration: float = DEFAULT_SIMULATED_DURATION,
    ):
        """
        Args:
            handlers: 按步骤类型注册的 handler
            default_handler: 未按类型注册时使用的全局 handler
            condition_evaluator: 条件求值器，默认 SimpleConditionEvaluator
            simulated_step_duration: 无 handler 且无预估耗时时的模拟时长（秒）
        """
        self.handlers: Dict[StepKind, HandlerLike] = dict(handlers or {})
        self.default_handler = default_handler
        self.condition_evaluator = condition_evaluator or SimpleConditionEvaluator()
        self.simulated_step_duration = simulated_step_duration

    def register_handler(self, kind: StepKind, handler: HandlerLike) -> None:
        """为某一步骤类型注册 handler"""
        self.handlers[StepKind(kind)] = handler

    def resolve_handler(self, step: Step) -> Optional[HandlerLike]:
        """按 类型 handler -> 全局 handler 的顺序选择，都没有时返回 None（模拟执行）"""
        return self.handlers.get(step.kind, self.default_handler)

    async def run(
        self,
        step: Step,
        options: ExecutionOptions,
        context: PlanContext,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> Any:
        """
        执行单个步骤

        Args:
            step: 待执行的步骤（原地更新状态）
            options: 执行选项
            context: 执行上下文
            timeout: 工作单元超时（秒），None 时使用全局 TimeoutConfig.step_timeout
            deadline: 整次执行的截止时间，每次尝试的超时都不超过剩余时间，
                剩余时间不足以退避时不再重试

        Returns:
            handler 返回的结果；dry_run 时返回 None 且不修改步骤

        Raises:
            StepError: 前置条件、工作单元或后置条件失败
        """
        if options.dry_run:
            logger.info(f"[DRY RUN] 将执行步骤 {step.id}: {step.label}")
            return None

        logger.info(f"🔄 执行步骤 {step.id}: {step.label}")
        step.start()
        start = time.perf_counter()

        try:
            self._check_conditions(step, step.preconditions, context, PreconditionFailedError)
            result = await self._perform_work(step, options, context, timeout, deadline)
            self._check_conditions(step, step.postconditions, context, PostconditionFailedError)
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            step.fail(str(e), duration_ms)
            logger.error(f"❌ 步骤 {step.id} 失败（{duration_ms}ms）: {e}")
            raise

        duration_ms = int((time.perf_counter() - start) * 1000)
        step.complete(result, duration_ms)
        context.results[step.id] = result
        logger.info(f"✅ 步骤 {step.id} 完成（{duration_ms}ms）")
        return result

    # ===================
    # 内部方法
    # ===================

    def _check_conditions(self, step, conditions, context, error_cls) -> None:
        """按顺序求值条件，第一个不满足的条件抛出 error_cls"""
        for condition in conditions:
            try:
                satisfied = self.condition_evaluator.evaluate(condition, context)
            except Exception as e:
                raise error_cls(step.id, condition) from e
            if not satisfied:
                raise error_cls(step.id, condition)

    async def _perform_work(
        self,
        step: Step,
        options: ExecutionOptions,
        context: PlanContext,
        timeout: Optional[float],
        deadline: Optional[Deadline],
    ) -> Any:
        handler = self.resolve_handler(step)
        step_timeout = timeout if timeout is not None else get_timeout_config().step_timeout

        async def attempt() -> Any:
            # 每次尝试都按当前剩余时间重新收紧超时
            limit = deadline.bound(step_timeout) if deadline is not None else step_timeout
            try:
                return await with_timeout(limit)(self._call_handler)(handler, step, context)
            except TimeoutError as e:
                raise StepTimeoutError(step.id, limit) from e

        def on_retry(attempt_no: int, error: BaseException) -> None:
            step.retry_count = attempt_no

        return await retry_async(
            attempt,
            max_retries=options.max_retries,
            base_delay=options.retry_base_delay,
            retryable_errors=(StepExecutionError, StepTimeoutError),
            on_retry=on_retry,
            deadline=deadline,
        )

    async def _call_handler(self, handler: Optional[HandlerLike], step: Step, context: PlanContext) -> Any:
        if handler is None:
            duration = (
                step.estimated_duration
                if step.estimated_duration is not None
                else self.simulated_step_duration
            )
            await asyncio.sleep(duration)
            return {"success": True, "simulated": True}

        fn = handler.handle if isinstance(handler, StepHandler) else handler
        try:
            if _is_async(fn):
                return await fn(step, context)
            # 同步 handler 放到线程中执行，不阻塞同一波次的其他步骤，超时也能生效
            outcome = await asyncio.to_thread(fn, step, context)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return outcome
        except Exception as e:
            raise StepExecutionError(step.id, e) from e


def _is_async(fn: Callable[..., Any]) -> bool:
    """协程函数，或 __call__ 是协程函数的可调用对象"""
    return inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None))
