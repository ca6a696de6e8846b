"""
DAG 调度器（DAGScheduler）

驱动已验证的 Plan 执行到结束：
1. 执行前总是先验证，验证失败直接抛出 PlanValidationError，不执行任何步骤
2. 串行策略：按拓扑顺序逐个执行
3. 波次策略：每一波并发启动所有就绪步骤，整波结束后重新计算就绪集合
4. 失败处理：步骤错误总是记录；continue_on_error 只决定是否中止其余工作
5. 截止时间：ExecutionOptions.timeout（未设置时取全局 TimeoutConfig.plan_timeout）
   在每个步骤启动前检查，并约束步骤每次尝试的工作时长与重试
6. 部分重跑：从指定步骤开始重置下游步骤后重新执行

设计原则：
- 每次执行的跟踪状态都属于该次调用，调度器实例可重入
- “进入终态”（用于调度）与 “执行成功”（用于汇报）严格区分
- 事件回调异常只记录日志，不影响调度
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, List, Optional, Set

from core.planning.errors import PlanTimeoutError, PlanValidationError, StepError
from core.planning.graph import DependencyGraph, build_graph, get_descendants, topological_sort
from core.planning.protocol import (
    ExecutionOptions,
    ExecutionResult,
    Plan,
    PlanContext,
    PlanStatus,
    Step,
    StepStatus,
    generate_id,
)
from core.planning.step_runner import HandlerLike, StepRunner
from core.planning.validators import PlanValidator
from infra.resilience import Deadline, get_timeout_config
from logger import clear_run_context, get_logger, set_run_context

logger = get_logger(__name__)


# ===================
# 回调类型定义
# ===================

OnStepStart = Callable[[Step], None]
OnStepEnd = Callable[[Step, Optional[StepError]], None]
OnWaveStart = Callable[[int, List[Step]], None]
OnWaveEnd = Callable[[int, List[Step]], None]


@dataclass
class _Callbacks:
    on_step_start: Optional[OnStepStart] = None
    on_step_end: Optional[OnStepEnd] = None
    on_wave_start: Optional[OnWaveStart] = None
    on_wave_end: Optional[OnWaveEnd] = None


@dataclass
class _RunState:
    """单次执行的全部可变状态"""

    plan: Plan
    graph: DependencyGraph
    options: ExecutionOptions
    context: PlanContext
    result: ExecutionResult
    deadline: Deadline
    callbacks: _Callbacks
    settled: Set[str] = field(default_factory=set)
    executing: Set[str] = field(default_factory=set)


# ===================
# DAG 调度器
# ===================


class DAGScheduler:
    """
    DAG 调度器

    使用方式：
        scheduler = DAGScheduler(runner=StepRunner(default_handler=my_handler))

        result = await scheduler.execute(
            plan,
            ExecutionOptions(parallel=True, continue_on_error=True, max_concurrency=4),
            on_step_start=lambda step: print(f"开始: {step.id}"),
        )

        if not result.success:
            print(result.failed_steps, result.errors)
    """

    def __init__(
        self,
        runner: Optional[StepRunner] = None,
        validator: Optional[PlanValidator] = None,
        max_concurrency: Optional[int] = None,
    ):
        """
        初始化 DAG 调度器

        Args:
            runner: 步骤执行器
            validator: Plan 验证器
            max_concurrency: 默认的波次内最大并发数（ExecutionOptions 未指定时使用）
        """
        self.runner = runner or StepRunner()
        self.validator = validator or PlanValidator()
        self.max_concurrency = max_concurrency

    # ===================
    # 执行
    # ===================

    async def execute(
        self,
        plan: Plan,
        options: Optional[ExecutionOptions] = None,
        context: Optional[PlanContext] = None,
        on_step_start: Optional[OnStepStart] = None,
        on_step_end: Optional[OnStepEnd] = None,
        on_wave_start: Optional[OnWaveStart] = None,
        on_wave_end: Optional[OnWaveEnd] = None,
    ) -> ExecutionResult:
        """
        执行 Plan

        执行流程：
        1. 验证 Plan（失败抛出 PlanValidationError）
        2. 标记 executing，记录开始时间
        3. 按选项选择串行或波次策略
        4. 记录结束时间和最终状态

        Args:
            plan: 待执行的 Plan（步骤状态原地更新）
            options: 执行选项
            context: 执行上下文，默认新建
            on_step_start: 步骤开始回调
            on_step_end: 步骤结束回调（成功时 error 为 None）
            on_wave_start: 波次开始回调
            on_wave_end: 波次结束回调

        Returns:
            ExecutionResult: 本次执行结果

        Raises:
            PlanValidationError: Plan 未通过验证
            CyclicGraphError: 串行策略下无法得到拓扑顺序
        """
        options = options or ExecutionOptions()
        if options.max_concurrency is None and self.max_concurrency is not None:
            options = replace(options, max_concurrency=self.max_concurrency)

        report = self.validator.validate(plan)
        if not report.valid:
            raise PlanValidationError(
                f"Plan 验证失败: {len(report.errors)} 个错误: {'; '.join(report.errors)}",
                errors=report.errors,
            )

        set_run_context(plan_id=plan.id, run_id=generate_id("run"))

        plan_timeout = options.timeout if options.timeout is not None else get_timeout_config().plan_timeout
        previous_status = plan.status
        plan.status = PlanStatus.EXECUTING
        plan.execution_start_time = datetime.now()
        plan.execution_end_time = None

        run = _RunState(
            plan=plan,
            graph=build_graph(plan.steps),
            options=options,
            context=context or PlanContext(plan=plan),
            result=ExecutionResult(plan_id=plan.id, dry_run=options.dry_run),
            deadline=Deadline(plan_timeout),
            callbacks=_Callbacks(on_step_start, on_step_end, on_wave_start, on_wave_end),
        )

        logger.info(
            f"🚀 开始执行 Plan {plan.id}: {len(run.graph)} 个步骤, "
            f"mode={'waves' if options.parallel else 'sequential'}, "
            f"continue_on_error={options.continue_on_error}, dry_run={options.dry_run}"
        )

        try:
            try:
                self._settle_terminal_steps(run)
                if options.parallel:
                    await self._execute_waves(run)
                else:
                    await self._execute_sequential(run)
            except (StepError, PlanTimeoutError) as e:
                run.result.aborted = True
                run.result.abort_reason = str(e)
                logger.error(f"🛑 Plan {plan.id} 执行中止: {e}")
        finally:
            self._finish(run, previous_status)
            clear_run_context()

        return run.result

    async def _execute_sequential(self, run: _RunState) -> None:
        """按拓扑顺序逐个执行"""
        order = run.graph.topological_order
        if order is None:
            order = topological_sort(run.graph)

        for step_id in order:
            if step_id in run.settled:
                continue

            error = await self._run_step(run, run.graph.nodes[step_id])
            if error is not None and not run.options.continue_on_error:
                raise error

    async def _execute_waves(self, run: _RunState) -> None:
        """
        波次执行

        就绪 = 未进入终态、未在执行、全部依赖已进入终态。
        失败步骤同样进入终态集合，下游步骤仍可被评估为就绪。
        """
        limit = run.options.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None
        wave_index = 0

        while len(run.settled) < len(run.graph):
            ready = [
                step
                for step_id, step in run.graph.nodes.items()
                if step_id not in run.settled
                and step_id not in run.executing
                and all(dep in run.settled for dep in step.dependencies)
            ]

            # 整波结束后 executing 为空，此时没有就绪步骤说明无法继续推进
            if not ready:
                remaining = [s for s in run.graph.nodes if s not in run.settled]
                run.result.stalled = True
                logger.warning(f"⚠️ 调度无法继续，剩余步骤 {remaining}")
                return

            self._check_deadline(run)

            run.result.waves.append([step.id for step in ready])
            logger.info(f"🌊 第 {wave_index + 1} 波: {[step.id for step in ready]}")
            self._notify(run.callbacks.on_wave_start, wave_index, ready)

            outcomes = await asyncio.gather(
                *(self._run_step_bounded(run, step, semaphore) for step in ready),
                return_exceptions=True,
            )

            self._notify(run.callbacks.on_wave_end, wave_index, ready)
            wave_index += 1

            for outcome in outcomes:
                if isinstance(outcome, BaseException) and not isinstance(outcome, StepError):
                    raise outcome

            failures = [outcome for outcome in outcomes if isinstance(outcome, StepError)]
            if failures and not run.options.continue_on_error:
                raise failures[0]

    async def _run_step_bounded(
        self,
        run: _RunState,
        step: Step,
        semaphore: Optional[asyncio.Semaphore],
    ) -> Optional[StepError]:
        if semaphore is None:
            return await self._run_step(run, step)
        async with semaphore:
            return await self._run_step(run, step)

    async def _run_step(self, run: _RunState, step: Step) -> Optional[StepError]:
        """
        执行单个步骤并记录结果

        Returns:
            失败时返回 StepError，成功返回 None

        Raises:
            PlanTimeoutError: 启动前已超过截止时间
        """
        self._check_deadline(run)

        result = run.result
        run.executing.add(step.id)
        self._notify(run.callbacks.on_step_start, step)

        error: Optional[StepError] = None
        try:
            await self.runner.run(
                step,
                run.options,
                run.context,
                timeout=run.options.step_timeout,
                deadline=run.deadline,
            )
        except StepError as e:
            error = e
            result.failed_steps.append(step.id)
            result.errors[step.id] = e
        else:
            if run.options.dry_run:
                result.skipped_steps.append(step.id)
            else:
                result.completed_steps.append(step.id)
                result.results[step.id] = step.result
        finally:
            run.executing.discard(step.id)

        run.settled.add(step.id)
        result.settled_steps.append(step.id)
        self._notify(run.callbacks.on_step_end, step, error)
        return error

    # ===================
    # 内部方法
    # ===================

    def _settle_terminal_steps(self, run: _RunState) -> None:
        """执行开始时已处于终态的步骤保持原状，直接视为已进入终态"""
        for step in run.graph.nodes.values():
            if step.is_terminal:
                logger.info(f"⏭️ 步骤 {step.id} 已处于终态 {step.status.value}，本次不执行")
                run.settled.add(step.id)
                run.result.settled_steps.append(step.id)
                run.result.preserved_steps.append(step.id)

    def _check_deadline(self, run: _RunState) -> None:
        if run.deadline.expired:
            raise PlanTimeoutError(run.plan.id, run.deadline.timeout)

    def _finish(self, run: _RunState, previous_status: PlanStatus) -> None:
        """标记未执行的步骤，写入结束时间与最终状态"""
        plan, result = run.plan, run.result

        if not run.options.dry_run:
            reason = "依赖无法满足，未执行" if result.stalled else "执行中止，未执行"
            for step in run.graph.nodes.values():
                if step.status == StepStatus.PENDING:
                    step.skip(reason)
                    result.skipped_steps.append(step.id)

        plan.execution_end_time = datetime.now()
        if run.options.dry_run:
            plan.status = previous_status
        else:
            plan.status = PlanStatus.COMPLETED if plan.is_completed else PlanStatus.FAILED
        plan.touch()

        result.duration_ms = int(
            (plan.execution_end_time - plan.execution_start_time).total_seconds() * 1000
        )
        result.success = (
            not result.aborted
            and not result.stalled
            and not result.failed_steps
            and (run.options.dry_run or plan.status == PlanStatus.COMPLETED)
        )

        log = logger.info if result.success else logger.warning
        log(
            f"{'✅' if result.success else '❌'} Plan {plan.id} 执行结束: "
            f"status={plan.status.value}, "
            f"completed={len(result.completed_steps)}, "
            f"failed={len(result.failed_steps)}, "
            f"skipped={len(result.skipped_steps)}, "
            f"duration={result.duration_ms}ms"
        )

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"⚠️ {getattr(callback, '__name__', 'callback')} 回调异常: {e}")

    # ===================
    # 部分重跑
    # ===================

    def get_affected_steps(self, plan: Plan, from_step_id: str) -> List[Step]:
        """
        获取需要重新执行的步骤：指定步骤本身以及直接或间接依赖它的步骤

        Args:
            plan: Plan 对象
            from_step_id: 起始步骤 ID

        Returns:
            List[Step]: 受影响的步骤（按 Plan 中的顺序）
        """
        graph = build_graph(plan.steps)
        if from_step_id not in graph:
            logger.warning(f"⚠️ 步骤 {from_step_id} 不存在于 Plan 中")
            return []

        affected = {from_step_id, *get_descendants(graph, from_step_id)}
        return [step for step in plan.steps if step.id in affected]

    def reset_steps(self, plan: Plan, from_step_id: str) -> List[Step]:
        """
        将指定步骤及其下游步骤显式回退到 pending

        Returns:
            List[Step]: 被重置的步骤
        """
        affected = self.get_affected_steps(plan, from_step_id)
        for step in affected:
            step.reset()

        if affected:
            plan.touch()
            logger.info(f"🔄 已重置 {len(affected)} 个步骤，准备从 {from_step_id} 开始重新执行")

        return affected

    async def execute_partial(
        self,
        plan: Plan,
        from_step_id: str,
        options: Optional[ExecutionOptions] = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        """
        从指定步骤开始重新执行

        已成功且不受影响的步骤保持完成状态，不会重复执行。
        """
        logger.info(f"🔄 部分重跑: 从步骤 {from_step_id} 开始")
        self.reset_steps(plan, from_step_id)
        return await self.execute(plan, options, **kwargs)


async def execute_plan(
    plan: Plan,
    options: Optional[ExecutionOptions] = None,
    handler: Optional[HandlerLike] = None,
    **kwargs: Any,
) -> ExecutionResult:
    """
    便捷函数：用默认组件执行 Plan

    Args:
        plan: 待执行的 Plan
        options: 执行选项
        handler: 全局 StepHandler，None 时按预估耗时模拟执行
        **kwargs: 透传给 DAGScheduler.execute 的参数（context、回调等）
    """
    scheduler = DAGScheduler(runner=StepRunner(default_handler=handler))
    return await scheduler.execute(plan, options, **kwargs)
