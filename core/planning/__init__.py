"""
plangraph 规划模块

1. Plan 数据协议：Step / Constraint / Plan 及执行选项、结果
2. 依赖图分析：构建、环检测、拓扑排序、关键路径
3. Plan 验证器：结构、依赖与约束验证
4. DAG 调度器：串行或波次并发执行，支持部分重跑
5. 步骤执行器：前置条件 -> 工作单元 -> 后置条件
6. 存储与导入导出、Plan 管理器

使用方式：
    from core.planning import DAGScheduler, ExecutionOptions, Plan, Step

    plan = Plan(
        objective="分析数据并生成报告",
        steps=[
            Step(id="load", name="加载数据", estimated_duration=1),
            Step(id="clean", name="清洗数据", dependencies=["load"]),
            Step(id="report", name="生成报告", dependencies=["clean"]),
        ],
    )

    scheduler = DAGScheduler(runner=StepRunner(default_handler=my_handler))
    result = await scheduler.execute(plan, ExecutionOptions(parallel=True))
"""

from core.planning.dag_scheduler import DAGScheduler, execute_plan
from core.planning.errors import (
    CyclicGraphError,
    PlanningError,
    PlanNotFoundError,
    PlanTimeoutError,
    PlanValidationError,
    PostconditionFailedError,
    PreconditionFailedError,
    StepError,
    StepExecutionError,
    StepNotFoundError,
    StepTimeoutError,
    UnsupportedFormatError,
)
from core.planning.exporters import export_plan, import_plan, render_execution_result
from core.planning.graph import (
    CriticalPath,
    Cycle,
    DependencyGraph,
    build_graph,
    detect_cycles,
    find_critical_path,
    topological_sort,
)
from core.planning.manager import PlanManager
from core.planning.protocol import (
    Constraint,
    ConstraintKind,
    ExecutionOptions,
    ExecutionResult,
    Plan,
    PlanContext,
    PlanStatus,
    Step,
    StepHandler,
    StepKind,
    StepStatus,
    ValidationResult,
)
from core.planning.step_runner import SimpleConditionEvaluator, StepRunner
from core.planning.storage import PlanStorage
from core.planning.validators import PlanValidator

__all__ = [
    # 数据协议
    "Plan",
    "Step",
    "Constraint",
    "ConstraintKind",
    "PlanStatus",
    "StepStatus",
    "StepKind",
    "StepHandler",
    "PlanContext",
    "ExecutionOptions",
    "ExecutionResult",
    "ValidationResult",
    # 依赖图
    "DependencyGraph",
    "Cycle",
    "CriticalPath",
    "build_graph",
    "detect_cycles",
    "topological_sort",
    "find_critical_path",
    # 验证
    "PlanValidator",
    # 调度与执行
    "DAGScheduler",
    "StepRunner",
    "SimpleConditionEvaluator",
    "execute_plan",
    # 存储、导入导出、管理
    "PlanStorage",
    "PlanManager",
    "export_plan",
    "import_plan",
    "render_execution_result",
    # 异常
    "PlanningError",
    "PlanValidationError",
    "CyclicGraphError",
    "PlanTimeoutError",
    "PlanNotFoundError",
    "StepNotFoundError",
    "UnsupportedFormatError",
    "StepError",
    "PreconditionFailedError",
    "PostconditionFailedError",
    "StepExecutionError",
    "StepTimeoutError",
]
