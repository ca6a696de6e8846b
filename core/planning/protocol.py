"""
Plan 数据协议（Protocol）

定义规划引擎的统一数据结构：
1. Step / Constraint / Plan：pydantic 模型，可持久化、可导入导出
2. ExecutionOptions / PlanContext：单次执行的配置与上下文
3. ExecutionResult / ValidationResult：执行与验证报告（每次调用新建）
4. StepHandler / ConditionEvaluator / ConstraintValidator：调用方注入的策略接口

设计原则：
- 步骤列表的顺序仅用于展示，执行顺序永远由依赖图推导
- 依赖图不持久化，每次验证或执行时重新构建
- 步骤进入终态后只能通过显式 reset 回到 pending
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, field_serializer
from pydantic_core import to_jsonable_python


def generate_id(prefix: str) -> str:
    """生成带前缀的唯一 ID，如 step_1f3a9c2b"""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class PlanStatus(str, Enum):
    """Plan 状态"""

    DRAFT = "draft"  # 草稿
    VALIDATED = "validated"  # 已验证
    EXECUTING = "executing"  # 执行中
    COMPLETED = "completed"  # 全部步骤成功
    FAILED = "failed"  # 存在未成功的步骤


class StepStatus(str, Enum):
    """步骤状态"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})

_STATUS_ICONS = {
    StepStatus.PENDING: "⏳",
    StepStatus.IN_PROGRESS: "🔄",
    StepStatus.COMPLETED: "✅",
    StepStatus.FAILED: "❌",
    StepStatus.SKIPPED: "⏭️",
}


class StepKind(str, Enum):
    """步骤类型（仅作为调度/展示提示，引擎不强制）"""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"


class ConstraintKind(str, Enum):
    """约束类型"""

    TIME = "time"
    RESOURCE = "resource"
    DEPENDENCY = "dependency"
    CUSTOM = "custom"


# ===================
# 策略接口
# ===================


@runtime_checkable
class StepHandler(Protocol):
    """
    步骤工作单元

    handle 可以是普通函数或协程；返回值作为步骤结果，抛出异常表示失败。
    """

    def handle(self, step: "Step", context: "PlanContext") -> Any:
        ...


@runtime_checkable
class ConditionEvaluator(Protocol):
    """前置/后置条件求值器"""

    def evaluate(self, condition: str, context: "PlanContext") -> bool:
        ...


# 约束验证器：接收整个 Plan，返回是否满足
ConstraintValidator = Callable[["Plan"], bool]


# ===================
# 数据模型
# ===================


class Step(BaseModel):
    """
    Plan 步骤

    Attributes:
        id: 步骤唯一标识（Plan 内唯一）
        name: 步骤名称
        description: 步骤描述
        kind: 步骤类型提示
        dependencies: 依赖的步骤ID列表，依赖全部进入终态后才可开始
        preconditions: 执行前按顺序求值的条件表达式
        postconditions: 执行后按顺序求值的条件表达式
        estimated_duration: 预估耗时（秒），用于关键路径分析和无 handler 时的模拟执行
        status: 步骤状态
        actual_duration_ms: 实际耗时（毫秒）
        result: 执行结果
        error: 错误信息
        retry_count: 重试次数
        started_at: 开始时间
        completed_at: 进入终态的时间
        metadata: 额外元数据
    """

    id: str = Field(default_factory=lambda: generate_id("step"), description="步骤唯一标识")
    name: str = Field("", description="步骤名称")
    description: str = Field("", description="步骤描述")
    kind: StepKind = Field(default=StepKind.SEQUENTIAL, description="步骤类型")

    dependencies: List[str] = Field(default_factory=list, description="依赖的步骤ID列表")
    preconditions: List[str] = Field(default_factory=list, description="前置条件")
    postconditions: List[str] = Field(default_factory=list, description="后置条件")
    estimated_duration: Optional[float] = Field(None, ge=0, description="预估耗时（秒）")

    status: StepStatus = Field(default=StepStatus.PENDING, description="步骤状态")
    actual_duration_ms: Optional[int] = Field(None, description="实际耗时（毫秒）")
    result: Any = Field(None, description="执行结果")
    error: Optional[str] = Field(None, description="错误信息")
    retry_count: int = Field(0, description="重试次数")
    started_at: Optional[datetime] = Field(None, description="开始时间")
    completed_at: Optional[datetime] = Field(None, description="完成时间")

    metadata: Dict[str, Any] = Field(default_factory=dict, description="额外元数据")

    @field_serializer("result", when_used="json")
    def serialize_result(self, value: Any) -> Any:
        # handler 可以返回任意对象，无法转成 JSON 的部分按 str 保存
        return to_jsonable_python(value, fallback=str)

    @property
    def label(self) -> str:
        """用于日志和展示的名称"""
        return self.name or self.id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    def start(self) -> None:
        """开始执行步骤"""
        self.status = StepStatus.IN_PROGRESS
        self.started_at = datetime.now()
        self.completed_at = None
        self.error = None

    def complete(self, result: Any, duration_ms: int) -> None:
        """完成步骤"""
        self.status = StepStatus.COMPLETED
        self.result = result
        self.actual_duration_ms = duration_ms
        self.completed_at = datetime.now()

    def fail(self, error: str, duration_ms: int) -> None:
        """步骤失败"""
        self.status = StepStatus.FAILED
        self.error = error
        self.actual_duration_ms = duration_ms
        self.completed_at = datetime.now()

    def skip(self, reason: str) -> None:
        """跳过步骤（执行中止或无法调度时使用）"""
        self.status = StepStatus.SKIPPED
        self.error = reason
        self.completed_at = datetime.now()

    def reset(self) -> None:
        """显式回退到 pending，清空执行痕迹"""
        self.status = StepStatus.PENDING
        self.result = None
        self.error = None
        self.actual_duration_ms = None
        self.retry_count = 0
        self.started_at = None
        self.completed_at = None


class Constraint(BaseModel):
    """
    Plan 级约束

    validator 为调用方提供的谓词，验证时以整个 Plan 调用；
    不参与序列化，导入后的约束只保留描述信息。
    """

    kind: ConstraintKind = Field(default=ConstraintKind.CUSTOM, description="约束类型")
    description: str = Field(..., description="约束描述")
    value: Any = Field(None, description="约束值")
    validator: Optional[ConstraintValidator] = Field(None, exclude=True, description="约束验证器")


class Plan(BaseModel):
    """
    Plan 协议（统一数据结构）

    Attributes:
        id: Plan 唯一标识
        name: Plan 名称
        objective: 目标描述
        constraints: Plan 级约束
        steps: 步骤列表（顺序仅用于展示）
        status: Plan 状态
        execution_start_time: 最近一次执行开始时间
        execution_end_time: 最近一次执行结束时间
        created_at: 创建时间
        updated_at: 更新时间
        metadata: 额外元数据
    """

    id: str = Field(default_factory=lambda: generate_id("plan"))
    name: str = Field("", description="Plan 名称")
    objective: str = Field("", description="目标描述")
    constraints: List[Constraint] = Field(default_factory=list, description="约束列表")
    steps: List[Step] = Field(default_factory=list, description="步骤列表")
    status: PlanStatus = Field(default=PlanStatus.DRAFT, description="Plan状态")
    execution_start_time: Optional[datetime] = Field(None, description="执行开始时间")
    execution_end_time: Optional[datetime] = Field(None, description="执行结束时间")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
    updated_at: datetime = Field(default_factory=datetime.now, description="更新时间")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="额外元数据")

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def count(self, status: StepStatus) -> int:
        """处于指定状态的步骤数"""
        return sum(1 for s in self.steps if s.status == status)

    @property
    def is_completed(self) -> bool:
        """非空且每个步骤都已成功"""
        return bool(self.steps) and self.count(StepStatus.COMPLETED) == len(self.steps)

    def step_ids(self) -> List[str]:
        return [s.id for s in self.steps]

    # ===================
    # 步骤操作
    # ===================

    def get_step(self, step_id: str) -> Optional[Step]:
        """获取指定步骤"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def add_step(
        self,
        name: str,
        description: str = "",
        dependencies: Optional[List[str]] = None,
        **fields: Any,
    ) -> Step:
        """
        添加新步骤（ID 自动生成，状态为 pending）

        Args:
            name: 步骤名称
            description: 步骤描述
            dependencies: 依赖的步骤ID列表
            **fields: 其他 Step 字段（kind、preconditions、estimated_duration 等）

        Returns:
            Step: 新创建的步骤
        """
        step = Step(
            name=name,
            description=description,
            dependencies=list(dependencies or []),
            **fields,
        )
        self.steps.append(step)
        self.touch()
        return step

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def to_summary(self) -> str:
        """多行文本摘要，每个步骤一行"""
        done = self.count(StepStatus.COMPLETED)
        lines = [
            f"📋 {self.name or self.id} [{self.status.value}] {done}/{self.total_steps}",
            f"   目标: {self.objective}",
        ]
        for step in self.steps:
            icon = _STATUS_ICONS.get(step.status, "❓")
            line = f"   {icon} {step.id} {step.label}"
            if step.dependencies:
                line += f" (依赖 {', '.join(step.dependencies)})"
            lines.append(line)
        return "\n".join(lines)


Constraint.model_rebuild()
Plan.model_rebuild()


# ===================
# 执行期结构
# ===================


@dataclass
class ExecutionOptions:
    """
    执行选项

    Attributes:
        parallel: True 为波次并发调度，False 为拓扑顺序串行执行
        continue_on_error: 步骤失败后是否继续执行其余步骤
        timeout: 整次执行的截止时间（秒），None 表示不限制
        step_timeout: 单步骤工作单元超时（秒），None 表示不限制
        max_retries: 工作单元失败后的最大重试次数
        retry_base_delay: 重试指数退避的基础延迟（秒）
        dry_run: 只记录执行意图，不实际执行任何步骤
        max_concurrency: 波次内最大并发步骤数，None 表示不限制
    """

    parallel: bool = True
    continue_on_error: bool = False
    timeout: Optional[float] = None
    step_timeout: Optional[float] = None
    max_retries: int = 0
    retry_base_delay: float = 0.5
    dry_run: bool = False
    max_concurrency: Optional[int] = None

    def __post_init__(self):
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(f"max_concurrency 必须 >= 1，当前为 {self.max_concurrency}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries 不能为负数，当前为 {self.max_retries}")


@dataclass
class PlanContext:
    """
    执行上下文（传给 StepHandler 与 ConditionEvaluator）

    Attributes:
        plan: 正在执行的 Plan
        values: 调用方提供的上下文数据（条件表达式 context.<key> 读取此处）
        results: 已成功步骤的结果 step_id -> result
    """

    plan: Plan
    values: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
    """
    单次执行的汇总结果

    completed_steps 只包含本次成功的步骤；settled_steps 是调度器的终态跟踪集合
    （失败步骤也会进入，以便下游步骤可以被评估）。preserved_steps 是执行开始前
    已处于终态、本次保持原状的步骤（如部分重跑时不受影响的步骤）。
    """

    plan_id: str
    success: bool = False
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    preserved_steps: List[str] = field(default_factory=list)
    settled_steps: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, Exception] = field(default_factory=dict)
    waves: List[List[str]] = field(default_factory=list)
    duration_ms: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    stalled: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "success": self.success,
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "skipped_steps": list(self.skipped_steps),
            "preserved_steps": list(self.preserved_steps),
            "settled_steps": list(self.settled_steps),
            "errors": {step_id: str(err) for step_id, err in self.errors.items()},
            "waves": [list(w) for w in self.waves],
            "duration_ms": self.duration_ms,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "stalled": self.stalled,
            "dry_run": self.dry_run,
        }


@dataclass
class ValidationResult:
    """Plan 验证报告"""

    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "suggestions": list(self.suggestions),
        }
