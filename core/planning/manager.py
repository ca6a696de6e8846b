"""
Plan 管理器（PlanManager）

进程内的 Plan 注册表，串联规划模块的各个组件：
- 创建 Plan、添加/更新步骤
- 验证、执行、部分重跑
- 关键路径分析
- 导入导出与持久化

使用方式：
    manager = PlanManager(storage=PlanStorage("data/plans"))

    plan = await manager.create_plan("发布新版本")
    build = await manager.add_step(plan.id, "构建")
    await manager.add_step(plan.id, "测试", dependencies=[build.id])

    result = await manager.execute_plan(plan.id, ExecutionOptions(parallel=True))
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.planning.dag_scheduler import DAGScheduler
from core.planning.errors import PlanNotFoundError, StepNotFoundError
from core.planning.exporters import export_plan, import_plan
from core.planning.graph import CriticalPath, build_graph, find_critical_path
from core.planning.protocol import (
    Constraint,
    ExecutionOptions,
    ExecutionResult,
    Plan,
    PlanContext,
    PlanStatus,
    Step,
    ValidationResult,
    generate_id,
)
from core.planning.storage import PlanStorage
from core.planning.step_runner import HandlerLike, StepRunner
from core.planning.validators import PlanValidator
from logger import get_logger, log_execution_time

if TYPE_CHECKING:
    from core.config.loader import PlanningConfig

logger = get_logger(__name__)

# Plan 名称中保留的目标描述长度
PLAN_NAME_OBJECTIVE_CHARS = 50

# update_step 不允许修改的字段
_IMMUTABLE_STEP_FIELDS = {"id"}


class PlanManager:
    """Plan 注册表与执行入口"""

    def __init__(
        self,
        scheduler: Optional[DAGScheduler] = None,
        validator: Optional[PlanValidator] = None,
        storage: Optional[PlanStorage] = None,
        default_options: Optional[ExecutionOptions] = None,
    ):
        """
        Args:
            scheduler: DAG 调度器
            validator: Plan 验证器，默认使用调度器的验证器
            storage: 持久化存储，None 时 save_plan/load_plan 不可用
            default_options: execute_plan 未传入选项时使用
        """
        self.scheduler = scheduler or DAGScheduler(validator=validator)
        self.validator = validator or self.scheduler.validator
        self.storage = storage
        self.default_options = default_options

        self._plans: Dict[str, Plan] = {}
        self._active_plan_id: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: "PlanningConfig",
        handler: Optional[HandlerLike] = None,
        storage: Optional[PlanStorage] = None,
    ) -> "PlanManager":
        """
        按 PlanningConfig 装配各组件

        Args:
            config: 规划引擎配置
            handler: 全局 StepHandler，None 时模拟执行
            storage: 持久化存储，默认按 config.storage_path 创建
        """
        validator = PlanValidator(parallel_suggestion_threshold=config.parallel_suggestion_threshold)
        runner = StepRunner(
            default_handler=handler,
            simulated_step_duration=config.simulated_step_duration,
        )
        return cls(
            scheduler=DAGScheduler(runner=runner, validator=validator),
            validator=validator,
            storage=storage or PlanStorage(config.storage_path, retention_days=config.retention_days),
            default_options=config.to_execution_options(),
        )

    # ===================
    # 注册表
    # ===================

    @property
    def active_plan(self) -> Optional[Plan]:
        """最近一次创建的 Plan"""
        if self._active_plan_id is None:
            return None
        return self._plans.get(self._active_plan_id)

    def list_plans(self) -> List[Plan]:
        return list(self._plans.values())

    def get_plan(self, plan_id: str) -> Plan:
        """
        获取 Plan

        Raises:
            PlanNotFoundError: Plan 未注册
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def register(self, plan: Plan) -> Plan:
        """注册已有的 Plan（同 ID 覆盖）"""
        self._plans[plan.id] = plan
        return plan

    def remove_plan(self, plan_id: str) -> bool:
        removed = self._plans.pop(plan_id, None) is not None
        if removed and self._active_plan_id == plan_id:
            self._active_plan_id = None
        return removed

    # ===================
    # 编辑
    # ===================

    async def create_plan(
        self,
        objective: str,
        constraints: Optional[List[Constraint]] = None,
        name: Optional[str] = None,
    ) -> Plan:
        """
        创建 Plan 并设为当前 Plan

        Args:
            objective: 目标描述
            constraints: Plan 级约束
            name: Plan 名称，默认 "Plan for: <目标前 50 个字符>"
        """
        plan = Plan(
            id=generate_id("plan"),
            name=name or f"Plan for: {objective[:PLAN_NAME_OBJECTIVE_CHARS]}",
            objective=objective,
            constraints=list(constraints or []),
        )
        self._plans[plan.id] = plan
        self._active_plan_id = plan.id

        logger.info(f"📋 创建 Plan {plan.id}: {objective}")
        return plan

    async def add_step(
        self,
        plan_id: str,
        name: str,
        description: str = "",
        dependencies: Optional[List[str]] = None,
        **fields: Any,
    ) -> Step:
        """
        向 Plan 添加步骤（ID 自动生成，状态为 pending）

        依赖引用不在此处检查，缺失依赖会在验证时报告。
        """
        plan = self.get_plan(plan_id)
        fields.pop("id", None)
        fields.pop("status", None)

        step = plan.add_step(name, description, dependencies, **fields)
        if plan.status == PlanStatus.VALIDATED:
            plan.status = PlanStatus.DRAFT

        logger.info(f"➕ Plan {plan_id} 添加步骤 {step.id}: {step.label}")
        return step

    async def update_step(self, plan_id: str, step_id: str, **updates: Any) -> Step:
        """
        更新步骤字段

        Raises:
            PlanNotFoundError / StepNotFoundError: ID 不存在
            ValueError: 字段不存在、不可修改或值不合法
        """
        plan = self.get_plan(plan_id)
        step = plan.get_step(step_id)
        if step is None:
            raise StepNotFoundError(plan_id, step_id)

        unknown = set(updates) - set(Step.model_fields)
        if unknown:
            raise ValueError(f"未知的步骤字段: {sorted(unknown)}")
        immutable = set(updates) & _IMMUTABLE_STEP_FIELDS
        if immutable:
            raise ValueError(f"步骤字段不可修改: {sorted(immutable)}")

        # 先整体校验，再原地赋值，保持调用方持有的 Step 引用有效
        validated = Step.model_validate({**step.model_dump(), **updates})
        for key in updates:
            setattr(step, key, getattr(validated, key))

        plan.touch()
        if plan.status == PlanStatus.VALIDATED:
            plan.status = PlanStatus.DRAFT

        logger.info(f"✏️ Plan {plan_id} 更新步骤 {step_id}: {sorted(updates)}")
        return step

    # ===================
    # 验证与执行
    # ===================

    async def validate_plan(self, plan_id: str) -> ValidationResult:
        """验证 Plan，通过时将草稿标记为 validated"""
        plan = self.get_plan(plan_id)
        report = self.validator.validate(plan)
        if report.valid and plan.status == PlanStatus.DRAFT:
            plan.status = PlanStatus.VALIDATED
        return report

    async def execute_plan(
        self,
        plan_id: str,
        options: Optional[ExecutionOptions] = None,
        context: Optional[PlanContext] = None,
        **callbacks: Any,
    ) -> ExecutionResult:
        """
        执行 Plan

        Raises:
            PlanNotFoundError: Plan 未注册
            PlanValidationError: Plan 未通过验证
        """
        plan = self.get_plan(plan_id)
        result = await self.scheduler.execute(plan, options or self.default_options, context, **callbacks)
        await self._autosave(plan)
        return result

    async def execute_from_step(
        self,
        plan_id: str,
        step_id: str,
        options: Optional[ExecutionOptions] = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        """重置指定步骤及其下游后重新执行"""
        plan = self.get_plan(plan_id)
        if plan.get_step(step_id) is None:
            raise StepNotFoundError(plan_id, step_id)

        result = await self.scheduler.execute_partial(plan, step_id, options or self.default_options, **kwargs)
        await self._autosave(plan)
        return result

    async def critical_path(self, plan_id: str) -> CriticalPath:
        """计算 Plan 的关键路径"""
        graph = build_graph(self.get_plan(plan_id).steps)
        with log_execution_time(f"关键路径计算 {plan_id}", logger):
            return find_critical_path(graph)

    # ===================
    # 导入导出与持久化
    # ===================

    async def export_plan(self, plan_id: str, fmt: str) -> str:
        return export_plan(self.get_plan(plan_id), fmt)

    async def import_plan(self, data: str, fmt: str) -> Plan:
        """导入 Plan 并注册（不改变当前 Plan）"""
        plan = import_plan(data, fmt)
        self._plans[plan.id] = plan
        return plan

    async def save_plan(self, plan_id: str) -> None:
        await self._require_storage().save(self.get_plan(plan_id))

    async def load_plan(self, plan_id: str) -> Plan:
        """从存储加载 Plan 并注册"""
        plan = await self._require_storage().load(plan_id)
        self._plans[plan.id] = plan
        return plan

    def _require_storage(self) -> PlanStorage:
        if self.storage is None:
            raise RuntimeError("PlanManager 未配置 storage")
        return self.storage

    async def _autosave(self, plan: Plan) -> None:
        if self.storage is not None:
            await self.storage.update(plan)
