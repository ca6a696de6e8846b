"""
Plan 验证器（Validators）

验证 Plan 的结构与约束：
1. 非空检查、步骤ID唯一性
2. 循环依赖检测
3. 可达性检查（仅警告）
4. 缺失依赖检查
5. 调用方约束验证
6. 并行化建议

所有检查都会执行并汇总到同一份报告中，验证过程不修改 Plan。
"""

from collections import Counter
from typing import List

from core.planning.errors import PlanValidationError
from core.planning.graph import build_graph, detect_cycles, find_reachable
from core.planning.protocol import Plan, ValidationResult
from logger import get_logger

logger = get_logger(__name__)

DEFAULT_PARALLEL_SUGGESTION_THRESHOLD = 10


class PlanValidator:
    """
    Plan 验证器

    使用方式：
        validator = PlanValidator()

        # 验证 Plan
        report = validator.validate(plan)
        if not report.valid:
            print(report.errors)

        # 或直接抛出异常
        validator.validate_or_raise(plan)
    """

    def __init__(self, parallel_suggestion_threshold: int = DEFAULT_PARALLEL_SUGGESTION_THRESHOLD):
        """
        Args:
            parallel_suggestion_threshold: 步骤数超过该值且未检测到可并行步骤时给出建议
        """
        self.parallel_suggestion_threshold = parallel_suggestion_threshold

    def validate(self, plan: Plan) -> ValidationResult:
        """
        验证 Plan

        Args:
            plan: Plan 对象

        Returns:
            ValidationResult: 验证报告
        """
        result = ValidationResult()

        # 1. 空 Plan
        if not plan.steps:
            result.add_error("Plan 必须包含至少一个步骤")

        # 2. 步骤ID唯一性
        for step_id, count in Counter(step.id for step in plan.steps).items():
            if count > 1:
                result.add_error(f"步骤ID重复: {step_id}（出现 {count} 次）")

        # 3. 循环依赖
        graph = build_graph(plan.steps)
        for cycle in detect_cycles(graph):
            result.add_error(f"存在循环依赖: {cycle.describe()}")

        # 4. 可达性
        reachable = find_reachable(graph)
        unreachable = [step for step in plan.steps if step.id not in reachable]
        if unreachable:
            result.warnings.append(
                f"不可达的步骤: {', '.join(step.label for step in unreachable)}"
            )

        # 5. 缺失依赖
        known_ids = {step.id for step in plan.steps}
        for step in plan.steps:
            for dep_id in step.dependencies:
                if dep_id not in known_ids:
                    result.add_error(f"步骤 {step.label} 依赖的步骤不存在: {dep_id}")

        # 6. 约束
        for constraint in plan.constraints:
            if constraint.validator is None:
                continue
            try:
                satisfied = constraint.validator(plan)
            except Exception as e:
                logger.warning(f"⚠️ 约束验证器异常: {constraint.description}: {e}")
                result.add_error(f"约束验证失败: {constraint.description}（验证器异常: {e}）")
                continue
            if not satisfied:
                result.add_error(f"约束验证失败: {constraint.description}")

        # 7. 并行化建议
        if len(plan.steps) > self.parallel_suggestion_threshold and not self._has_parallel_steps(plan):
            result.suggestions.append("建议将相互独立的步骤并行化以缩短执行时间")

        if result.valid:
            logger.debug(f"✅ Plan 验证通过: {plan.id}")
        else:
            logger.warning(f"❌ Plan 验证失败: {plan.id}: {result.errors}")

        return result

    def validate_or_raise(self, plan: Plan) -> ValidationResult:
        """
        验证 Plan，失败时抛出异常

        Args:
            plan: Plan 对象

        Returns:
            ValidationResult: 通过时的验证报告（可能包含警告和建议）

        Raises:
            PlanValidationError: 验证失败时抛出
        """
        result = self.validate(plan)

        if not result.valid:
            raise PlanValidationError(
                f"Plan 验证失败: {len(result.errors)} 个错误: {'; '.join(result.errors)}",
                errors=result.errors,
            )

        return result

    @staticmethod
    def _has_parallel_steps(plan: Plan) -> bool:
        """
        粗略判断是否存在可并行步骤

        只要有两个步骤的依赖数量相同，就认为它们可能可以并行。
        """
        counts: List[int] = [len(step.dependencies) for step in plan.steps]
        return len(set(counts)) < len(counts)
