"""
PlanValidator 单元测试

运行命令：
    python -m pytest tests/core/planning/test_validators.py -v
"""

import pytest

from core.planning.errors import PlanValidationError
from core.planning.protocol import Constraint, Plan, Step
from core.planning.validators import PlanValidator


def _plan(*steps, constraints=None):
    return Plan(id="plan_test", steps=list(steps), constraints=list(constraints or []))


def _step(step_id, deps=()):
    return Step(id=step_id, name=step_id, dependencies=list(deps))


class TestStructuralChecks:
    """结构检查：空 Plan、重复 ID、循环、缺失依赖"""

    def setup_method(self):
        self.validator = PlanValidator()

    def test_valid_plan(self):
        report = self.validator.validate(_plan(_step("A"), _step("B", ["A"])))
        assert report.valid
        assert report.errors == []
        assert report.warnings == []

    def test_empty_plan_is_invalid(self):
        report = self.validator.validate(_plan())
        assert not report.valid
        assert len(report.errors) == 1

    def test_duplicate_step_ids(self):
        report = self.validator.validate(_plan(_step("A"), _step("A")))
        assert not report.valid
        assert any("A" in e and "重复" in e for e in report.errors)

    def test_cycle_is_an_error(self):
        report = self.validator.validate(_plan(_step("X", ["Y"]), _step("Y", ["X"])))
        assert not report.valid
        cycle_errors = [e for e in report.errors if "循环依赖" in e]
        assert len(cycle_errors) == 1
        assert "X" in cycle_errors[0] and "Y" in cycle_errors[0]

    def test_missing_dependency_names_step_and_dependency(self):
        report = self.validator.validate(_plan(_step("A"), _step("B", ["MISSING"])))
        assert not report.valid
        assert any("B" in e and "MISSING" in e for e in report.errors)

    def test_unreachable_step_is_only_a_warning(self):
        # 环成员不可达，但只有环本身是错误
        report = self.validator.validate(_plan(_step("A"), _step("X", ["Y"]), _step("Y", ["X"])))
        assert any("不可达" in w for w in report.warnings)
        assert not any("不可达" in e for e in report.errors)

    def test_all_checks_are_collected(self):
        report = self.validator.validate(
            _plan(_step("A"), _step("A"), _step("B", ["MISSING"]), _step("X", ["X"]))
        )
        assert len(report.errors) >= 3

    def test_validation_does_not_mutate_plan(self):
        plan = _plan(_step("A"), _step("B", ["A"]))
        before = plan.model_dump()
        self.validator.validate(plan)
        assert plan.model_dump() == before

    def test_repeated_validation_gives_same_report(self):
        # 同时包含循环、缺失依赖与不可达步骤
        plan = _plan(
            _step("root"),
            _step("a", ["b"]),
            _step("b", ["a"]),
            _step("c", ["root", "ghost"]),
        )

        first = self.validator.validate(plan)
        second = self.validator.validate(plan)

        assert not first.valid
        assert first.errors
        assert first == second


class TestConstraints:
    """调用方约束"""

    def setup_method(self):
        self.validator = PlanValidator()

    def test_failing_constraint(self):
        constraint = Constraint(description="最多一个步骤", validator=lambda plan: len(plan.steps) <= 1)
        report = self.validator.validate(_plan(_step("A"), _step("B"), constraints=[constraint]))
        assert not report.valid
        assert any("最多一个步骤" in e for e in report.errors)

    def test_passing_constraint(self):
        constraint = Constraint(description="至少一个步骤", validator=lambda plan: len(plan.steps) >= 1)
        assert self.validator.validate(_plan(_step("A"), constraints=[constraint])).valid

    def test_constraint_without_validator_is_ignored(self):
        assert self.validator.validate(_plan(_step("A"), constraints=[Constraint(description="备注")])).valid

    def test_raising_validator_counts_as_violation(self):
        def broken(plan):
            raise RuntimeError("boom")

        report = self.validator.validate(_plan(_step("A"), constraints=[Constraint(description="坏约束", validator=broken)]))
        assert not report.valid
        assert any("坏约束" in e for e in report.errors)


class TestSuggestions:
    """并行化建议"""

    def test_distinct_dependency_counts_get_parallel_suggestion(self):
        steps = [_step("s0"), _step("s1", ["s0"]), _step("s2", ["s0", "s1"])]
        report = PlanValidator(parallel_suggestion_threshold=2).validate(_plan(*steps))
        assert report.valid
        assert len(report.suggestions) == 1

    def test_no_suggestion_when_parallelism_exists(self):
        steps = [_step("a"), _step("b"), _step("c", ["a", "b"])]
        report = PlanValidator(parallel_suggestion_threshold=2).validate(_plan(*steps))
        assert report.suggestions == []

    def test_no_suggestion_for_small_plans(self):
        steps = [_step("s0"), _step("s1", ["s0"])]
        assert PlanValidator().validate(_plan(*steps)).suggestions == []


class TestValidateOrRaise:
    """validate_or_raise"""

    def test_raises_with_errors(self):
        with pytest.raises(PlanValidationError) as exc_info:
            PlanValidator().validate_or_raise(_plan(_step("B", ["MISSING"])))
        assert exc_info.value.errors

    def test_returns_report_when_valid(self):
        report = PlanValidator().validate_or_raise(_plan(_step("A")))
        assert report.valid
        assert report.to_dict()["valid"] is True
