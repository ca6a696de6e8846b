"""
PlanManager 单元测试

运行命令：
    python -m pytest tests/core/planning/test_manager.py -v
"""

import pytest

from core.planning.dag_scheduler import DAGScheduler
from core.planning.errors import PlanNotFoundError, PlanValidationError, StepNotFoundError
from core.planning.manager import PlanManager
from core.planning.protocol import ExecutionOptions, PlanStatus, StepKind, StepStatus
from core.planning.step_runner import StepRunner
from core.planning.storage import PlanStorage


def _manager(handler=None, storage=None):
    scheduler = DAGScheduler(runner=StepRunner(default_handler=handler or (lambda step, ctx: step.name)))
    return PlanManager(scheduler=scheduler, storage=storage)


class TestPlanEditing:
    """创建 Plan 与编辑步骤"""

    @pytest.mark.asyncio
    async def test_create_plan_sets_active_and_default_name(self):
        manager = _manager()
        objective = "x" * 80
        plan = await manager.create_plan(objective)

        assert plan.name == "Plan for: " + "x" * 50
        assert plan.status == PlanStatus.DRAFT
        assert manager.active_plan is plan
        assert manager.get_plan(plan.id) is plan

    @pytest.mark.asyncio
    async def test_add_step_generates_id(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        first = await manager.add_step(plan.id, "构建", status=StepStatus.COMPLETED, id="custom")
        second = await manager.add_step(plan.id, "测试", dependencies=[first.id], kind=StepKind.PARALLEL)

        assert first.id.startswith("step_")
        assert first.status == StepStatus.PENDING
        assert second.dependencies == [first.id]
        assert second.kind == StepKind.PARALLEL
        assert plan.total_steps == 2

    @pytest.mark.asyncio
    async def test_update_step_in_place(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        step = await manager.add_step(plan.id, "构建")

        updated = await manager.update_step(plan.id, step.id, name="编译", estimated_duration=5)

        assert updated is step
        assert step.name == "编译"
        assert step.estimated_duration == 5

    @pytest.mark.asyncio
    async def test_update_step_rejects_bad_input(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        step = await manager.add_step(plan.id, "构建")

        with pytest.raises(ValueError):
            await manager.update_step(plan.id, step.id, unknown_field=1)
        with pytest.raises(ValueError):
            await manager.update_step(plan.id, step.id, id="other")
        with pytest.raises(ValueError):
            await manager.update_step(plan.id, step.id, estimated_duration=-1)
        assert step.estimated_duration is None

    @pytest.mark.asyncio
    async def test_plan_summary(self):
        manager = _manager()
        plan = await manager.create_plan("发布", name="发布计划")
        build = await manager.add_step(plan.id, "构建")
        await manager.add_step(plan.id, "测试", dependencies=[build.id])
        build.complete("ok", 5)

        lines = plan.to_summary().splitlines()

        assert lines[0] == "📋 发布计划 [draft] 1/2"
        assert lines[2].startswith("   ✅ ")
        assert lines[3].endswith(f"(依赖 {build.id})")
        assert plan.count(StepStatus.PENDING) == 1

    @pytest.mark.asyncio
    async def test_unknown_ids(self):
        manager = _manager()
        with pytest.raises(PlanNotFoundError):
            manager.get_plan("nope")
        with pytest.raises(PlanNotFoundError):
            await manager.add_step("nope", "x")

        plan = await manager.create_plan("发布")
        with pytest.raises(StepNotFoundError):
            await manager.update_step(plan.id, "nope", name="x")


class TestPlanExecution:
    """验证、执行与分析"""

    @pytest.mark.asyncio
    async def test_validate_marks_plan_validated(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        await manager.add_step(plan.id, "构建")

        report = await manager.validate_plan(plan.id)

        assert report.valid
        assert plan.status == PlanStatus.VALIDATED

    @pytest.mark.asyncio
    async def test_editing_returns_plan_to_draft(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        await manager.add_step(plan.id, "构建")
        await manager.validate_plan(plan.id)

        await manager.add_step(plan.id, "测试")
        assert plan.status == PlanStatus.DRAFT

    @pytest.mark.asyncio
    async def test_execute_plan(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        build = await manager.add_step(plan.id, "构建")
        await manager.add_step(plan.id, "测试", dependencies=[build.id])

        result = await manager.execute_plan(plan.id, ExecutionOptions(parallel=False))

        assert result.success
        assert result.results[build.id] == "构建"
        assert plan.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_execute_invalid_plan_raises(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        with pytest.raises(PlanValidationError):
            await manager.execute_plan(plan.id)

    @pytest.mark.asyncio
    async def test_execute_from_step(self):
        calls = []
        manager = _manager(handler=lambda step, ctx: calls.append(step.name))
        plan = await manager.create_plan("发布")
        build = await manager.add_step(plan.id, "构建")
        test = await manager.add_step(plan.id, "测试", dependencies=[build.id])
        await manager.execute_plan(plan.id)

        calls.clear()
        result = await manager.execute_from_step(plan.id, test.id)

        assert calls == ["测试"]
        assert result.success
        with pytest.raises(StepNotFoundError):
            await manager.execute_from_step(plan.id, "nope")

    @pytest.mark.asyncio
    async def test_critical_path(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        a = await manager.add_step(plan.id, "a", estimated_duration=1)
        b = await manager.add_step(plan.id, "b", dependencies=[a.id], estimated_duration=4)
        await manager.add_step(plan.id, "c", dependencies=[a.id], estimated_duration=2)

        path = await manager.critical_path(plan.id)

        assert path.nodes == [a.id, b.id]
        assert path.total_duration == 5


class TestPlanPersistence:
    """导入导出与存储"""

    @pytest.mark.asyncio
    async def test_export_import_registers_plan(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        await manager.add_step(plan.id, "构建")

        data = await manager.export_plan(plan.id, "yaml")
        manager.remove_plan(plan.id)
        imported = await manager.import_plan(data, "yaml")

        assert imported.id == plan.id
        assert manager.get_plan(plan.id) is imported
        assert manager.active_plan is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        manager = _manager(storage=PlanStorage(tmp_path))
        plan = await manager.create_plan("发布")
        await manager.add_step(plan.id, "构建")
        await manager.save_plan(plan.id)

        other = _manager(storage=PlanStorage(tmp_path))
        loaded = await other.load_plan(plan.id)

        assert loaded.objective == "发布"
        assert other.get_plan(plan.id) is loaded

    @pytest.mark.asyncio
    async def test_execution_result_is_autosaved(self, tmp_path):
        storage = PlanStorage(tmp_path)
        manager = _manager(storage=storage)
        plan = await manager.create_plan("发布")
        await manager.add_step(plan.id, "构建")

        await manager.execute_plan(plan.id)

        reloaded = await PlanStorage(tmp_path).load(plan.id)
        assert reloaded.status == PlanStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_storage_required(self):
        manager = _manager()
        plan = await manager.create_plan("发布")
        with pytest.raises(RuntimeError):
            await manager.save_plan(plan.id)


class TestFromConfig:
    """按配置装配"""

    @pytest.mark.asyncio
    async def test_components_follow_config(self, tmp_path):
        from core.config.loader import PlanningConfig

        config = PlanningConfig(
            parallel_execution=False,
            continue_on_error=True,
            simulated_step_duration=0,
            parallel_suggestion_threshold=3,
            storage_path=str(tmp_path),
            retention_days=7,
        )
        manager = PlanManager.from_config(config)

        assert manager.validator.parallel_suggestion_threshold == 3
        assert manager.storage.storage_path == tmp_path
        assert manager.storage.retention_days == 7
        assert manager.default_options.parallel is False

        plan = await manager.create_plan("模拟执行")
        await manager.add_step(plan.id, "a")
        result = await manager.execute_plan(plan.id)

        assert result.success
        assert result.waves == []
        assert (tmp_path / f"{plan.id}.json").exists()
