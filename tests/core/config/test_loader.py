"""
配置加载器单元测试

运行命令：
    python -m pytest tests/core/config/test_loader.py -v
"""

import pytest

from core.config.loader import ConfigLoader, PlanningConfig, _deep_merge
from infra.resilience import get_retry_config, get_timeout_config


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


class TestDeepMerge:
    """字典深度合并"""

    def test_nested_override(self):
        base = {"execution": {"parallel": True, "max_concurrency": None}, "retry": {"max_retries": 0}}
        merged = _deep_merge(base, {"execution": {"max_concurrency": 4}})

        assert merged == {"execution": {"parallel": True, "max_concurrency": 4}, "retry": {"max_retries": 0}}
        assert base["execution"]["max_concurrency"] is None


class TestConfigLoader:
    """全局配置 + 实例覆盖"""

    @pytest.mark.asyncio
    async def test_defaults_when_file_missing(self, tmp_path):
        config = await ConfigLoader(config_dir=tmp_path).get_planning_config()
        assert config == PlanningConfig()

    @pytest.mark.asyncio
    async def test_global_config(self, tmp_path):
        _write(
            tmp_path / "planning.yaml",
            "execution:\n  parallel: false\n  max_concurrency: 3\n"
            "retry:\n  max_retries: 2\n"
            "timeout:\n  plan_timeout: 60\n  step_timeout: 5\n",
        )
        config = await ConfigLoader(config_dir=tmp_path).get_planning_config()

        assert config.parallel_execution is False
        assert config.max_concurrency == 3
        assert config.max_retries == 2
        assert config.timeout == 60
        assert config.step_timeout == 5
        assert config.retention_days == 30

    @pytest.mark.asyncio
    async def test_instance_override(self, tmp_path):
        _write(tmp_path / "config" / "planning.yaml", "execution:\n  parallel: true\n  continue_on_error: false\n")
        _write(
            tmp_path / "instances" / "batch" / "config.yaml",
            "planning:\n  execution:\n    continue_on_error: true\n",
        )
        loader = ConfigLoader(
            instance_name="batch",
            config_dir=tmp_path / "config",
            instances_dir=tmp_path / "instances",
        )
        config = await loader.get_planning_config()

        assert config.parallel_execution is True
        assert config.continue_on_error is True

    @pytest.mark.asyncio
    async def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        _write(tmp_path / "planning.yaml", "execution: [unclosed\n")
        config = await ConfigLoader(config_dir=tmp_path).get_planning_config()
        assert config == PlanningConfig()

    @pytest.mark.asyncio
    async def test_cache_and_clear(self, tmp_path):
        path = tmp_path / "planning.yaml"
        _write(path, "retry:\n  max_retries: 1\n")
        loader = ConfigLoader(config_dir=tmp_path)
        assert (await loader.get_planning_config()).max_retries == 1

        _write(path, "retry:\n  max_retries: 5\n")
        assert (await loader.get_planning_config()).max_retries == 1

        loader.clear_cache()
        assert (await loader.get_planning_config()).max_retries == 5

    @pytest.mark.asyncio
    async def test_bundled_config_is_valid(self):
        config = await ConfigLoader().get_planning_config()
        assert config.parallel_execution is True
        assert config.to_execution_options().max_retries == config.max_retries


class TestPlanningConfig:
    """PlanningConfig 转换"""

    def test_to_execution_options_with_overrides(self):
        config = PlanningConfig(parallel_execution=False, max_retries=2, step_timeout=3.0)
        options = config.to_execution_options(dry_run=True)

        assert options.parallel is False
        assert options.max_retries == 2
        assert options.step_timeout == 3.0
        assert options.dry_run is True

    def test_apply_updates_global_configs(self):
        PlanningConfig(max_retries=4, retry_base_delay=0.1, step_timeout=9.0, timeout=90.0).apply()

        assert get_retry_config().max_retries == 4
        assert get_retry_config().base_delay == 0.1
        assert get_timeout_config().step_timeout == 9.0
        assert get_timeout_config().plan_timeout == 90.0
