"""
配置加载器

全局配置 config/planning.yaml，可被 instances/<name>/config.yaml 覆盖。

使用方式：
    # 获取全局配置
    loader = get_config_loader()
    config = await loader.get_planning_config()

    # 带实例覆盖
    loader = get_config_loader(instance_name="nightly_batch")
    config = await loader.get_planning_config()  # 已合并实例覆盖

    options = config.to_execution_options()
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles
import yaml

from core.planning.protocol import ExecutionOptions
from infra.resilience import RetryConfig, TimeoutConfig, set_retry_config, set_timeout_config
from logger import get_logger, set_level
from utils.app_paths import get_config_dir, get_instances_dir

logger = get_logger(__name__)

PLANNING_CONFIG_NAME = "planning"


def _deep_merge(base: Dict, override: Dict) -> Dict:
    """递归合并：两边都是 dict 的键继续向下合并，其余以 override 为准"""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = (
            _deep_merge(current, value)
            if isinstance(current, dict) and isinstance(value, dict)
            else value
        )
    return merged


async def _load_yaml(path: Path) -> Dict[str, Any]:
    """加载 YAML 文件，不存在或无法解析时返回空配置"""
    if not path.exists():
        return {}

    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            data = yaml.safe_load(await f.read()) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"⚠️ 加载配置文件失败 {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"⚠️ 配置文件格式错误 {path}: 顶层必须是映射")
        return {}
    return data


@dataclass
class PlanningConfig:
    """规划引擎配置（config/planning.yaml）"""

    # execution
    parallel_execution: bool = True
    continue_on_error: bool = False
    max_concurrency: Optional[int] = None
    simulated_step_duration: float = 0.1
    # retry
    max_retries: int = 0
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0
    # timeout
    timeout: Optional[float] = None
    step_timeout: Optional[float] = None
    # validation
    parallel_suggestion_threshold: int = 10
    # storage
    storage_path: str = ""
    retention_days: int = 30
    # logging
    log_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanningConfig":
        """从合并后的配置字典构建，缺失的键使用默认值"""
        execution = data.get("execution") or {}
        retry = data.get("retry") or {}
        timeout = data.get("timeout") or {}
        validation = data.get("validation") or {}
        storage = data.get("storage") or {}
        logging_cfg = data.get("logging") or {}
        defaults = cls()

        return cls(
            parallel_execution=execution.get("parallel", defaults.parallel_execution),
            continue_on_error=execution.get("continue_on_error", defaults.continue_on_error),
            max_concurrency=execution.get("max_concurrency", defaults.max_concurrency),
            simulated_step_duration=execution.get(
                "simulated_step_duration", defaults.simulated_step_duration
            ),
            max_retries=retry.get("max_retries", defaults.max_retries),
            retry_base_delay=retry.get("base_delay", defaults.retry_base_delay),
            retry_max_delay=retry.get("max_delay", defaults.retry_max_delay),
            timeout=timeout.get("plan_timeout", defaults.timeout),
            step_timeout=timeout.get("step_timeout", defaults.step_timeout),
            parallel_suggestion_threshold=validation.get(
                "parallel_suggestion_threshold", defaults.parallel_suggestion_threshold
            ),
            storage_path=storage.get("path") or defaults.storage_path,
            retention_days=storage.get("retention_days", defaults.retention_days),
            log_level=logging_cfg.get("level", defaults.log_level),
        )

    def to_execution_options(self, **overrides: Any) -> ExecutionOptions:
        """生成默认执行选项，overrides 覆盖单个字段"""
        values = dict(
            parallel=self.parallel_execution,
            continue_on_error=self.continue_on_error,
            timeout=self.timeout,
            step_timeout=self.step_timeout,
            max_retries=self.max_retries,
            retry_base_delay=self.retry_base_delay,
            max_concurrency=self.max_concurrency,
        )
        values.update(overrides)
        return ExecutionOptions(**values)

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    def to_timeout_config(self) -> TimeoutConfig:
        return TimeoutConfig(step_timeout=self.step_timeout, plan_timeout=self.timeout)

    def apply(self) -> None:
        """应用到全局重试、超时配置与日志级别"""
        set_retry_config(self.to_retry_config())
        set_timeout_config(self.to_timeout_config())
        if self.log_level:
            set_level(self.log_level)
        logger.info(
            f"✅ 规划配置已应用: retries={self.max_retries}, "
            f"step_timeout={self.step_timeout}, plan_timeout={self.timeout}"
        )


class ConfigLoader:
    """
    规划配置加载器

    读取 config/<name>.yaml，再用 instances/<instance>/config.yaml 中同名段落覆盖，
    合并结果按配置名缓存。每个实例名共享一个加载器（get_instance）。
    """

    _registry: Dict[str, "ConfigLoader"] = {}

    def __init__(
        self,
        instance_name: Optional[str] = None,
        config_dir: Optional[Path] = None,
        instances_dir: Optional[Path] = None,
    ):
        """
        Args:
            instance_name: 实例名称，None 时只读全局配置
            config_dir: 全局配置目录，默认 get_config_dir()
            instances_dir: 实例目录，默认 get_instances_dir()
        """
        self.instance_name = instance_name
        self.config_dir = Path(config_dir) if config_dir else get_config_dir()
        self.instance_config_path: Optional[Path] = None
        if instance_name:
            base = Path(instances_dir) if instances_dir else get_instances_dir()
            self.instance_config_path = base / instance_name / "config.yaml"
        self._merged: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def get_instance(cls, instance_name: Optional[str] = None) -> "ConfigLoader":
        key = instance_name or ""
        loader = cls._registry.get(key)
        if loader is None:
            loader = cls._registry[key] = cls(instance_name)
        return loader

    async def _get_merged_config(self, config_name: str) -> Dict[str, Any]:
        """全局配置被实例配置中的 <config_name> 段覆盖"""
        if config_name in self._merged:
            return self._merged[config_name]

        base = await _load_yaml(self.config_dir / f"{config_name}.yaml")
        override: Dict[str, Any] = {}
        if self.instance_config_path is not None:
            override = (await _load_yaml(self.instance_config_path)).get(config_name) or {}

        merged = self._merged[config_name] = _deep_merge(base, override)
        logger.debug(
            f"📄 配置 {config_name} 已加载（实例 {self.instance_name or '-'}）: "
            f"全局 {len(base)} 项，覆盖 {len(override)} 项"
        )
        return merged

    async def get_planning_config(self) -> PlanningConfig:
        return PlanningConfig.from_dict(await self._get_merged_config(PLANNING_CONFIG_NAME))

    def clear_cache(self):
        """下次读取时重新加载文件"""
        self._merged.clear()


def get_config_loader(instance_name: Optional[str] = None) -> ConfigLoader:
    return ConfigLoader.get_instance(instance_name)


async def load_planning_config(instance_name: Optional[str] = None) -> PlanningConfig:
    """加载（带实例覆盖的）规划引擎配置"""
    return await get_config_loader(instance_name).get_planning_config()
