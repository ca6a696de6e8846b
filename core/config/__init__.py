"""
统一配置加载模块

支持：
1. 全局配置加载（config/planning.yaml）
2. 实例级配置覆盖（instances/xxx/config.yaml）
3. 配置缓存
"""

from core.config.loader import (
    ConfigLoader,
    PlanningConfig,
    get_config_loader,
    load_planning_config,
)

__all__ = [
    "ConfigLoader",
    "PlanningConfig",
    "get_config_loader",
    "load_planning_config",
]
