"""
工具模块

提供路径管理等辅助函数
"""

from utils.app_paths import (
    get_bundle_dir,
    get_config_dir,
    get_instances_dir,
    get_logs_dir,
    get_plans_dir,
    get_user_data_dir,
)

__all__ = [
    "get_bundle_dir",
    "get_config_dir",
    "get_instances_dir",
    "get_logs_dir",
    "get_plans_dir",
    "get_user_data_dir",
]
