"""
应用路径

- 资源目录（只读）：项目根目录下的 config/、instances/
- 数据目录（可写）：Plan 存储与日志
  1. 环境变量 PLANGRAPH_DATA_DIR
  2. 项目根目录可写时使用项目根目录
  3. 否则使用平台用户数据目录
     - macOS: ~/Library/Application Support/plangraph/
     - Windows: %APPDATA%/plangraph/
     - Linux: $XDG_DATA_HOME/plangraph/ 或 ~/.local/share/plangraph/
"""

import os
import sys
from functools import lru_cache
from pathlib import Path

APP_NAME = "plangraph"
DATA_DIR_ENV = "PLANGRAPH_DATA_DIR"

# utils/app_paths.py -> 项目根目录
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def get_bundle_dir() -> Path:
    """只读资源所在目录"""
    return _PROJECT_ROOT


def _platform_data_dir() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    if sys.platform == "win32":
        return Path(os.getenv("APPDATA") or home / "AppData" / "Roaming") / APP_NAME
    return Path(os.getenv("XDG_DATA_HOME") or home / ".local" / "share") / APP_NAME


@lru_cache(maxsize=None)
def get_user_data_dir() -> Path:
    """可写数据目录（结果缓存，测试中修改环境变量后需 get_user_data_dir.cache_clear()）"""
    env_dir = os.getenv(DATA_DIR_ENV)
    if env_dir:
        data_dir = Path(env_dir)
    elif os.access(_PROJECT_ROOT, os.W_OK):
        data_dir = _PROJECT_ROOT
    else:
        data_dir = _platform_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _ensure(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_config_dir() -> Path:
    return get_bundle_dir() / "config"


def get_instances_dir() -> Path:
    """实例配置覆盖目录：instances/<name>/config.yaml"""
    return get_bundle_dir() / "instances"


def get_plans_dir() -> Path:
    return _ensure(get_user_data_dir() / "data" / "plans")


def get_logs_dir() -> Path:
    return _ensure(get_user_data_dir() / "logs")
