"""
日志管理模块

所有模块通过 get_logger(__name__) 获取 "plangraph.<模块名>" 日志记录器，
共享同一组 handler：

- 控制台：彩色单行，带 [plan_id:run_id] 前缀
- 文件：JSON 行（app.log / error.log），按大小轮转

执行上下文：
    调度器在一次执行开始时调用 set_run_context(plan_id, run_id)，
    结束时 clear_run_context()；期间所有日志自动带上这两个字段。
    ContextVar 保证并发执行的多个 Plan 互不串号。

环境变量:
- PLANGRAPH_LOG_LEVEL: 日志级别（默认 INFO）
- PLANGRAPH_LOG_TO_FILE: 是否写文件（默认开启，0/false/no 关闭）
"""
import json
import logging
import os
import sys
import tempfile
import time
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional

ROOT_LOGGER_NAME = "plangraph"


def _default_log_dir() -> Path:
    try:
        from utils.app_paths import get_logs_dir
        return get_logs_dir()
    except OSError:
        # 数据目录不可写时退回临时目录
        return Path(tempfile.gettempdir()) / "plangraph" / "logs"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class LogSettings:
    """日志配置"""
    level: str = field(default_factory=lambda: os.getenv("PLANGRAPH_LOG_LEVEL", "INFO").upper())
    console: bool = True
    to_file: bool = field(default_factory=lambda: _env_flag("PLANGRAPH_LOG_TO_FILE", True))
    log_dir: Optional[Path] = None
    max_bytes: int = 20 * 1024 * 1024  # 20MB
    backup_count: int = 5


# ============================================================
# 执行上下文
# ============================================================

_plan_id: ContextVar[str] = ContextVar("plan_id", default="")
_run_id: ContextVar[str] = ContextVar("run_id", default="")


def set_run_context(plan_id: str = "", run_id: str = "") -> None:
    """设置当前执行上下文，空值不覆盖已有值"""
    if plan_id:
        _plan_id.set(plan_id)
    if run_id:
        _run_id.set(run_id)


def clear_run_context() -> None:
    _plan_id.set("")
    _run_id.set("")


@contextmanager
def log_execution_time(operation: str, logger: Optional[logging.Logger] = None):
    """
    记录代码块耗时（duration_ms 作为 extra 字段写入 JSON 日志）

    Usage:
        with log_execution_time("关键路径计算", logger):
            path = find_critical_path(graph)
    """
    target = logger or logging.getLogger(ROOT_LOGGER_NAME)
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = round((time.perf_counter() - start) * 1000, 2)
        target.info(f"⏱️ {operation} 耗时 {elapsed}ms", extra={"operation": operation, "duration_ms": elapsed})


# ============================================================
# Filter / Formatter
# ============================================================

class _ContextFilter(logging.Filter):
    """把 ContextVar 中的执行上下文写入 LogRecord"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.plan_id = _plan_id.get() or "-"
        record.run_id = _run_id.get() or "-"
        return True


class _ConsoleFormatter(logging.Formatter):
    """控制台格式化器，终端中按级别着色"""

    _COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    _RESET = "\033[0m"

    def __init__(self, use_colors: Optional[bool] = None):
        super().__init__(
            fmt="%(asctime)s %(levelname)s [%(plan_id)s:%(run_id)s] %(name)s | %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_colors = sys.stdout.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors:
            return super().format(record)
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{self._COLORS.get(record.levelname, '')}{record.levelname}{self._RESET}"
        return super().format(colored)


class _JsonFormatter(logging.Formatter):
    """
    JSON 行格式化器（文件输出）

    {"ts": "...", "level": "INFO", "plan": "plan_1", "run": "run_2",
     "logger": "dag_scheduler", "where": "dag_scheduler.py:120", "msg": "...", "duration_ms": 4.2}
    """

    # LogRecord 自带属性，不作为 extra 输出
    _BUILTIN = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "plan_id", "run_id"}

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "plan": getattr(record, "plan_id", "-"),
            "run": getattr(record, "run_id", "-"),
            "logger": record.name[len(ROOT_LOGGER_NAME) + 1:] or record.name,
            "where": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            payload["error"] = {
                "type": record.exc_info[0].__name__,
                "msg": str(record.exc_info[1]),
                "trace": "".join(traceback.format_exception(*record.exc_info)).strip(),
            }

        for key, value in record.__dict__.items():
            if key in self._BUILTIN or key in payload:
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = str(value)
            payload[key] = value

        return json.dumps(payload, ensure_ascii=False, default=str)


# ============================================================
# Handler 装配
# ============================================================

_settings = LogSettings()
_configured = False
_loggers: Dict[str, logging.Logger] = {}


def _file_handler(path: Path, level: int, settings: LogSettings) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path, maxBytes=settings.max_bytes, backupCount=settings.backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(_JsonFormatter())
    return handler


def configure_logging(settings: Optional[LogSettings] = None) -> None:
    """
    （重新）装配 plangraph 根日志记录器的 handler

    Args:
        settings: 日志配置，None 时使用当前配置
    """
    global _settings, _configured
    if settings is not None:
        _settings = settings

    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(_settings.level)

    handlers = []
    if _settings.console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(_ConsoleFormatter())
        handlers.append(console)

    if _settings.to_file:
        log_dir = _settings.log_dir or _default_log_dir()
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            log_dir = Path(tempfile.gettempdir()) / "plangraph" / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_file_handler(log_dir / "app.log", logging.NOTSET, _settings))
        handlers.append(_file_handler(log_dir / "error.log", logging.ERROR, _settings))

    context_filter = _ContextFilter()
    for handler in handlers:
        handler.addFilter(context_filter)
        root.addHandler(handler)

    _configured = True


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取日志记录器

    模块路径只保留最后一段：get_logger("core.planning.graph") -> "plangraph.graph"

    Usage:
        logger = get_logger(__name__)
        logger.info("📊 构建依赖图")
    """
    if not _configured:
        configure_logging()

    short = (name or ROOT_LOGGER_NAME).rsplit(".", 1)[-1]
    full_name = ROOT_LOGGER_NAME if short == ROOT_LOGGER_NAME else f"{ROOT_LOGGER_NAME}.{short}"
    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)
    return _loggers[full_name]


def set_level(level: str) -> None:
    """调整 plangraph 日志级别（DEBUG / INFO / WARNING / ERROR / CRITICAL）"""
    _settings.level = level.upper()
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(_settings.level)
