"""
测试公共配置

在导入任何项目模块之前关闭文件日志，并把用户数据目录指向临时目录。
"""

import os
import tempfile

os.environ.setdefault("PLANGRAPH_LOG_TO_FILE", "0")
os.environ.setdefault("PLANGRAPH_DATA_DIR", tempfile.mkdtemp(prefix="plangraph-test-"))

import pytest  # noqa: E402

from infra.resilience import (  # noqa: E402
    RetryConfig,
    TimeoutConfig,
    set_retry_config,
    set_timeout_config,
)


@pytest.fixture(autouse=True)
def reset_resilience_config():
    """每个测试结束后恢复默认的全局重试与超时配置"""
    yield
    set_retry_config(RetryConfig())
    set_timeout_config(TimeoutConfig())
