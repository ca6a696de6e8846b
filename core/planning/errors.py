"""
规划模块异常定义

异常层级：
    PlanningError
    ├── PlanValidationError        Plan 结构验证失败（不会部分执行）
    ├── CyclicGraphError           对非 DAG 执行拓扑排序
    ├── PlanTimeoutError           整次执行超过截止时间
    ├── PlanNotFoundError / StepNotFoundError
    ├── UnsupportedFormatError     导入/导出格式不支持
    └── StepError                  步骤级错误（始终记录为该步骤的失败）
        ├── PreconditionFailedError
        ├── PostconditionFailedError
        ├── StepExecutionError     包装 StepHandler 抛出的异常
        └── StepTimeoutError
"""

from typing import List, Optional


class PlanningError(Exception):
    """规划模块异常基类"""


class PlanValidationError(PlanningError):
    """Plan 验证错误"""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class CyclicGraphError(PlanningError):
    """依赖图存在环，无法拓扑排序"""

    def __init__(self, remaining: Optional[List[str]] = None):
        self.remaining = remaining or []
        super().__init__(f"依赖图存在循环依赖，无法拓扑排序（未排序节点: {self.remaining}）")


class PlanTimeoutError(PlanningError, TimeoutError):
    """Plan 执行超时"""

    def __init__(self, plan_id: str, timeout: float):
        self.plan_id = plan_id
        self.timeout = timeout
        super().__init__(f"Plan {plan_id} 执行超时（{timeout}s）")


class PlanNotFoundError(PlanningError, KeyError):
    """Plan 不存在"""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan {plan_id} 不存在")

    def __str__(self) -> str:
        return self.args[0]


class StepNotFoundError(PlanningError, KeyError):
    """步骤不存在"""

    def __init__(self, plan_id: str, step_id: str):
        self.plan_id = plan_id
        self.step_id = step_id
        super().__init__(f"步骤 {step_id} 不存在于 Plan {plan_id}")

    def __str__(self) -> str:
        return self.args[0]


class UnsupportedFormatError(PlanningError, ValueError):
    """不支持的导入/导出格式"""

    def __init__(self, fmt: str, supported: List[str]):
        self.format = fmt
        self.supported = supported
        super().__init__(f"不支持的格式: {fmt}（支持: {', '.join(supported)}）")


class StepError(PlanningError):
    """步骤级错误基类"""

    def __init__(self, step_id: str, message: str):
        self.step_id = step_id
        super().__init__(message)


class PreconditionFailedError(StepError):
    """前置条件不满足"""

    def __init__(self, step_id: str, condition: str):
        self.condition = condition
        super().__init__(step_id, f"步骤 {step_id} 前置条件不满足: {condition}")


class PostconditionFailedError(StepError):
    """后置条件不满足"""

    def __init__(self, step_id: str, condition: str):
        self.condition = condition
        super().__init__(step_id, f"步骤 {step_id} 后置条件不满足: {condition}")


class StepExecutionError(StepError):
    """StepHandler 执行失败（原始异常见 __cause__）"""

    def __init__(self, step_id: str, error: BaseException):
        self.original = error
        super().__init__(step_id, f"步骤 {step_id} 执行失败: {error}")


class StepTimeoutError(StepError, TimeoutError):
    """步骤工作单元超时"""

    def __init__(self, step_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(step_id, f"步骤 {step_id} 执行超时（{timeout:.3f}s）")
