"""
Plan 导入导出

支持格式：
- json：完整的 Plan 数据（pydantic 序列化）
- yaml：与 json 相同的结构，便于人工编辑
- mermaid：流程图（graph TD），仅导出

约束验证器属于运行期对象，不会被导出；导入后的约束只有描述信息。
"""

import json
from typing import Any, Dict, List

import yaml

from core.planning.errors import UnsupportedFormatError
from core.planning.protocol import ExecutionResult, Plan, StepKind, StepStatus, generate_id
from logger import get_logger

logger = get_logger(__name__)

EXPORT_FORMATS = ["json", "yaml", "mermaid"]
IMPORT_FORMATS = ["json", "yaml"]

# 导出时只保留 Plan 定义与状态，不包含执行结果
_EXPORT_STEP_FIELDS = {
    "id", "name", "description", "kind", "dependencies", "preconditions",
    "postconditions", "estimated_duration", "status", "metadata",
}


def export_plan(plan: Plan, fmt: str) -> str:
    """
    导出 Plan

    Args:
        plan: Plan 对象
        fmt: json / yaml / mermaid

    Returns:
        str: 导出的文本

    Raises:
        UnsupportedFormatError: 格式不支持
    """
    fmt = fmt.lower()
    if fmt == "json":
        return json.dumps(_to_export_dict(plan), ensure_ascii=False, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(_to_export_dict(plan), allow_unicode=True, sort_keys=False)
    if fmt == "mermaid":
        return _to_mermaid(plan)
    raise UnsupportedFormatError(fmt, EXPORT_FORMATS)


def import_plan(data: str, fmt: str) -> Plan:
    """
    导入 Plan

    Args:
        data: 导出文本
        fmt: json / yaml

    Returns:
        Plan: 新的 Plan 对象（未提供 id 时自动生成）

    Raises:
        UnsupportedFormatError: 格式不支持
        ValueError: 数据无法解析为 Plan
    """
    fmt = fmt.lower()
    if fmt == "json":
        raw = json.loads(data)
    elif fmt == "yaml":
        raw = yaml.safe_load(data)
    else:
        raise UnsupportedFormatError(fmt, IMPORT_FORMATS)

    if not isinstance(raw, dict):
        raise ValueError(f"Plan 数据必须是对象，实际为 {type(raw).__name__}")

    raw.setdefault("id", generate_id("plan"))
    plan = Plan.model_validate(raw)
    logger.info(f"📥 导入 Plan {plan.id}: {plan.total_steps} 个步骤")
    return plan


def render_execution_result(result: ExecutionResult) -> str:
    """生成执行结果的可读摘要"""
    status = "✅ 成功" if result.success else "❌ 未成功"
    lines = [
        f"📋 执行结果: {result.plan_id} {status}",
        f"   耗时: {result.duration_ms}ms",
        f"   完成: {', '.join(result.completed_steps) or '-'}",
        f"   失败: {', '.join(result.failed_steps) or '-'}",
        f"   跳过: {', '.join(result.skipped_steps) or '-'}",
    ]
    if result.preserved_steps:
        lines.append(f"   保留: {', '.join(result.preserved_steps)}")
    if result.waves:
        lines.append(f"   波次: {' | '.join(','.join(w) for w in result.waves)}")
    if result.aborted:
        lines.append(f"   中止原因: {result.abort_reason}")
    if result.stalled:
        lines.append("   ⚠️ 存在无法满足依赖的步骤")
    if result.dry_run:
        lines.append("   [DRY RUN] 未实际执行")
    for step_id, error in result.errors.items():
        lines.append(f"   ❌ [{step_id}] {error}")
    return "\n".join(lines)


# ===================
# 内部方法
# ===================


def _to_export_dict(plan: Plan) -> Dict[str, Any]:
    data = plan.model_dump(
        mode="json",
        include={
            "id", "name", "objective", "constraints", "status",
            "created_at", "updated_at", "metadata",
        },
    )
    data["steps"] = [step.model_dump(mode="json", include=_EXPORT_STEP_FIELDS) for step in plan.steps]
    return data


def _to_mermaid(plan: Plan) -> str:
    lines: List[str] = ["graph TD", f"  Start[{_mermaid_text(plan.name or plan.id)}]"]

    for step in plan.steps:
        text = _mermaid_text(step.label)
        shape = f"{{{{{text}}}}}" if step.kind == StepKind.PARALLEL else f"[{text}]"
        lines.append(f"  {step.id}{shape}")

    for step in plan.steps:
        if not step.dependencies:
            lines.append(f"  Start --> {step.id}")
        for dep in step.dependencies:
            lines.append(f"  {dep} --> {step.id}")

    depended_on = {dep for step in plan.steps for dep in step.dependencies}
    end_steps = [step for step in plan.steps if step.id not in depended_on]
    if end_steps:
        lines.append("  End[Complete]")
        for step in end_steps:
            lines.append(f"  {step.id} --> End")

    lines.append("")
    lines.append("  classDef pending fill:#f9f,stroke:#333,stroke-width:2px;")
    lines.append("  classDef completed fill:#9f9,stroke:#333,stroke-width:2px;")
    lines.append("  classDef failed fill:#f99,stroke:#333,stroke-width:2px;")

    styled = {StepStatus.PENDING: "pending", StepStatus.COMPLETED: "completed", StepStatus.FAILED: "failed"}
    for step in plan.steps:
        css_class = styled.get(step.status)
        if css_class:
            lines.append(f"  class {step.id} {css_class};")

    return "\n".join(lines)


def _mermaid_text(text: str) -> str:
    """去掉会破坏 mermaid 节点语法的字符"""
    for ch in '[]{}()"|':
        text = text.replace(ch, " ")
    return text.strip() or "-"
