"""
plangraph Core Module

核心组件：
- planning: Plan 数据协议、依赖图分析、验证、调度与执行
- config: 配置加载（全局 + 实例覆盖）
"""
