"""
依赖图（DependencyGraph）

从步骤列表推导有向图并提供图算法：
1. build_graph：构建图（边方向：依赖 -> 被依赖者）
2. detect_cycles：DFS 环检测（保证至少报告一个环，不保证枚举全部）
3. topological_sort：Kahn 算法，FIFO 保证同输入同输出
4. find_critical_path：按预估耗时求最长路径
5. find_reachable / get_descendants：可达性、下游分析

依赖图只由 Plan 的步骤推导，从不增量修改；每次验证或执行都重新构建。
所有函数都是纯函数，不修改步骤或图。
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.planning.errors import CyclicGraphError
from core.planning.protocol import Step
from logger import get_logger

logger = get_logger(__name__)


@dataclass
class DependencyGraph:
    """
    依赖图

    Attributes:
        nodes: 步骤ID -> 步骤（保持输入顺序）
        edges: 步骤ID -> 依赖它的步骤ID列表（保持插入顺序、无重复）
        is_acyclic: 是否无环
        topological_order: 无环时的拓扑顺序
    """

    nodes: Dict[str, Step] = field(default_factory=dict)
    edges: Dict[str, List[str]] = field(default_factory=dict)
    is_acyclic: bool = True
    topological_order: Optional[List[str]] = None

    def successors(self, node_id: str) -> List[str]:
        return self.edges.get(node_id, [])

    def predecessors(self, node_id: str) -> List[str]:
        """已知节点中 node_id 的依赖（悬空依赖不计入）"""
        step = self.nodes[node_id]
        return [dep for dep in step.dependencies if dep in self.nodes]

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self.edges.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes


@dataclass
class Cycle:
    """环：nodes 首尾为同一节点，edges 为相邻节点对"""

    nodes: List[str]
    edges: List[Tuple[str, str]] = field(default_factory=list)

    def describe(self) -> str:
        return " -> ".join(self.nodes)


@dataclass
class CriticalPath:
    """关键路径：在无限并行下完成全部步骤的理论最短时间"""

    nodes: List[str] = field(default_factory=list)
    total_duration: float = 0.0

    @property
    def critical_steps(self) -> List[str]:
        return list(self.nodes)


# ===================
# 构建
# ===================


def build_graph(steps: Iterable[Step]) -> DependencyGraph:
    """
    从步骤列表构建依赖图

    悬空依赖（引用不存在的步骤）在此处被忽略，由 PlanValidator 单独报告；
    图构建本身总能成功。

    Args:
        steps: 步骤列表

    Returns:
        DependencyGraph: 新构建的依赖图（附带无环标记和拓扑顺序）
    """
    graph = DependencyGraph()

    for step in steps:
        graph.nodes[step.id] = step
        graph.edges.setdefault(step.id, [])

    for step in graph.nodes.values():
        for dep in step.dependencies:
            if dep in graph.edges and step.id not in graph.edges[dep]:
                graph.edges[dep].append(step.id)

    graph.is_acyclic = not detect_cycles(graph)
    if graph.is_acyclic:
        graph.topological_order = topological_sort(graph)

    logger.debug(
        f"📊 构建依赖图: {len(graph.nodes)} 节点, {graph.edge_count} 边, acyclic={graph.is_acyclic}"
    )
    return graph


# ===================
# 环检测
# ===================


def detect_cycles(graph: DependencyGraph) -> List[Cycle]:
    """
    检测依赖图中的环（DFS）

    从每个尚未访问的节点出发做 DFS，维护递归栈和当前路径；遇到位于递归栈中的
    邻居即记录一个环，并结束本次 DFS。已访问节点不会被再次展开，因此存在多个
    共享区域的环时可能只报告第一个。

    Args:
        graph: 依赖图

    Returns:
        List[Cycle]: 发现的环（无环时为空）
    """
    cycles: List[Cycle] = []
    visited: Set[str] = set()

    for root in graph.nodes:
        if root in visited:
            continue
        cycle = _dfs_find_cycle(graph, root, visited)
        if cycle is not None:
            cycles.append(cycle)

    return cycles


def _dfs_find_cycle(graph: DependencyGraph, root: str, visited: Set[str]) -> Optional[Cycle]:
    """从 root 出发的单次 DFS（迭代实现），返回找到的第一个环"""
    path: List[str] = [root]
    on_stack: Set[str] = {root}
    iterators = [iter(graph.successors(root))]
    visited.add(root)

    while iterators:
        neighbor = next(iterators[-1], None)

        if neighbor is None:
            # 当前节点的邻居已全部展开，出栈
            iterators.pop()
            on_stack.discard(path.pop())
            continue

        if neighbor in on_stack:
            start = path.index(neighbor)
            nodes = path[start:] + [neighbor]
            edges = [(nodes[i], nodes[i + 1]) for i in range(len(nodes) - 1)]
            return Cycle(nodes=nodes, edges=edges)

        if neighbor not in visited:
            visited.add(neighbor)
            on_stack.add(neighbor)
            path.append(neighbor)
            iterators.append(iter(graph.successors(neighbor)))

    return None


# ===================
# 拓扑排序
# ===================


def topological_sort(graph: DependencyGraph) -> List[str]:
    """
    拓扑排序（Kahn 算法）

    入度为 0 的节点按图中节点顺序入队，之后按 FIFO 处理，保证相同输入得到相同顺序。
    本函数不调用环检测；结果长度小于节点数即说明存在环。

    Args:
        graph: 依赖图

    Returns:
        List[str]: 步骤ID的执行顺序

    Raises:
        CyclicGraphError: 图中存在环
    """
    in_degree: Dict[str, int] = {node_id: 0 for node_id in graph.nodes}
    for targets in graph.edges.values():
        for target in targets:
            in_degree[target] += 1

    queue = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
    order: List[str] = []

    while queue:
        node_id = queue.popleft()
        order.append(node_id)

        for neighbor in graph.successors(node_id):
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(order) != len(graph.nodes):
        remaining = [node_id for node_id, degree in in_degree.items() if degree > 0]
        raise CyclicGraphError(remaining)

    return order


# ===================
# 关键路径
# ===================


def find_critical_path(graph: DependencyGraph) -> CriticalPath:
    """
    计算关键路径（带权最长路径）

    以步骤的 estimated_duration 为节点权重（缺省为 0），沿拓扑顺序松弛后继节点的
    累计距离；终点取 “累计距离 + 自身耗时” 最大的节点（不要求是汇点），再沿前驱
    指针回溯出路径。

    Args:
        graph: 依赖图（必须无环）

    Returns:
        CriticalPath: 路径节点与总耗时

    Raises:
        CyclicGraphError: 图中存在环
    """
    if not graph.nodes:
        return CriticalPath()

    order = graph.topological_order if graph.topological_order is not None else topological_sort(graph)

    distances: Dict[str, float] = {node_id: 0.0 for node_id in graph.nodes}
    predecessors: Dict[str, Optional[str]] = {node_id: None for node_id in graph.nodes}

    for node_id in order:
        reach = distances[node_id] + _duration(graph.nodes[node_id])
        for successor in graph.successors(node_id):
            if reach > distances[successor]:
                distances[successor] = reach
                predecessors[successor] = node_id

    end_node: Optional[str] = None
    max_total = -1.0
    for node_id in order:
        total = distances[node_id] + _duration(graph.nodes[node_id])
        if total > max_total:
            max_total = total
            end_node = node_id

    path: List[str] = []
    current = end_node
    while current is not None:
        path.append(current)
        current = predecessors[current]
    path.reverse()

    return CriticalPath(nodes=path, total_duration=max_total)


def _duration(step: Step) -> float:
    return step.estimated_duration or 0.0


# ===================
# 可达性
# ===================


def find_reachable(graph: DependencyGraph) -> Set[str]:
    """
    查找可达步骤

    从所有没有声明依赖的根步骤出发，沿依赖边可以到达的步骤集合。

    Args:
        graph: 依赖图

    Returns:
        Set[str]: 可达步骤ID集合
    """
    roots = [node_id for node_id, step in graph.nodes.items() if not step.dependencies]
    reachable: Set[str] = set(roots)
    queue = deque(roots)

    while queue:
        node_id = queue.popleft()
        for neighbor in graph.successors(node_id):
            if neighbor not in reachable:
                reachable.add(neighbor)
                queue.append(neighbor)

    return reachable


def get_descendants(graph: DependencyGraph, node_id: str) -> List[str]:
    """
    获取直接或间接依赖 node_id 的全部步骤（不含自身），按图中节点顺序返回
    """
    if node_id not in graph.nodes:
        return []

    seen: Set[str] = set()
    queue = deque(graph.successors(node_id))
    while queue:
        current = queue.popleft()
        if current in seen or current == node_id:
            continue
        seen.add(current)
        queue.extend(graph.successors(current))

    return [n for n in graph.nodes if n in seen]
