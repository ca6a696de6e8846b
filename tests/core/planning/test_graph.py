"""
依赖图分析的单元测试

覆盖图构建、环检测、拓扑排序、关键路径与分层，纯内存计算。

运行命令：
    python -m pytest tests/core/planning/test_graph.py -v
"""

import pytest

from core.planning.errors import CyclicGraphError
from core.planning.graph import (
    build_graph,
    detect_cycles,
    find_critical_path,
    find_reachable,
    get_descendants,
    topological_sort,
)
from core.planning.protocol import Step


def _step(step_id, deps=(), duration=None):
    return Step(id=step_id, name=step_id, dependencies=list(deps), estimated_duration=duration)


def _diamond(duration=1):
    return [
        _step("A", duration=duration),
        _step("B", ["A"], duration),
        _step("C", ["A"], duration),
        _step("D", ["B", "C"], duration),
    ]


# ===========================================================================
# build_graph
# ===========================================================================


class TestBuildGraph:
    """依赖图构建"""

    def test_nodes_and_edges_follow_dependencies(self):
        graph = build_graph(_diamond())
        assert list(graph.nodes) == ["A", "B", "C", "D"]
        assert graph.successors("A") == ["B", "C"]
        assert graph.successors("B") == ["D"]
        assert graph.successors("D") == []
        assert graph.edge_count == 4

    def test_every_node_has_edge_entry(self):
        graph = build_graph([_step("solo")])
        assert graph.edges == {"solo": []}

    def test_dangling_dependency_is_ignored(self):
        graph = build_graph([_step("A"), _step("B", ["MISSING"])])
        assert "MISSING" not in graph
        assert graph.edge_count == 0
        assert graph.is_acyclic

    def test_duplicate_dependency_creates_single_edge(self):
        graph = build_graph([_step("A"), _step("B", ["A", "A"])])
        assert graph.successors("A") == ["B"]

    def test_predecessors_only_include_known_nodes(self):
        graph = build_graph([_step("A"), _step("B", ["A", "ghost"])])
        assert graph.predecessors("B") == ["A"]

    def test_acyclic_graph_carries_topological_order(self):
        graph = build_graph(_diamond())
        assert graph.is_acyclic
        assert graph.topological_order == ["A", "B", "C", "D"]

    def test_cyclic_graph_has_no_order(self):
        graph = build_graph([_step("X", ["Y"]), _step("Y", ["X"])])
        assert graph.is_acyclic is False
        assert graph.topological_order is None

    def test_empty_step_list(self):
        graph = build_graph([])
        assert len(graph) == 0
        assert graph.is_acyclic


# ===========================================================================
# detect_cycles
# ===========================================================================


class TestDetectCycles:
    """环检测"""

    def test_acyclic_graph_has_no_cycles(self):
        assert detect_cycles(build_graph(_diamond())) == []

    def test_two_node_cycle(self):
        cycles = detect_cycles(build_graph([_step("X", ["Y"]), _step("Y", ["X"])]))
        assert len(cycles) == 1
        assert set(cycles[0].nodes) == {"X", "Y"}
        assert cycles[0].nodes[0] == cycles[0].nodes[-1]

    def test_self_dependency_is_a_cycle(self):
        cycles = detect_cycles(build_graph([_step("A", ["A"])]))
        assert len(cycles) == 1
        assert cycles[0].nodes == ["A", "A"]
        assert cycles[0].edges == [("A", "A")]

    def test_cycle_edges_connect_consecutive_nodes(self):
        steps = [_step("A", ["C"]), _step("B", ["A"]), _step("C", ["B"])]
        cycle = detect_cycles(build_graph(steps))[0]
        assert len(cycle.edges) == len(cycle.nodes) - 1
        for (src, dst), (a, b) in zip(cycle.edges, zip(cycle.nodes, cycle.nodes[1:])):
            assert (src, dst) == (a, b)

    def test_disjoint_cycles_are_both_reported(self):
        steps = [
            _step("A", ["B"]),
            _step("B", ["A"]),
            _step("C", ["D"]),
            _step("D", ["C"]),
        ]
        cycles = detect_cycles(build_graph(steps))
        assert len(cycles) == 2

    def test_shared_descendant_is_not_a_cycle(self):
        # 第二个根再次到达已访问节点，不应误报
        steps = [_step("R1"), _step("R2"), _step("S", ["R1", "R2"])]
        assert detect_cycles(build_graph(steps)) == []

    def test_describe_joins_nodes(self):
        cycle = detect_cycles(build_graph([_step("X", ["Y"]), _step("Y", ["X"])]))[0]
        assert cycle.describe() == " -> ".join(cycle.nodes)


# ===========================================================================
# topological_sort
# ===========================================================================


class TestTopologicalSort:
    """Kahn 拓扑排序"""

    def test_dependencies_precede_dependents(self):
        graph = build_graph(_diamond())
        order = topological_sort(graph)
        assert order[0] == "A"
        assert order[-1] == "D"
        for step in graph.nodes.values():
            for dep in step.dependencies:
                assert order.index(dep) < order.index(step.id)

    def test_order_is_deterministic(self):
        steps = [_step("c"), _step("a"), _step("b", ["c"])]
        assert topological_sort(build_graph(steps)) == ["c", "a", "b"]
        assert topological_sort(build_graph(steps)) == ["c", "a", "b"]

    def test_cycle_raises(self):
        graph = build_graph([_step("A"), _step("X", ["Y"]), _step("Y", ["X"])])
        with pytest.raises(CyclicGraphError) as exc_info:
            topological_sort(graph)
        assert set(exc_info.value.remaining) == {"X", "Y"}


# ===========================================================================
# find_critical_path
# ===========================================================================


class TestCriticalPath:
    """关键路径"""

    def test_diamond_with_unit_durations(self):
        path = find_critical_path(build_graph(_diamond()))
        assert path.total_duration == 3
        assert path.nodes in (["A", "B", "D"], ["A", "C", "D"])

    def test_longer_branch_wins(self):
        steps = [
            _step("A", duration=1),
            _step("B", ["A"], 5),
            _step("C", ["A"], 1),
            _step("D", ["B", "C"], 1),
        ]
        path = find_critical_path(build_graph(steps))
        assert path.nodes == ["A", "B", "D"]
        assert path.total_duration == 7

    def test_heavy_independent_step_dominates(self):
        steps = [_step("A", duration=1), _step("B", ["A"], 1), _step("heavy", duration=10)]
        path = find_critical_path(build_graph(steps))
        assert path.nodes == ["heavy"]
        assert path.total_duration == 10

    def test_end_node_need_not_be_a_sink(self):
        # 后继耗时为 0 时与前驱并列，先出现的节点胜出
        path = find_critical_path(build_graph([_step("A", duration=5), _step("B", ["A"], 0)]))
        assert path.nodes == ["A"]
        assert path.total_duration == 5

    def test_missing_durations_count_as_zero(self):
        path = find_critical_path(build_graph([_step("A"), _step("B", ["A"])]))
        assert path.total_duration == 0
        assert path.nodes == ["A"]

    def test_empty_graph(self):
        path = find_critical_path(build_graph([]))
        assert path.nodes == []
        assert path.total_duration == 0

    def test_cycle_raises(self):
        with pytest.raises(CyclicGraphError):
            find_critical_path(build_graph([_step("X", ["Y"]), _step("Y", ["X"])]))

    def test_critical_steps_is_a_copy(self):
        path = find_critical_path(build_graph(_diamond()))
        steps = path.critical_steps
        steps.append("extra")
        assert "extra" not in path.nodes


# ===========================================================================
# 可达性 / 下游
# ===========================================================================


class TestGraphViews:
    """可达性与下游步骤"""

    def test_reachable_from_roots(self):
        graph = build_graph(_diamond())
        assert find_reachable(graph) == {"A", "B", "C", "D"}

    def test_cycle_members_are_unreachable(self):
        graph = build_graph([_step("A"), _step("X", ["Y"]), _step("Y", ["X"])])
        assert find_reachable(graph) == {"A"}

    def test_descendants_in_graph_order(self):
        graph = build_graph(_diamond())
        assert get_descendants(graph, "A") == ["B", "C", "D"]
        assert get_descendants(graph, "C") == ["D"]
        assert get_descendants(graph, "D") == []

    def test_descendants_of_unknown_node(self):
        assert get_descendants(build_graph(_diamond()), "nope") == []
