import itertools
import random

import pytest

from prioritization_platform.core.errors import CycleDetectedError
from prioritization_platform.core.graph.cycles import (
    build_adjacency,
    check_edge_batch,
    detect_cycles,
    find_path,
    would_create_cycle,
)
from prioritization_platform.core.model import DependencyEdge


CHAIN = [("a", "b"), ("b", "c"), ("c", "d")]


def test_would_create_cycle_on_back_edge():
    assert would_create_cycle(CHAIN, ("d", "a"))
    assert would_create_cycle(CHAIN, ("c", "b"))


def test_forward_and_unrelated_edges_are_safe():
    assert not would_create_cycle(CHAIN, ("a", "d"))
    assert not would_create_cycle(CHAIN, ("x", "y"))
    assert not would_create_cycle([], ("a", "b"))


def test_self_loop_is_a_cycle():
    assert would_create_cycle([], ("a", "a"))


def test_accepts_dependency_edges():
    edges = [DependencyEdge(source_task_id=s, target_task_id=t) for s, t in CHAIN]
    assert would_create_cycle(edges, DependencyEdge(source_task_id="d", target_task_id="b"))


def test_find_path_is_shortest():
    edges = CHAIN + [("a", "c")]
    assert find_path(edges, "a", "d") == ["a", "c", "d"]
    assert find_path(edges, "d", "a") is None
    assert find_path(edges, "a", "a") == ["a"]


def _ancestors(edges, node):
    # Nodes with a path to `node`.
    out = set()
    stack = [node]
    while stack:
        cur = stack.pop()
        for s, t in edges:
            if t == cur and s not in out:
                out.add(s)
                stack.append(s)
    return out


def test_cycle_invariant_on_random_dags():
    rng = random.Random(7)
    nodes = [f"n{i}" for i in range(8)]
    for _ in range(25):
        # Edges only go from lower to higher index: always acyclic.
        edges = [(u, v) for u, v in itertools.combinations(nodes, 2) if rng.random() < 0.3]
        for u, v in itertools.permutations(nodes, 2):
            expected = v == u or v in _ancestors(edges, u)
            assert would_create_cycle(edges, (u, v)) == expected
            if not expected:
                assert detect_cycles(build_adjacency(edges + [(u, v)])) == []


def test_check_edge_batch_rejects_whole_batch_with_path():
    edges = list(CHAIN)
    snapshot = list(edges)
    batch = [("d", "x"), ("x", "a")]

    with pytest.raises(CycleDetectedError) as exc:
        check_edge_batch(edges, batch)

    err = exc.value
    assert err.code == "E_CYCLE_DETECTED"
    assert err.cycle_path == ("x", "a", "b", "c", "d", "x")
    assert "x -> a -> b -> c -> d -> x" in err.message
    assert err.path == "edges[1]"
    assert edges == snapshot


def test_check_edge_batch_accepts_acyclic_batch():
    check_edge_batch(CHAIN, [("a", "x"), ("x", "d")])


def test_detect_cycles_reports_each_loop_once():
    adjacency = {"a": ["b"], "b": ["c"], "c": ["a"], "d": ["d"]}
    cycles = detect_cycles(adjacency)
    assert ["a", "b", "c", "a"] in cycles
    assert ["d", "d"] in cycles
    assert len(cycles) == 2


def test_build_adjacency_drops_duplicates():
    assert build_adjacency([("a", "b"), ("a", "b"), ("a", "c")]) == {"a": ["b", "c"]}
