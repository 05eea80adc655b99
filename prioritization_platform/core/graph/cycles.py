from __future__ import annotations

from collections import defaultdict, deque
from typing import Iterable, Optional, Sequence, Union

from prioritization_platform.core.errors import CycleDetectedError
from prioritization_platform.core.model import DependencyEdge


EdgeLike = Union[DependencyEdge, tuple[str, str]]


def _pair(edge: EdgeLike) -> tuple[str, str]:
    if isinstance(edge, DependencyEdge):
        return edge.as_pair()
    source, target = edge
    return (source, target)


def build_adjacency(edges: Iterable[EdgeLike]) -> dict[str, list[str]]:
    """source -> targets, first-seen order, duplicates dropped."""
    adjacency: dict[str, list[str]] = defaultdict(list)
    for edge in edges:
        source, target = _pair(edge)
        if target not in adjacency[source]:
            adjacency[source].append(target)
    return dict(adjacency)


def find_path(edges: Iterable[EdgeLike], start: str, goal: str) -> Optional[list[str]]:
    """Shortest directed path start -> goal (BFS), or None."""
    adjacency = build_adjacency(edges)
    return _bfs_path(adjacency, start, goal)


def _bfs_path(adjacency: dict[str, list[str]], start: str, goal: str) -> Optional[list[str]]:
    if start == goal:
        return [start]

    parent: dict[str, str] = {}
    seen = {start}
    q: deque[str] = deque([start])
    while q:
        cur = q.popleft()
        for nxt in adjacency.get(cur, []):
            if nxt in seen:
                continue
            parent[nxt] = cur
            if nxt == goal:
                path = [goal]
                while path[-1] != start:
                    path.append(parent[path[-1]])
                return list(reversed(path))
            seen.add(nxt)
            q.append(nxt)
    return None


def cycle_path(edges: Iterable[EdgeLike], proposed: EdgeLike) -> Optional[list[str]]:
    """The loop `proposed` would close, as source -> target -> ... -> source, else None."""
    source, target = _pair(proposed)
    back = find_path(edges, target, source)
    if back is None:
        return None
    return [source] + back


def would_create_cycle(edges: Iterable[EdgeLike], proposed: EdgeLike) -> bool:
    """True iff `source` is reachable from `target`; a self-loop always counts."""
    return cycle_path(edges, proposed) is not None


def check_edge_batch(edges: Sequence[EdgeLike], proposed: Sequence[EdgeLike]) -> None:
    """Accept or reject a batch of new edges as a whole.

    Each proposed edge is checked against the existing edges plus the proposed
    edges before it. The first edge that closes a loop rejects the batch with a
    CycleDetectedError carrying the loop. Neither input is modified.
    """
    working: list[tuple[str, str]] = [_pair(e) for e in edges]
    for i, edge in enumerate(proposed):
        path = cycle_path(working, edge)
        if path is not None:
            source, target = _pair(edge)
            raise CycleDetectedError(
                code="E_CYCLE_DETECTED",
                message="dependency cycle detected: " + " -> ".join(path),
                path=f"edges[{i}]",
                details=(f"rejected edge {source} -> {target}",),
                cycle_path=tuple(path),
            )
        working.append(_pair(edge))


def detect_cycles(adjacency: dict[str, list[str]]) -> list[list[str]]:
    """Every distinct cycle reachable by DFS in an existing graph, each closed (first == last)."""
    WHITE, GRAY, BLACK = 0, 1, 2
    nodes: list[str] = list(adjacency.keys())
    for targets in adjacency.values():
        for t in targets:
            if t not in nodes:
                nodes.append(t)

    state: dict[str, int] = {n: WHITE for n in nodes}
    stack: list[str] = []
    emitted: set[str] = set()
    out: list[list[str]] = []

    def dfs(u: str) -> None:
        state[u] = GRAY
        stack.append(u)
        for v in adjacency.get(u, []):
            if state[v] == GRAY:
                cycle = stack[stack.index(v) :] + [v]
                key = "->".join(cycle)
                if key not in emitted:
                    emitted.add(key)
                    out.append(cycle)
            elif state[v] == WHITE:
                dfs(v)
        stack.pop()
        state[u] = BLACK

    for n in nodes:
        if state[n] == WHITE:
            dfs(n)

    return out
