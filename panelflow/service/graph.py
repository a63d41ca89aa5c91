"""Index-based adjacency view over a definition's nodes and connections.

Nodes live in an arena (``nodes``) and everything else refers to them by
integer position. The view does not require the graph to be acyclic: a depth
first search from the start node classifies back edges, and only forward edges
count towards fan-in so that loop re-entry never waits on its own body.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

from panelflow.storage.models import Definition, Node, NodeKind


class GraphIndex:
    def __init__(self, definition: Definition) -> None:
        self.nodes: List[Node] = list(definition.nodes)
        self.index: Dict[str, int] = {}
        for position, node in enumerate(self.nodes):
            # First occurrence wins; duplicates are reported by validation
            self.index.setdefault(node.id, position)
        size = len(self.nodes)
        self.outgoing: List[List[Tuple[int, Optional[bool]]]] = [[] for _ in range(size)]
        self.incoming: List[List[int]] = [[] for _ in range(size)]
        for connection in definition.connections:
            source = self.index.get(connection.source)
            target = self.index.get(connection.target)
            if source is None or target is None:
                continue
            self.outgoing[source].append((target, connection.guard))
            self.incoming[target].append(source)

        starts = [i for i, n in enumerate(self.nodes) if n.kind == NodeKind.START]
        self.start: Optional[int] = starts[0] if starts else None
        self.back_edges: Set[Tuple[int, int]] = self._classify_back_edges()
        self.forward_preds: List[Set[int]] = [set() for _ in range(size)]
        for target in range(size):
            for source in self.incoming[target]:
                if (source, target) not in self.back_edges:
                    self.forward_preds[target].add(source)

    def __len__(self) -> int:
        return len(self.nodes)

    def _classify_back_edges(self) -> Set[Tuple[int, int]]:
        back: Set[Tuple[int, int]] = set()
        if self.start is None:
            return back
        # Iterative DFS; a node on the current path marks a back edge
        on_path: Set[int] = set()
        visited: Set[int] = set()
        stack: List[Tuple[int, int]] = [(self.start, 0)]
        visited.add(self.start)
        on_path.add(self.start)
        while stack:
            node, cursor = stack[-1]
            edges = self.outgoing[node]
            if cursor >= len(edges):
                stack.pop()
                on_path.discard(node)
                continue
            stack[-1] = (node, cursor + 1)
            target = edges[cursor][0]
            if target in on_path:
                back.add((node, target))
            elif target not in visited:
                visited.add(target)
                on_path.add(target)
                stack.append((target, 0))
        return back

    def position(self, node_id: str) -> Optional[int]:
        return self.index.get(node_id)

    def is_join(self, position: int) -> bool:
        return len(self.forward_preds[position]) > 1

    def is_back_edge(self, source: int, target: int) -> bool:
        return (source, target) in self.back_edges

    def successors(self, position: int, branch: Optional[bool]) -> List[int]:
        """Targets to follow after ``position`` produced ``branch``.

        Guarded connections are taken only when the guard equals the node's
        boolean outcome; nodes without an outcome never satisfy a guard.
        Unguarded connections are always taken.
        """
        chosen: List[int] = []
        for target, guard in self.outgoing[position]:
            if guard is not None and (branch is None or guard != branch):
                continue
            if target not in chosen:
                chosen.append(target)
        return chosen

    def reachable(self, origin: Optional[int] = None, *, forward_only: bool = False) -> Set[int]:
        origin = self.start if origin is None else origin
        if origin is None:
            return set()
        seen = {origin}
        stack = [origin]
        while stack:
            node = stack.pop()
            for target, _guard in self.outgoing[node]:
                if forward_only and (node, target) in self.back_edges:
                    continue
                if target not in seen:
                    seen.add(target)
                    stack.append(target)
        return seen

    def cycles_without_condition(self) -> List[Tuple[str, str]]:
        """Back edges whose loop body contains no condition node."""
        flagged: List[Tuple[str, str]] = []
        for source, target in sorted(self.back_edges):
            body = self.reachable(target, forward_only=True)
            loop = {n for n in body if source in self.reachable(n, forward_only=True)}
            loop.add(target)
            if not any(self.nodes[n].kind == NodeKind.CONDITION for n in loop):
                flagged.append((self.nodes[source].id, self.nodes[target].id))
        return flagged
