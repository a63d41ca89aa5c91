from panelflow.service.graph import GraphIndex
from panelflow.storage.models import Definition


def _definition(nodes, connections):
    return Definition.from_dict(
        {
            "id": "graph",
            "name": "graph",
            "nodes": [{"id": node_id, "kind": kind} for node_id, kind in nodes],
            "connections": connections,
        }
    )


def test_fan_in_counts_forward_predecessors():
    graph = GraphIndex(
        _definition(
            [("start", "start"), ("a", "role"), ("b", "role"), ("join", "script"), ("end", "end")],
            [
                {"source": "start", "target": "a"},
                {"source": "start", "target": "b"},
                {"source": "a", "target": "join"},
                {"source": "b", "target": "join"},
                {"source": "join", "target": "end"},
            ],
        )
    )

    assert graph.is_join(graph.position("join"))
    assert not graph.is_join(graph.position("a"))
    assert graph.back_edges == set()
    assert graph.successors(graph.position("start"), None) == [graph.position("a"), graph.position("b")]


def test_loop_back_edge_is_not_a_join():
    graph = GraphIndex(
        _definition(
            [("start", "start"), ("work", "script"), ("gate", "condition"), ("end", "end")],
            [
                {"source": "start", "target": "work"},
                {"source": "work", "target": "gate"},
                {"source": "gate", "target": "work", "guard": True},
                {"source": "gate", "target": "end", "guard": "false"},
            ],
        )
    )
    work, gate, end = graph.position("work"), graph.position("gate"), graph.position("end")

    assert graph.is_back_edge(gate, work)
    assert not graph.is_join(work)
    assert graph.successors(gate, True) == [work]
    assert graph.successors(gate, False) == [end]
    assert graph.successors(gate, None) == []
    assert graph.cycles_without_condition() == []


def test_unguarded_cycle_is_flagged():
    graph = GraphIndex(
        _definition(
            [("start", "start"), ("a", "script"), ("b", "script"), ("end", "end")],
            [
                {"source": "start", "target": "a"},
                {"source": "a", "target": "b"},
                {"source": "b", "target": "a"},
                {"source": "b", "target": "end"},
            ],
        )
    )

    assert graph.cycles_without_condition() == [("b", "a")]
    assert graph.reachable(graph.position("a"), forward_only=True) == {
        graph.position("a"),
        graph.position("b"),
        graph.position("end"),
    }


def test_dangling_connections_and_missing_start_are_tolerated():
    graph = GraphIndex(_definition([("a", "role")], [{"source": "a", "target": "ghost"}]))

    assert graph.start is None
    assert graph.reachable() == set()
    assert graph.outgoing[0] == []
    assert len(graph) == 1
