# tests/test_graph.py
import pytest

from devgraph import dsl
from devgraph.errors import GraphError
from devgraph.graph import ActionGraph, detect_cycle
from devgraph.model import Action, ActionRef


def _graph():
    return ActionGraph.build([
        dsl.build("base", "fake"),
        dsl.build("web", "fake", needs=["build.base"]),
        dsl.deploy("db", "fake"),
        dsl.deploy("web", "fake", build="web", needs=["deploy.db"]),
        dsl.test("web", "fake", needs=["deploy.web"]),
    ])


class TestBuild:
    def test_acyclic_graph_builds(self):
        graph = _graph()
        assert len(graph) == 5
        assert "deploy.web" in graph
        assert "deploy.nope" not in graph

    def test_duplicate_actions_rejected(self):
        with pytest.raises(GraphError, match="Duplicate"):
            ActionGraph.build([dsl.build("a", "fake"), dsl.build("a", "fake")])

    def test_same_name_different_kind_is_fine(self):
        graph = ActionGraph.build([dsl.build("a", "fake"), dsl.deploy("a", "fake", build="a")])
        assert graph.get("deploy.a").build == "a"

    def test_missing_dependency_rejected(self):
        with pytest.raises(GraphError, match="missing action 'build.nope'"):
            ActionGraph.build([dsl.deploy("web", "fake", build="nope")])

    def test_self_reference_is_a_cycle(self):
        with pytest.raises(GraphError) as exc:
            ActionGraph.build([dsl.run("loop", "fake", needs=["run.loop"])])
        assert "run.loop" in exc.value.details["cycle"]

    def test_cycle_names_members(self):
        actions = [
            dsl.run("a", "fake", needs=["run.c"]),
            dsl.run("b", "fake", needs=["run.a"]),
            dsl.run("c", "fake", needs=["run.b"]),
            dsl.run("free", "fake"),
        ]
        with pytest.raises(GraphError) as exc:
            ActionGraph.build(actions)
        cycle = exc.value.details["cycle"]
        assert set(cycle) == {"run.a", "run.b", "run.c"}
        assert cycle[0] == cycle[-1]
        assert "cycle" in str(exc.value)


class TestQueries:
    def test_direct_dependencies_include_implicit_build(self):
        graph = _graph()
        deps = graph.get_dependencies(graph.get("deploy.web"))
        assert [a.key for a in deps] == ["build.web", "deploy.db"]

    def test_recursive_dependencies_in_topological_order(self):
        graph = _graph()
        deps = graph.get_dependencies(graph.get("test.web"), recursive=True)
        assert [a.key for a in deps] == ["build.base", "build.web", "deploy.db", "deploy.web"]

    def test_kind_filter(self):
        graph = _graph()
        deps = graph.get_dependencies(graph.get("test.web"), recursive=True, kinds=["Build"])
        assert [a.key for a in deps] == ["build.base", "build.web"]

    def test_dependents(self):
        graph = _graph()
        base = graph.get("build.base")
        assert [a.key for a in graph.get_dependents(base)] == ["build.web"]
        assert [a.key for a in graph.get_dependents(base, recursive=True)] == [
            "build.web",
            "deploy.web",
            "test.web",
        ]
        assert [a.key for a in graph.get_dependents(base, recursive=True, kinds=["deploy"])] == ["deploy.web"]

    def test_order_is_stable_across_input_order(self):
        actions = [
            dsl.build("b", "fake"),
            dsl.build("a", "fake"),
            dsl.deploy("x", "fake", needs=["build.b", "build.a"]),
        ]
        one = ActionGraph.build(actions)
        two = ActionGraph.build(list(reversed(actions)))
        x1, x2 = one.get("deploy.x"), two.get("deploy.x")
        assert [a.key for a in one.get_dependencies(x1)] == [a.key for a in two.get_dependencies(x2)] == [
            "build.a",
            "build.b",
        ]

    def test_levels(self):
        graph = _graph()
        levels = [[a.key for a in level] for level in graph.levels()]
        assert levels == [
            ["build.base", "deploy.db"],
            ["build.web"],
            ["deploy.web"],
            ["test.web"],
        ]

    def test_unknown_action(self):
        with pytest.raises(GraphError, match="Unknown action"):
            _graph().get("build.nope")

    def test_find_cycle_on_valid_graph(self):
        assert _graph().find_cycle() is None


def test_detect_cycle_raw():
    assert detect_cycle({"a": ["b"], "b": []}) is None
    assert detect_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]


def test_detect_cycle_deep_chain():
    depth = 5000
    chain = {f"n{i}": [f"n{i + 1}"] for i in range(depth)}
    chain[f"n{depth}"] = []
    assert detect_cycle(chain) is None

    chain[f"n{depth}"] = ["n2500"]
    cycle = detect_cycle(chain)
    assert cycle[0] == cycle[-1] == "n2500"
    assert len(cycle) == depth - 2500 + 2


def test_deep_dependency_chain_builds():
    actions = [dsl.build("n0", "fake")]
    actions += [dsl.build(f"n{i}", "fake", needs=[f"build.n{i - 1}"]) for i in range(1, 3000)]
    graph = ActionGraph.build(actions)
    assert len(graph.get_dependencies(graph.get("build.n2999"), recursive=True)) == 2999


def test_static_reference_still_an_edge():
    graph = ActionGraph.build([
        dsl.build("tools", "fake"),
        Action("Run", "job", "fake", dependencies=(ActionRef("Build", "tools", needs_execution=False),)),
    ])
    assert [a.key for a in graph.get_dependencies(graph.get("run.job"))] == ["build.tools"]
