# tests/test_scheduler.py
import asyncio

import pytest

from devgraph import dsl
from devgraph.errors import (
    DependencyFailedError,
    GraphError,
    TaskCancelledError,
    TaskExecutionError,
    TaskTimeoutError,
)
from devgraph.runner import make_tasks, run_actions
from devgraph.scheduler import GraphProcessor
from devgraph.tasks import BuildTask, DeployTask


def _web_stack():
    return [
        dsl.build("web", "fake"),
        dsl.deploy("db", "fake"),
        dsl.deploy("web", "fake", build="web", needs=["deploy.db"], image=dsl.output("build.web", "version")),
    ]


@pytest.mark.asyncio
async def test_dependencies_run_first_and_outputs_flow(make_ctx, fake):
    ctx = make_ctx(_web_stack())
    results = await run_actions(ctx, "deploy", ["web"])

    assert results.ok
    assert set(results.results) == {"build.build.web", "deploy.deploy.db", "deploy.deploy.web"}
    order = fake.executed()
    assert order.index("build.web") < order.index("deploy.web")
    assert order.index("deploy.db") < order.index("deploy.web")

    build_version = results["build.build.web"].result.version
    assert fake.seen_specs["deploy.deploy.web"]["image"] == build_version
    assert set(fake.seen_dependency_results["deploy.deploy.web"]) == {"build.build.web", "deploy.deploy.db"}


@pytest.mark.asyncio
async def test_second_run_is_up_to_date(make_ctx, fake):
    ctx = make_ctx(_web_stack())
    await run_actions(ctx, "deploy")
    fake.calls.clear()

    results = await GraphProcessor(ctx).process_tasks(make_tasks(ctx, "deploy"))

    assert results.ok
    assert fake.executed() == []
    assert not any(r.processed for r in results)
    assert all(r.result.cached for r in results)


@pytest.mark.asyncio
async def test_failure_skips_dependents_but_not_siblings(make_ctx, fake):
    ctx = make_ctx([
        dsl.build("web", "fake"),
        dsl.build("worker", "fake"),
        dsl.deploy("web", "fake", build="web"),
        dsl.deploy("worker", "fake", build="worker"),
    ])
    fake.fail.add("build.web")

    results = await run_actions(ctx, "deploy")

    assert not results.ok
    assert isinstance(results["build.build.web"].error, TaskExecutionError)
    skipped = results["deploy.deploy.web"]
    assert isinstance(skipped.error, DependencyFailedError)
    assert not skipped.processed
    assert "deploy.web" not in fake.executed()
    assert results["deploy.deploy.worker"].result.ready
    assert [r.key for r in results.own_failures()] == ["build.build.web"]


@pytest.mark.asyncio
async def test_dependency_failure_cascades(make_ctx, fake):
    ctx = make_ctx([
        dsl.build("web", "fake"),
        dsl.deploy("web", "fake", build="web"),
        dsl.test("e2e", "fake", needs=["deploy.web"]),
    ])
    fake.fail.add("build.web")

    results = await run_actions(ctx, "test")

    assert isinstance(results["deploy.deploy.web"].error, DependencyFailedError)
    assert isinstance(results["test.test.e2e"].error, DependencyFailedError)
    assert fake.executed() == ["build.web"]


@pytest.mark.asyncio
async def test_type_concurrency_limit(make_ctx, fake):
    ctx = make_ctx([dsl.build(f"b{i:02d}", "fake") for i in range(12)])
    for i in range(12):
        fake.delay[f"build.b{i:02d}"] = 0.01

    results = await run_actions(ctx, "build")

    assert results.ok
    assert len(fake.executed("build")) == 12
    assert fake.max_active["build"] == 5


@pytest.mark.asyncio
async def test_configured_limit_and_global_ceiling(make_ctx, fake):
    ctx = make_ctx([dsl.run(f"r{i}", "fake") for i in range(6)], max_concurrency=2)
    for i in range(6):
        fake.delay[f"run.r{i}"] = 0.01
    await run_actions(ctx, "run")
    assert fake.max_active["run"] == 2

    ctx = make_ctx([dsl.build(f"b{i}", "fake") for i in range(4)], task_limits={"build": 1})
    await run_actions(ctx, "build")
    assert fake.max_active["build"] == 1


@pytest.mark.asyncio
async def test_force_reprocesses_root_only(make_ctx, fake):
    ctx = make_ctx([dsl.build("web", "fake"), dsl.deploy("web", "fake", build="web")])
    await run_actions(ctx, "deploy")
    fake.calls.clear()

    results = await run_actions(ctx, "deploy", force=True)

    assert fake.executed() == ["deploy.web"]
    assert results["deploy.deploy.web"].processed
    assert not results["build.build.web"].processed
    assert set(fake.seen_dependency_results["deploy.deploy.web"]) == {"build.build.web"}

    fake.calls.clear()
    await run_actions(ctx, "deploy", force=True, force_build=True)
    assert fake.executed() == ["build.web", "deploy.web"]


@pytest.mark.asyncio
async def test_duplicate_roots_are_merged(make_ctx, fake):
    ctx = make_ctx([dsl.build("web", "fake")])
    action = ctx.graph.get("build.web")
    processor = GraphProcessor(ctx)

    results = await processor.process_tasks([BuildTask(ctx, action), BuildTask(ctx, action, force=True)])

    assert len(results) == 1
    assert fake.executed() == ["build.web"]


@pytest.mark.asyncio
async def test_shared_dependency_runs_once(make_ctx, fake):
    ctx = make_ctx([
        dsl.build("base", "fake"),
        dsl.deploy("a", "fake", build="base"),
        dsl.deploy("b", "fake", build="base"),
    ])
    await run_actions(ctx, "deploy")
    assert fake.executed("build") == ["build.base"]


@pytest.mark.asyncio
async def test_cancel_between_tasks(make_ctx, fake):
    ctx = make_ctx([dsl.build("a", "fake"), dsl.build("b", "fake")], task_limits={"build": 1})
    processor = GraphProcessor(ctx)

    def on_event(event):
        if event.type == "task.status" and event.source == "build.build.a" and event.data["state"] == "ready":
            processor.cancel()

    ctx.events.add_listener(on_event)
    results = await processor.process_tasks(make_tasks(ctx, "build"))

    assert results.cancelled
    assert not results.ok
    assert results["build.build.a"].result.ready
    assert "build.build.b" not in results
    assert fake.executed() == ["build.a"]


@pytest.mark.asyncio
async def test_cancel_in_flight(make_ctx, fake):
    ctx = make_ctx([dsl.build("a", "fake"), dsl.build("b", "fake")], task_limits={"build": 1})
    fake.hang.add("build.a")
    processor = GraphProcessor(ctx)

    run = asyncio.ensure_future(processor.process_tasks(make_tasks(ctx, "build")))

    async def started():
        while not fake.active["build"]:
            await asyncio.sleep(0)

    await asyncio.wait_for(started(), 5)
    processor.cancel()
    results = await asyncio.wait_for(run, 5)

    assert isinstance(results["build.build.a"].error, TaskCancelledError)
    assert "build.build.b" not in results
    assert fake.cancelled == ["build.a"]


@pytest.mark.asyncio
async def test_timeout_fails_task(make_ctx, fake):
    ctx = make_ctx([dsl.run("slow", "fake", timeout=0.05), dsl.run("quick", "fake")])
    fake.hang.add("run.slow")

    results = await asyncio.wait_for(run_actions(ctx, "run"), 5)

    error = results["run.run.slow"].error
    assert isinstance(error, TaskTimeoutError)
    assert error.details["task"] == "run.run.slow"
    assert results["run.run.quick"].result.ready


@pytest.mark.asyncio
async def test_throw_on_error_raises_first_failure(make_ctx, fake):
    ctx = make_ctx([dsl.build("a", "fake"), dsl.build("b", "fake"), dsl.build("c", "fake")], task_limits={"build": 1})
    fake.fail.add("build.a")

    with pytest.raises(TaskExecutionError) as exc:
        await run_actions(ctx, "build", throw_on_error=True)

    assert exc.value.details["task"] == "build.build.a"
    assert fake.executed() == ["build.a"]


@pytest.mark.asyncio
async def test_status_events(make_ctx, fake):
    ctx = make_ctx([dsl.build("web", "fake")])
    await run_actions(ctx, "build")
    await run_actions(ctx, "build")

    states = [e.data["state"] for e in ctx.events.history(type="task.status", source="build.build.web")]
    assert states == ["checking", "processing", "ready", "checking", "ready"]
    assert {e.data["type"] for e in ctx.events.history(type="task.status")} == {"build"}
    last = ctx.events.history(type="task.status")[-1]
    assert last.data["up_to_date"] is True
    assert last.data["cached"] is True


@pytest.mark.asyncio
async def test_failure_event_carries_reason(make_ctx, fake):
    ctx = make_ctx([dsl.build("web", "fake"), dsl.deploy("web", "fake", build="web")])
    fake.fail.add("build.web")
    await run_actions(ctx, "deploy")

    failed = {e.source: e.data["reason"] for e in ctx.events.history(type="task.status") if e.data["state"] == "failed"}
    assert failed == {"build.build.web": "execution", "deploy.deploy.web": "dependency"}


@pytest.mark.asyncio
async def test_delete_runs_dependents_first(make_ctx, fake):
    ctx = make_ctx([
        dsl.deploy("db", "fake"),
        dsl.deploy("api", "fake", needs=["deploy.db"]),
    ])
    results = await run_actions(ctx, "delete", ["db"])

    assert results.ok
    assert fake.executed("delete") == ["deploy.api", "deploy.db"]


@pytest.mark.asyncio
async def test_disabled_roots_are_skipped(make_ctx, fake):
    ctx = make_ctx([dsl.build("web", "fake", disabled=True), dsl.deploy("web", "fake", build="web")])

    assert make_tasks(ctx, "build") == []
    results = await run_actions(ctx, "deploy")
    assert results.ok
    assert fake.executed() == ["build.web", "deploy.web"]


def test_unknown_names_raise(make_ctx):
    ctx = make_ctx([dsl.build("web", "fake")])
    with pytest.raises(GraphError):
        make_tasks(ctx, "build", ["nope"])


def test_names_are_glob_patterns(make_ctx):
    ctx = make_ctx([dsl.build("api", "fake"), dsl.build("api-worker", "fake"), dsl.build("web", "fake")])

    assert [t.key for t in make_tasks(ctx, "build", ["api*"])] == ["build.build.api", "build.build.api-worker"]
    assert [t.key for t in make_tasks(ctx, "build", ["web", "w?b", "*"])] == [
        "build.build.web",
        "build.build.api",
        "build.build.api-worker",
    ]

    with pytest.raises(GraphError) as exc:
        make_tasks(ctx, "build", ["api", "db-*"])
    assert "db-*" in str(exc.value)
    assert exc.value.details["known"] == ["api", "api-worker", "web"]


def test_expand_collects_closure(make_ctx):
    ctx = make_ctx(_web_stack())
    tasks, deps = GraphProcessor(ctx).expand([DeployTask(ctx, ctx.graph.get("deploy.web"))])
    assert sorted(tasks) == ["build.build.web", "deploy.deploy.db", "deploy.deploy.web"]
    assert deps["deploy.deploy.web"] == ["build.build.web", "deploy.deploy.db"]
    assert deps["build.build.web"] == []


@pytest.mark.asyncio
async def test_output_reference_schedules_static_dependency(make_ctx, fake):
    ctx = make_ctx([
        dsl.build("web", "fake"),
        dsl.deploy("web", "fake", needs=[dsl.static("build.web")], image=dsl.output("build.web", "version")),
    ])
    results = await run_actions(ctx, "deploy")

    assert results.ok
    assert fake.executed() == ["build.web", "deploy.web"]
    assert fake.seen_specs["deploy.deploy.web"]["image"] == results["build.build.web"].result.version


class _PingPongBuild(BuildTask):
    """Build a depends on build b and b on a, at the task level only."""

    def resolve_dependencies(self):
        other = "b" if self.action.name == "a" else "a"
        return [_PingPongBuild(self.ctx, self.ctx.graph.get(f"build.{other}"))]


@pytest.mark.asyncio
async def test_task_cycle_fails_before_anything_runs(make_ctx, fake):
    ctx = make_ctx([dsl.build("a", "fake"), dsl.build("b", "fake")])

    with pytest.raises(GraphError) as exc:
        await GraphProcessor(ctx).process_tasks([_PingPongBuild(ctx, ctx.graph.get("build.a"))])

    cycle = exc.value.details["cycle"]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"build.build.a", "build.build.b"}
    assert fake.calls == []
    assert ctx.events.history(type="task.status") == []


@pytest.mark.asyncio
async def test_failure_cascades_down_a_deep_chain(make_ctx, fake):
    actions = [dsl.build("n0000", "fake")]
    actions += [dsl.build(f"n{i:04d}", "fake", needs=[f"build.n{i - 1:04d}"]) for i in range(1, 2000)]
    ctx = make_ctx(actions)
    fake.fail.add("build.n0000")

    results = await run_actions(ctx, "build", ["n1999"])

    assert len(results) == 2000
    assert fake.executed() == ["build.n0000"]
    assert isinstance(results["build.build.n1999"].error, DependencyFailedError)
    assert [r.key for r in results.own_failures()] == ["build.build.n0000"]
