# scheduler.py
from __future__ import annotations

import asyncio
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .context import EngineContext
from .errors import (
    DependencyFailedError,
    DevGraphError,
    GraphError,
    TaskCancelledError,
    TaskExecutionError,
)
from .graph import detect_cycle
from .model import TaskResult
from .tasks import BaseActionTask


@dataclass
class GraphResult:
    """Outcome of one task in a batch: a result, or the error that stopped it."""
    key: str
    type: str
    description: str
    result: Optional[TaskResult] = None
    error: Optional[DevGraphError] = None
    processed: bool = False  # process() was entered (False when up to date or skipped)
    dependency_results: Dict[str, Optional[TaskResult]] = field(default_factory=dict)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def dependency_failed(self) -> bool:
        return isinstance(self.error, DependencyFailedError)

    @property
    def outputs(self) -> Dict:
        return self.result.outputs if self.result else {}


@dataclass
class GraphResults:
    """Results keyed by task key; iteration follows completion order."""
    results: Dict[str, GraphResult] = field(default_factory=dict)
    cancelled: bool = False

    def __getitem__(self, key: str) -> GraphResult:
        return self.results[key]

    def __contains__(self, key: object) -> bool:
        return key in self.results

    def __iter__(self) -> Iterator[GraphResult]:
        return iter(self.results.values())

    def __len__(self) -> int:
        return len(self.results)

    def get(self, key: str) -> Optional[GraphResult]:
        return self.results.get(key)

    def failures(self) -> List[GraphResult]:
        return [r for r in self if r.failed]

    def own_failures(self) -> List[GraphResult]:
        """Failures that are root causes (not skipped because a dependency failed)."""
        return [r for r in self if r.failed and not r.dependency_failed]

    @property
    def ok(self) -> bool:
        return not self.cancelled and not self.failures()


class GraphProcessor:
    """
    Expands root tasks into their full dependency closure and runs them.

    - A task starts only after every task it depends on has finished.
    - Independent tasks run concurrently, bounded per task type and by a global ceiling.
    - A failed task's dependents never run; they are recorded with DependencyFailedError.
      Unrelated branches keep going.
    - Tasks completing in the same wake-up are recorded in key order, which also
      decides the "first" failure for throw_on_error.
    """

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.log = ctx.log.getChild("scheduler")
        self.results: Optional[GraphResults] = None
        self._cancel = asyncio.Event()

    def cancel(self) -> None:
        """Stop the current batch: in-flight tasks are cancelled, nothing new is dispatched."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # expansion
    # ------------------------------------------------------------------

    def expand(self, roots: Iterable[BaseActionTask]) -> tuple[Dict[str, BaseActionTask], Dict[str, List[str]]]:
        """Full transitive task set, deduplicated by key, plus each task's dependency keys."""
        tasks: Dict[str, BaseActionTask] = {}
        deps: Dict[str, List[str]] = {}

        queue: List[BaseActionTask] = []
        for task in roots:
            if task.key in tasks:
                tasks[task.key].force = tasks[task.key].force or task.force
                continue
            tasks[task.key] = task
            queue.append(task)

        while queue:
            task = queue.pop(0)
            upstream = task.resolve_dependencies()
            deps[task.key] = sorted({d.key for d in upstream})
            for dep in upstream:
                if dep.key not in tasks:
                    tasks[dep.key] = dep
                    queue.append(dep)

        cycle = detect_cycle(deps)
        if cycle:
            raise GraphError(f"Task dependency cycle detected: {' -> '.join(cycle)}", {"cycle": cycle})
        return tasks, deps

    # ------------------------------------------------------------------
    # processing
    # ------------------------------------------------------------------

    async def process_tasks(
        self,
        tasks: Iterable[BaseActionTask],
        *,
        throw_on_error: bool = False,
    ) -> GraphResults:
        all_tasks, deps = self.expand(tasks)
        results = GraphResults()
        self.results = results

        dependents: Dict[str, List[str]] = {key: [] for key in all_tasks}
        for key, upstream in deps.items():
            for dep in upstream:
                dependents[dep].append(key)

        waiting: Dict[str, Set[str]] = {key: set(upstream) for key, upstream in deps.items()}
        ready: Set[str] = {key for key, upstream in waiting.items() if not upstream}
        running: Counter = Counter()
        in_flight: Dict[asyncio.Task, str] = {}
        first_error: Optional[DevGraphError] = None

        self.log.info("processing %d tasks", len(all_tasks))

        def complete(gr: GraphResult) -> None:
            # dependency failures cascade breadth-first
            pending = deque([gr])
            while pending:
                gr = pending.popleft()
                results.results[gr.key] = gr
                for child in sorted(dependents[gr.key]):
                    waiting[child].discard(gr.key)
                    if waiting[child]:
                        continue
                    failed = [d for d in deps[child] if results.results[d].failed]
                    if failed:
                        pending.append(self._dependency_failure(all_tasks[child], failed))
                    else:
                        ready.add(child)

        cancel_wait = asyncio.ensure_future(self._cancel.wait())
        try:
            while ready or in_flight:
                stop_dispatch = self.cancelled or (throw_on_error and first_error is not None)
                if not stop_dispatch:
                    for key in sorted(ready):
                        if len(in_flight) >= self.ctx.config.max_concurrency:
                            break
                        task = all_tasks[key]
                        if running[task.type] >= self._limit(task):
                            continue
                        ready.discard(key)
                        running[task.type] += 1
                        dependency_results = {
                            d: results.results[d].result for d in deps[key]
                        }
                        fut = asyncio.ensure_future(self._run_task(task, dependency_results))
                        in_flight[fut] = key

                if not in_flight:
                    break

                done, _ = await asyncio.wait(
                    [*in_flight, cancel_wait],
                    return_when=asyncio.FIRST_COMPLETED,
                )

                for fut in sorted((f for f in done if f in in_flight), key=in_flight.__getitem__):
                    key = in_flight.pop(fut)
                    running[all_tasks[key].type] -= 1
                    gr = fut.result()
                    if gr.failed and first_error is None:
                        first_error = gr.error
                    complete(gr)

                if self.cancelled and in_flight:
                    await self._cancel_in_flight(in_flight, all_tasks, results)

            if self.cancelled:
                results.cancelled = True
                self.log.info("batch cancelled, %d of %d tasks recorded", len(results), len(all_tasks))
        finally:
            cancel_wait.cancel()
            if in_flight:
                # outer cancellation (e.g. interrupt): don't leave handlers running
                for fut in in_flight:
                    fut.cancel()
                await asyncio.gather(*in_flight, return_exceptions=True)

        if throw_on_error and first_error is not None:
            raise first_error
        return results

    async def _run_task(self, task: BaseActionTask, dependency_results: Dict[str, Optional[TaskResult]]) -> GraphResult:
        gr = GraphResult(
            key=task.key,
            type=task.type,
            description=task.description(),
            dependency_results=dependency_results,
            started_at=time.time(),
        )
        try:
            status = None
            if not task.force:
                self._emit(task, "checking")
                status = await task.get_status(dependency_results)
            if status is not None and status.ready:
                gr.result = status
                self._emit(task, "ready", up_to_date=True, cached=status.cached)
            else:
                gr.processed = True
                self._emit(task, "processing")
                gr.result = await task.process(dependency_results)
                self._emit(task, "ready", up_to_date=False)
        except DevGraphError as err:
            gr.error = err
        except Exception as err:
            gr.error = TaskExecutionError(f"{task.description()} failed: {err}", {"cause": type(err).__name__})
            gr.error.__cause__ = err

        if gr.error is not None:
            gr.error.details.setdefault("task", task.key)
            self.log.debug("%s failed", task.key, exc_info=gr.error)
            self._emit(task, "failed", error=gr.error.message, reason=gr.error.kind)
        gr.completed_at = time.time()
        return gr

    async def _cancel_in_flight(
        self,
        in_flight: Dict[asyncio.Task, str],
        all_tasks: Dict[str, BaseActionTask],
        results: GraphResults,
    ) -> None:
        for fut in in_flight:
            fut.cancel()
        outcomes = await asyncio.gather(*in_flight, return_exceptions=True)
        for (fut, key), outcome in sorted(zip(in_flight.items(), outcomes), key=lambda p: p[0][1]):
            task = all_tasks[key]
            if isinstance(outcome, GraphResult):
                # finished before the cancel landed
                results.results[key] = outcome
                continue
            err = TaskCancelledError(f"{task.description()} was cancelled", {"task": key})
            results.results[key] = GraphResult(
                key=key,
                type=task.type,
                description=task.description(),
                error=err,
                processed=True,
                completed_at=time.time(),
            )
            self._emit(task, "cancelled")
        in_flight.clear()

    def _dependency_failure(self, task: BaseActionTask, failed: List[str]) -> GraphResult:
        err = DependencyFailedError(
            f"{task.description()} was not run because {', '.join(failed)} failed",
            {"task": task.key, "failed_dependencies": ", ".join(failed)},
        )
        self._emit(task, "failed", error=err.message, reason=err.kind)
        return GraphResult(
            key=task.key,
            type=task.type,
            description=task.description(),
            error=err,
            completed_at=time.time(),
        )

    def _limit(self, task: BaseActionTask) -> int:
        return self.ctx.config.limit_for(task.type, task.concurrency_limit)

    def _emit(self, task: BaseActionTask, state: str, **data) -> None:
        self.ctx.events.emit_simple("task.status", task.key, state=state, type=task.type, **data)
