# tasks.py
from __future__ import annotations

import asyncio
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional

from .cache import artifact_key, copy_artifacts
from .context import EngineContext
from .errors import (
    ConfigurationError,
    OutputValidationError,
    TaskExecutionError,
    TaskTimeoutError,
)
from .model import Action, ActionRef, ActionStatus, DependencyOutput, ResolvedAction, TaskResult
from .router import HandlerParams

DependencyResults = Mapping[str, Optional[TaskResult]]

LOG_TAIL_LINES = 50


def resolve_action(
    action: Action,
    version: str,
    dependency_results: DependencyResults,
    *,
    strict: bool = True,
) -> ResolvedAction:
    """
    Produce a ResolvedAction whose spec has every DependencyOutput marker replaced by
    the named output of an upstream task. The shared Action is left untouched.

    With strict=False unresolvable markers are kept as-is.
    """
    outputs: Dict[str, Dict[str, Any]] = {}
    for result in dependency_results.values():
        if result is not None:
            outputs.setdefault(result.action_key, {}).update(result.outputs)

    def sub(value: Any) -> Any:
        if isinstance(value, DependencyOutput):
            ref = ActionRef.parse(value.ref).key
            available = outputs.get(ref, {})
            if value.key in available:
                return available[value.key]
            if not strict:
                return value
            raise ConfigurationError(
                f"{action.description()} references output '{value.key}' of '{ref}', which is not available",
                {"available": sorted(available) if ref in outputs else f"no result for '{ref}'"},
            )
        if isinstance(value, Mapping):
            return {k: sub(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [sub(v) for v in value]
        return value

    return ResolvedAction(action=action, version=version, spec=sub(action.spec))


class BaseActionTask:
    """
    One verb against one action.

    State machine per task:
      pending -> status check -> up to date -> done
                              -> needs run  -> process -> done | failed
    force=True skips the status check. Errors raised by process() are not retried here.
    """

    type: ClassVar[str] = ""
    concurrency_limit: ClassVar[Optional[int]] = None
    cache_results: ClassVar[bool] = True
    collects_artifacts: ClassVar[bool] = False

    def __init__(
        self,
        ctx: EngineContext,
        action: Action,
        *,
        force: bool = False,
        force_actions: Iterable[str] = (),
    ):
        self.ctx = ctx
        self.action = action
        self.force = force
        self.force_actions = frozenset(force_actions)
        self.log = ctx.log.getChild(action.key)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key} force={self.force}>"

    @property
    def key(self) -> str:
        return f"{self.type}.{self.action.key}"

    @property
    def timeout(self) -> Optional[float]:
        return self.action.timeout

    def description(self) -> str:
        return f"{self.type} {self.action.description()}"

    # ------------------------------------------------------------------
    # dependencies
    # ------------------------------------------------------------------

    def resolve_dependencies(self) -> List[BaseActionTask]:
        """
        Upstream tasks: an execute-type task for every dependency that needs execution
        (this includes the implicit `build`). Static references are versioned only.
        """
        deps = []
        for ref in self.action.dependency_refs():
            if not ref.needs_execution:
                continue
            deps.append(self.task_for(self.ctx.graph.get(ref)))
        return deps

    def task_for(self, action: Action) -> BaseActionTask:
        cls = EXECUTE_TASKS[action.kind]
        return cls(
            self.ctx,
            action,
            force=action.key in self.force_actions,
            force_actions=self.force_actions,
        )

    # ------------------------------------------------------------------
    # resolution
    # ------------------------------------------------------------------

    def get_resolved_action(self, dependency_results: DependencyResults, *, strict: bool = True) -> ResolvedAction:
        version = self.ctx.versions.get_version(self.action)
        return resolve_action(self.action, version, dependency_results, strict=strict)

    def make_params(self, resolved: ResolvedAction, dependency_results: DependencyResults) -> HandlerParams:
        return HandlerParams(
            action=resolved,
            verb=self.type,
            log=self.log,
            events=self.ctx.events,
            root=self.ctx.root,
            dependency_results={k: v for k, v in dependency_results.items() if v is not None},
        )

    def make_result(self, resolved: ResolvedAction, status: ActionStatus, *, cached: bool = False) -> TaskResult:
        return TaskResult(
            task_key=self.key,
            action_key=self.action.key,
            verb=self.type,
            version=resolved.version,
            state=status.state,
            detail=status.detail,
            outputs=dict(status.outputs),
            cached=cached,
        )

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    async def get_status(self, dependency_results: DependencyResults) -> Optional[TaskResult]:
        """
        Cheap, read-only check of whether previous work is still valid for the current version.

        A stored ready result for this version wins. Otherwise the plugin is asked.
        Errors fail open (None), except configuration and output validation errors.
        """
        resolved = self.get_resolved_action(dependency_results)

        stored = self.ctx.results.get(self.action.key, self.type, resolved.version)
        if stored is not None and stored.ready:
            self.log.debug("using stored result for %s (%s)", self.key, resolved.version)
            return replace(stored, task_key=self.key, cached=True)

        check = self.check_status(resolved, dependency_results)
        try:
            if self.timeout:
                return await asyncio.wait_for(check, self.timeout)
            return await check
        except (ConfigurationError, OutputValidationError):
            raise
        except asyncio.TimeoutError:
            self.log.warning("status check for %s timed out after %ss, treating as outdated", self.key, self.timeout)
            return None
        except Exception as err:
            self.log.warning("status check for %s failed, treating as outdated: %s", self.key, err)
            return None

    async def check_status(self, resolved: ResolvedAction, dependency_results: DependencyResults) -> Optional[TaskResult]:
        params = self.make_params(resolved, dependency_results)
        status = await self.ctx.router.get_status(params)
        return self.make_result(resolved, status)

    # ------------------------------------------------------------------
    # process
    # ------------------------------------------------------------------

    async def process(self, dependency_results: DependencyResults) -> TaskResult:
        resolved = self.get_resolved_action(dependency_results)
        params = self.make_params(resolved, dependency_results)

        if self.action.disabled:
            self.log.info(
                "%s is disabled, but is being executed because another action depends on it.",
                self.action.description(),
            )

        try:
            if self.timeout:
                status = await asyncio.wait_for(self.execute(params), self.timeout)
            else:
                status = await self.execute(params)
        except asyncio.TimeoutError:
            raise TaskTimeoutError(
                f"{self.description()} timed out after {self.timeout}s",
                {"task": self.key, "timeout": self.timeout, "log": "\n".join(params.output[-LOG_TAIL_LINES:])},
            ) from None

        result = self.make_result(resolved, status)
        self.check_result(result, params)

        if self.cache_results and result.ready:
            self.ctx.results.save(result)
            self.ctx.results.prune(self.action.key, self.type, keep=self.ctx.config.result_keep)
        return result

    async def execute(self, params: HandlerParams) -> ActionStatus:
        if not self.collects_artifacts:
            return await self.ctx.router.execute(params)

        with tempfile.TemporaryDirectory(prefix="devgraph-artifacts-") as tmp:
            params.artifacts_path = Path(tmp).resolve()
            try:
                return await self.ctx.router.execute(params)
            finally:
                # also runs on failure and cancellation
                copy_artifacts(
                    params.artifacts_path,
                    self.ctx.artifacts_dir,
                    artifact_key(self.type, self.action.name, params.action.version),
                )

    def check_result(self, result: TaskResult, params: HandlerParams) -> None:
        """Raise if the handler came back with a failed state."""
        if result.state == "failed":
            raise TaskExecutionError(
                f"{self.description()} failed",
                {"detail": result.detail, "log": "\n".join(params.output[-LOG_TAIL_LINES:])},
            )


class BuildTask(BaseActionTask):
    type = "build"
    concurrency_limit = 5


class DeployTask(BaseActionTask):
    type = "deploy"


class RunTask(BaseActionTask):
    type = "run"
    collects_artifacts = True

    async def check_status(self, resolved, dependency_results):
        result = await super().check_status(resolved, dependency_results)
        if result is None or result.detail is None:
            return None
        return result

    def check_result(self, result, params):
        if not result.ready:
            raise TaskExecutionError(
                f"{self.action.description()} failed",
                {"state": result.state, "log": "\n".join(params.output[-LOG_TAIL_LINES:])},
            )


def _test_passed(detail: Any) -> bool:
    return isinstance(detail, Mapping) and bool(detail.get("success"))


class TestTask(BaseActionTask):
    __test__ = False  # not a pytest class

    type = "test"
    collects_artifacts = True

    async def check_status(self, resolved, dependency_results):
        result = await super().check_status(resolved, dependency_results)
        if result is None or not _test_passed(result.detail):
            return None
        return result

    def check_result(self, result, params):
        if not result.ready or not _test_passed(result.detail):
            raise TaskExecutionError(
                f"{self.action.description()} failed",
                {"state": result.state, "log": "\n".join(params.output[-LOG_TAIL_LINES:])},
            )


class PublishTask(BaseActionTask):
    """Publish a Build's artifact. No status check: publishing always runs."""

    type = "publish"
    concurrency_limit = 5
    cache_results = False

    def __init__(self, ctx, action, *, force=False, force_actions=(), tag_template: Optional[str] = None):
        if action.kind != "Build":
            raise ConfigurationError(f"Only Build actions can be published, got {action.description()}")
        super().__init__(ctx, action, force=force, force_actions=force_actions)
        self.tag_template = tag_template

    @property
    def allow_publish(self) -> bool:
        return self.action.spec.get("allow_publish", True) is not False

    def resolve_dependencies(self):
        if not self.allow_publish:
            return []
        return [self.task_for(self.action)]

    async def get_status(self, dependency_results):
        return None

    async def execute(self, params):
        if not self.allow_publish:
            self.log.info("%s has allow_publish=false, skipping", self.action.description())
            return ActionStatus(state="ready", detail={"published": False})

        if self.tag_template:
            resolved = params.action
            try:
                params.extra["tag"] = self.tag_template.format(
                    name=resolved.name,
                    version=resolved.version,
                    hash=resolved.version_hash,
                )
            except (KeyError, IndexError) as err:
                raise ConfigurationError(
                    f"Invalid tag template '{self.tag_template}'",
                    {"allowed": "{name}, {version}, {hash}", "error": err},
                ) from err
        return await self.ctx.router.publish(params)


class DeleteDeployTask(BaseActionTask):
    """
    Tear down a Deploy. Deploys that depend on it are deleted first.
    """

    type = "delete"
    cache_results = False

    def __init__(self, ctx, action, *, force=False, force_actions=()):
        if action.kind != "Deploy":
            raise ConfigurationError(f"Only Deploy actions can be deleted, got {action.description()}")
        super().__init__(ctx, action, force=force, force_actions=force_actions)

    def resolve_dependencies(self):
        return [
            DeleteDeployTask(self.ctx, dependent, force=self.force, force_actions=self.force_actions)
            for dependent in self.ctx.graph.get_dependents(self.action, kinds=["Deploy"])
        ]

    def get_resolved_action(self, dependency_results, *, strict=True):
        # dependency results here belong to dependents, not to anything the action spec references
        return super().get_resolved_action(dependency_results, strict=False)

    async def get_status(self, dependency_results):
        return None

    async def execute(self, params):
        return await self.ctx.router.delete(params)

    async def process(self, dependency_results):
        result = await super().process(dependency_results)
        self.ctx.results.invalidate(self.action.key, "deploy")
        return result


EXECUTE_TASKS = {
    "Build": BuildTask,
    "Deploy": DeployTask,
    "Run": RunTask,
    "Test": TestTask,
}
