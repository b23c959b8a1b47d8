# runner.py
from __future__ import annotations

import logging
import runpy
from fnmatch import fnmatchcase
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .cache import ResultStore
from .config import EngineConfig
from .context import EngineContext
from .errors import ConfigurationError, GraphError
from .events import EventBus
from .graph import ActionGraph
from .model import Action
from .plugins import default_registry
from .router import ActionRouter, HandlerRegistry
from .scheduler import GraphProcessor, GraphResults
from .tasks import (
    BaseActionTask,
    BuildTask,
    DeleteDeployTask,
    DeployTask,
    PublishTask,
    RunTask,
    TestTask,
)
from .version import VersionProvider

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_FILE = "devgraph_project.py"

# verb -> (action kind it applies to, task class)
VERBS = {
    "build": ("Build", BuildTask),
    "deploy": ("Deploy", DeployTask),
    "run": ("Run", RunTask),
    "test": ("Test", TestTask),
    "publish": ("Build", PublishTask),
    "delete": ("Deploy", DeleteDeployTask),
}


# ----------------------------------------------------------------------
# Project loading (local file)
# ----------------------------------------------------------------------

def load_project(path: str | Path) -> List[Action]:
    """
    Load actions from a python file path.

    The file must define either:
      - actions() -> List[Action]
      - ACTIONS = [Action, ...]
    """
    project_path = Path(path).expanduser().resolve()
    if not project_path.exists():
        raise ConfigurationError(f"Project file not found: {project_path}")
    if project_path.suffix != ".py":
        raise ConfigurationError(f"Project file must be a .py file, got: {project_path.name}")

    module_name = f"devgraph_project_{project_path.stem}"
    globals_dict = runpy.run_path(str(project_path), run_name=module_name)

    actions = None
    if "actions" in globals_dict and callable(globals_dict["actions"]):
        actions = globals_dict["actions"]()
    elif "ACTIONS" in globals_dict:
        actions = globals_dict["ACTIONS"]

    if not isinstance(actions, list) or not all(isinstance(a, Action) for a in actions):
        raise ConfigurationError(
            "Project must return/define a List[Action]. "
            "Define actions() -> List[Action] or ACTIONS = [Action, ...].",
            {"file": str(project_path)},
        )
    return actions


# ----------------------------------------------------------------------
# Wiring
# ----------------------------------------------------------------------

def create_context(
    actions: Iterable[Action],
    *,
    root: str | Path = ".",
    config: Optional[EngineConfig] = None,
    registry: Optional[HandlerRegistry] = None,
    events: Optional[EventBus] = None,
    log: Optional[logging.Logger] = None,
) -> EngineContext:
    """Build the graph, bind handlers and set up stores. Graph/plugin errors surface here."""
    config = config or EngineConfig.from_env()
    root_p = Path(root).resolve()
    log = log or logging.getLogger("devgraph")
    events = events or EventBus(log_file=config.event_log)

    graph = ActionGraph.build(actions)
    router = ActionRouter(registry or default_registry(), graph, events, log=log.getChild("router"))

    cache_dir = config.cache_dir
    if cache_dir is not None and not cache_dir.is_absolute():
        cache_dir = root_p / cache_dir

    return EngineContext(
        graph=graph,
        router=router,
        versions=VersionProvider(graph, root_p, use_git=config.use_git),
        results=ResultStore(cache_dir),
        events=events,
        config=config,
        log=log,
        root=root_p,
    )


def make_tasks(
    ctx: EngineContext,
    verb: str,
    names: Sequence[str] = (),
    *,
    force: bool = False,
    force_build: bool = False,
    tag_template: Optional[str] = None,
) -> List[BaseActionTask]:
    """
    Root tasks for a command. Names are glob patterns matched against actions of the
    verb's kind; no names means every enabled action of that kind.
    Disabled actions are never roots.
    """
    if verb not in VERBS:
        raise ConfigurationError(f"Unknown command '{verb}'", {"known": ", ".join(VERBS)})
    kind, task_cls = VERBS[verb]

    actions = ctx.graph.get_actions(kinds=[kind])
    if names:
        actions = _match_names(actions, kind, names)

    force_actions = {a.key for a in ctx.graph.get_actions(kinds=["Build"])} if force_build else set()

    tasks: List[BaseActionTask] = []
    for action in actions:
        if action.disabled:
            logger.warning("%s is disabled, skipping", action.description())
            continue
        kwargs = {"force": force, "force_actions": force_actions}
        if task_cls is PublishTask:
            kwargs["tag_template"] = tag_template
        tasks.append(task_cls(ctx, action, **kwargs))
    return tasks


def _match_names(actions: List[Action], kind: str, patterns: Sequence[str]) -> List[Action]:
    selected: Dict[str, Action] = {}
    for pattern in patterns:
        matched = [a for a in actions if fnmatchcase(a.name, pattern)]
        if not matched:
            raise GraphError(
                f"No {kind} action matches '{pattern}'",
                {"known": sorted(a.name for a in actions)},
            )
        for action in matched:
            selected.setdefault(action.key, action)
    return list(selected.values())


async def run_actions(
    ctx: EngineContext,
    verb: str,
    names: Sequence[str] = (),
    *,
    force: bool = False,
    force_build: bool = False,
    tag_template: Optional[str] = None,
    throw_on_error: bool = False,
    processor: Optional[GraphProcessor] = None,
) -> GraphResults:
    tasks = make_tasks(ctx, verb, names, force=force, force_build=force_build, tag_template=tag_template)
    processor = processor or GraphProcessor(ctx)
    return await processor.process_tasks(tasks, throw_on_error=throw_on_error)
