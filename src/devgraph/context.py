# context.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .cache import ResultStore
from .config import EngineConfig
from .events import EventBus
from .graph import ActionGraph
from .router import ActionRouter
from .version import VersionProvider


@dataclass
class EngineContext:
    """
    Everything a task or the scheduler needs, passed explicitly.
    Tests build one per case, so no state leaks between runs.
    """
    graph: ActionGraph
    router: ActionRouter
    versions: VersionProvider
    results: ResultStore
    events: EventBus
    config: EngineConfig = field(default_factory=EngineConfig)
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("devgraph"))
    root: Path = field(default_factory=Path.cwd)

    @property
    def artifacts_dir(self) -> Path:
        """Where Run/Test artifacts are collected, relative paths taken from the project root."""
        path = self.config.artifacts_dir
        return path if path.is_absolute() else self.root / path
