# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ConfigurationError

ACTION_KINDS = ("Build", "Deploy", "Run", "Test")
ACTION_STATES = ("ready", "not-ready", "unknown", "failed")
VERSION_PREFIX = "v-"


def _kind_from_str(value: str) -> str:
    for kind in ACTION_KINDS:
        if kind.lower() == value.lower():
            return kind
    raise ConfigurationError(
        f"Unknown action kind '{value}'",
        {"known": ", ".join(ACTION_KINDS)},
    )


@dataclass(frozen=True)
class ActionRef:
    """A dependency reference to another action by kind + name."""
    kind: str
    name: str
    # False for static references: versioned, but never executed first
    needs_execution: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _kind_from_str(self.kind))

    @property
    def key(self) -> str:
        return f"{self.kind.lower()}.{self.name}"

    @classmethod
    def parse(cls, value: "str | ActionRef", *, needs_execution: bool = True) -> ActionRef:
        """Accepts "build.web", "Build.web" or an ActionRef."""
        if isinstance(value, ActionRef):
            return value
        kind, sep, name = value.partition(".")
        if not sep or not name:
            raise ConfigurationError(f"Invalid action reference '{value}', expected '<kind>.<name>'")
        return cls(kind=kind, name=name, needs_execution=needs_execution)


@dataclass(frozen=True)
class SourceSpec:
    """Which files under the project root belong to an action (for versioning)."""
    path: str = "."
    include: Optional[Tuple[str, ...]] = None
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DependencyOutput:
    """Placeholder inside an action spec, replaced with an upstream output at resolve time."""
    ref: str
    key: str


@dataclass(frozen=True)
class Action:
    """
    A declared unit of work (Build/Deploy/Run/Test).

    `build` names a Build action that Deploy/Run/Test actions need executed first.
    Instances are never mutated; resolution produces a ResolvedAction instead.
    """
    kind: str
    name: str
    type: str
    spec: Mapping[str, Any] = field(default_factory=dict)
    dependencies: Tuple[ActionRef, ...] = ()
    build: Optional[str] = None
    source: Optional[SourceSpec] = None
    disabled: bool = False
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        # normalize loosely typed constructor input (lists, "kind.name" strings)
        object.__setattr__(self, "kind", _kind_from_str(self.kind))
        object.__setattr__(self, "dependencies", tuple(ActionRef.parse(d) for d in self.dependencies))
        if self.build is not None and self.kind == "Build":
            raise ConfigurationError(f"Build '{self.name}' cannot declare a `build` dependency")

    @property
    def key(self) -> str:
        return f"{self.kind.lower()}.{self.name}"

    def long_description(self) -> str:
        return f"{self.kind} '{self.name}' (type {self.type})"

    def description(self) -> str:
        return f"{self.kind} '{self.name}'"

    def dependency_refs(self) -> Tuple[ActionRef, ...]:
        """Declared dependencies plus the implicit one on `build`, deduplicated by key."""
        refs = list(self.dependencies)
        if self.build:
            refs.append(ActionRef("Build", self.build))
        seen: Dict[str, ActionRef] = {}
        for ref in refs:
            prev = seen.get(ref.key)
            # needing execution wins over a static reference to the same action
            if prev is None or (ref.needs_execution and not prev.needs_execution):
                seen[ref.key] = ref
        return tuple(seen.values())


@dataclass(frozen=True)
class ResolvedAction:
    """An action with its version and a spec with dependency outputs substituted."""
    action: Action
    version: str
    spec: Mapping[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str:
        return self.action.kind

    @property
    def name(self) -> str:
        return self.action.name

    @property
    def type(self) -> str:
        return self.action.type

    @property
    def key(self) -> str:
        return self.action.key

    @property
    def version_hash(self) -> str:
        return self.version[len(VERSION_PREFIX):]

    def description(self) -> str:
        return self.action.description()


@dataclass
class ActionStatus:
    """Raw result returned by a plugin handler."""
    state: str
    detail: Any = None
    outputs: Dict[str, Any] = field(default_factory=dict)

    @property
    def ready(self) -> bool:
        return self.state == "ready"

    @classmethod
    def from_value(cls, value: Any) -> ActionStatus:
        if isinstance(value, ActionStatus):
            return value
        if isinstance(value, dict) and "state" in value:
            return cls(
                state=value["state"],
                detail=value.get("detail"),
                outputs=dict(value.get("outputs") or {}),
            )
        raise TypeError(f"Handler must return ActionStatus or a dict with 'state', got {type(value).__name__}")


@dataclass(frozen=True)
class TaskResult:
    """Outcome of a Task's status check or process step."""
    task_key: str
    action_key: str
    verb: str
    version: str
    state: str
    detail: Any = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    cached: bool = False
    completed_at: float = field(default_factory=time.time)

    @property
    def ready(self) -> bool:
        return self.state == "ready"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_key": self.task_key,
            "action_key": self.action_key,
            "verb": self.verb,
            "version": self.version,
            "state": self.state,
            "detail": self.detail,
            "outputs": self.outputs,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskResult:
        return cls(
            task_key=data["task_key"],
            action_key=data["action_key"],
            verb=data["verb"],
            version=data["version"],
            state=data["state"],
            detail=data.get("detail"),
            outputs=dict(data.get("outputs") or {}),
            completed_at=float(data.get("completed_at", 0.0)),
        )
