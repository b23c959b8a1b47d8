# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass(eq=False)
class DevGraphError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - event payloads
      - debugging without full tracebacks
    """
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "error"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class ConfigurationError(DevGraphError):
    kind = "configuration"


class GraphError(DevGraphError):
    """Cycle, dangling dependency reference or duplicate action. Raised before any execution."""
    kind = "graph"


class InternalError(DevGraphError):
    """A caller broke an ordering contract (e.g. asked for a version before its dependencies)."""
    kind = "internal"


class VersionError(DevGraphError):
    kind = "version"


class PluginError(DevGraphError):
    kind = "plugin"


class TaskExecutionError(DevGraphError):
    kind = "execution"


class OutputValidationError(DevGraphError):
    kind = "output-validation"


class TaskTimeoutError(DevGraphError):
    kind = "timeout"


class DependencyFailedError(DevGraphError):
    """Recorded on tasks that never ran because an upstream task failed."""
    kind = "dependency"


class TaskCancelledError(DevGraphError):
    kind = "cancelled"
