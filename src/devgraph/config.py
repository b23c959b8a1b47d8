# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigurationError

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_RESULT_KEEP = 3
DEFAULT_CACHE_DIR = ".devgraph/cache"
DEFAULT_ARTIFACTS_DIR = ".devgraph/artifacts"


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from None
    if value < 1:
        raise ConfigurationError(f"{name} must be >= 1, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_task_limits(raw: str) -> Dict[str, int]:
    """'build=5,deploy=3' -> {'build': 5, 'deploy': 3}"""
    limits: Dict[str, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, value = part.partition("=")
        if not sep:
            raise ConfigurationError(f"Invalid task limit '{part}', expected <type>=<n>")
        try:
            n = int(value)
        except ValueError:
            raise ConfigurationError(f"Invalid task limit '{part}', expected <type>=<n>") from None
        if n < 1:
            raise ConfigurationError(f"Task limit for '{name.strip()}' must be >= 1")
        limits[name.strip().lower()] = n
    return limits


@dataclass(frozen=True)
class EngineConfig:
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    task_limits: Dict[str, int] = field(default_factory=dict)
    cache_dir: Optional[Path] = Path(DEFAULT_CACHE_DIR)  # None = in-memory results
    artifacts_dir: Path = Path(DEFAULT_ARTIFACTS_DIR)
    result_keep: int = DEFAULT_RESULT_KEEP
    event_log: Optional[Path] = None
    log_level: str = "INFO"
    use_git: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigurationError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.result_keep < 1:
            raise ConfigurationError(f"result_keep must be >= 1, got {self.result_keep}")
        for task_type, limit in self.task_limits.items():
            if limit < 1:
                raise ConfigurationError(f"Task limit for '{task_type}' must be >= 1, got {limit}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> EngineConfig:
        env = os.environ if env is None else env

        cache_raw = env.get("DEVGRAPH_CACHE_DIR", DEFAULT_CACHE_DIR)
        event_log = env.get("DEVGRAPH_EVENT_LOG")

        return cls(
            max_concurrency=_int(env, "DEVGRAPH_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            task_limits=parse_task_limits(env.get("DEVGRAPH_TASK_LIMITS", "")),
            cache_dir=Path(cache_raw) if cache_raw.strip() else None,
            artifacts_dir=Path(env.get("DEVGRAPH_ARTIFACTS_DIR") or DEFAULT_ARTIFACTS_DIR),
            result_keep=_int(env, "DEVGRAPH_RESULT_KEEP", DEFAULT_RESULT_KEEP),
            event_log=Path(event_log) if event_log else None,
            log_level=env.get("DEVGRAPH_LOG_LEVEL", "INFO").upper(),
            use_git=_bool(env, "DEVGRAPH_USE_GIT", False),
        )

    def with_overrides(self, **changes) -> EngineConfig:
        """Apply CLI overrides; None means 'not given'."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def limit_for(self, task_type: str, default: Optional[int] = None) -> int:
        """
        Concurrency limit for a task type:
        explicit task_limits entry, then the task class default, then the global ceiling.
        """
        limit = self.task_limits.get(task_type.lower(), default)
        if limit is None:
            return self.max_concurrency
        return min(limit, self.max_concurrency)
