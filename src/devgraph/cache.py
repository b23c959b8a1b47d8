# cache.py
from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .model import TaskResult

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = ".devgraph/cache"


def _safe(part: str) -> str:
    return part.replace("/", "_").replace("\\", "_")


class ResultStore:
    """
    Prior-result store keyed by action key + verb + version.

    File layout:
      root/
        <action key>/
          <verb>/
            <version>.json

    With root=None results only live in memory (for tests and one-shot runs).
    Only `ready` results are stored; anything else must be re-checked next time.
    """

    def __init__(self, root: str | Path | None = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve() if root is not None else None
        self._memory: Dict[Tuple[str, str, str], TaskResult] = {}
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)

    @property
    def persistent(self) -> bool:
        return self.root is not None

    def _dir(self, action_key: str, verb: str) -> Path:
        assert self.root is not None
        return self.root / _safe(action_key) / _safe(verb)

    def path(self, action_key: str, verb: str, version: str) -> Path:
        return self._dir(action_key, verb) / f"{_safe(version)}.json"

    def get(self, action_key: str, verb: str, version: str) -> Optional[TaskResult]:
        if self.root is None:
            return self._memory.get((action_key, verb, version))

        p = self.path(action_key, verb, version)
        if not p.exists():
            return None
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            return TaskResult.from_dict(data)
        except (OSError, ValueError, KeyError) as err:
            # a corrupt entry is a miss, the next save overwrites it
            logger.warning("ignoring unreadable stored result %s: %s", p, err)
            return None

    def save(self, result: TaskResult) -> None:
        """
        Store a ready result. Writes go to a temp file first, then an atomic rename.
        """
        if not result.ready:
            return
        if self.root is None:
            self._memory[(result.action_key, result.verb, result.version)] = result
            return

        d = self._dir(result.action_key, result.verb)
        d.mkdir(parents=True, exist_ok=True)
        target = self.path(result.action_key, result.verb, result.version)
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(
                json.dumps(result.to_dict(), sort_keys=True, indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
            tmp.replace(target)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def invalidate(self, action_key: str, verb: str) -> None:
        """Forget every stored result for an action + verb (e.g. after a delete)."""
        if self.root is None:
            for k in [k for k in self._memory if k[0] == action_key and k[1] == verb]:
                del self._memory[k]
            return
        d = self._dir(action_key, verb)
        for p in d.glob("*.json") if d.exists() else []:
            p.unlink(missing_ok=True)

    def prune(self, action_key: str, verb: str, keep: int = 3) -> int:
        """
        Keep only the newest N stored results for an action + verb.
        Uses file mtime (or completion time in memory) as "newest". Returns how many were removed.
        """
        if self.root is None:
            entries = sorted(
                (k for k in self._memory if k[0] == action_key and k[1] == verb),
                key=lambda k: self._memory[k].completed_at,
                reverse=True,
            )
            for k in entries[keep:]:
                del self._memory[k]
            return len(entries[keep:])

        d = self._dir(action_key, verb)
        if not d.exists():
            return 0
        files = sorted(d.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in files[keep:]:
            p.unlink(missing_ok=True)
        return len(files[keep:])


# ---------------------------------------------------------------------
# Run/Test artifacts
# ---------------------------------------------------------------------

def artifact_key(verb: str, name: str, version: str) -> str:
    return f"{verb}.{name}.{version}"


def artifact_metadata_path(artifacts_dir: Path, key: str) -> Path:
    return artifacts_dir / f".metadata.{_safe(key)}.json"


def copy_artifacts(source: Path, artifacts_dir: Path, key: str) -> List[str]:
    """
    Copy everything a handler left in `source` into the project's artifacts dir.

    Files keep their relative layout and overwrite earlier copies. A metadata file
    named after `key` lists what this run produced. Returns the relative paths copied.
    """
    files = sorted(p.relative_to(source).as_posix() for p in source.rglob("*") if p.is_file())
    if not files:
        return []

    artifacts_dir.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, artifacts_dir, dirs_exist_ok=True)
    artifact_metadata_path(artifacts_dir, key).write_text(
        json.dumps({"key": key, "files": files}, indent=2),
        encoding="utf-8",
    )
    logger.debug("copied %d artifacts for %s to %s", len(files), key, artifacts_dir)
    return files
