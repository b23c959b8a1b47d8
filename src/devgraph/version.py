# version.py
from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import os
import subprocess
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from . import vcs
from .errors import InternalError, VersionError
from .graph import ActionGraph
from .model import Action, DependencyOutput, SourceSpec, VERSION_PREFIX

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# version = "v-" + sha256(
#     kind, name, type,
#     normalized spec,
#     (relpath, content hash) for every source file,
#     versions of direct dependencies (sorted by key)
# )[:10]
#
# Dependency versions already fold in their own dependencies, so a change
# anywhere in the closure changes every version downstream of it.
# ---------------------------------------------------------------------

HASH_LENGTH = 10
FORMAT_VERSION = 1  # bump if the hashing payload changes

DEFAULT_SOURCE_EXCLUDES = [
    ".git/*",
    ".devgraph/*",
    "*__pycache__*",
    "*.pyc",
    "*.DS_Store",
]

FileLister = Callable[[Path], List[str]]


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _normalize(value: Any) -> Any:
    """Turn a spec blob into plain JSON types, deterministically."""
    if isinstance(value, DependencyOutput):
        return {"$output": value.ref, "key": value.key}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(v) for v in value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise VersionError(
        f"Cannot fingerprint spec value of type {type(value).__name__}",
        {"value": repr(value)},
    )


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch(rel, g) or fnmatch(name, g) for g in globs)


def walk_files(root: Path) -> List[str]:
    """Every file under root, relative and sorted (deterministic traversal)."""
    out = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in (".git", ".devgraph")]
        for fn in filenames:
            rel = os.path.relpath(os.path.join(dirpath, fn), root)
            out.append(rel.replace(os.sep, "/"))
    return sorted(out)


def compute_version(
    action: Action,
    source_files: Mapping[str, str],
    dependency_versions: Mapping[str, str],
) -> str:
    """
    Content fingerprint for one action.

    Args:
        action: the action (its kind/name/type/spec are hashed)
        source_files: relpath -> content hash of each attributed source file
        dependency_versions: action key -> version for (at least) every direct dependency

    Raises:
        InternalError if a direct dependency's version is missing. Callers must
        compute dependency versions first.
    """
    dep_versions = []
    for ref in action.dependency_refs():
        if ref.key not in dependency_versions:
            raise InternalError(
                f"Version of '{ref.key}' requested before it was computed",
                {"action": action.key},
            )
        dep_versions.append([ref.key, dependency_versions[ref.key]])
    dep_versions.sort()

    payload = {
        "v": FORMAT_VERSION,
        "kind": action.kind,
        "name": action.name,
        "type": action.type,
        "spec": _normalize(action.spec),
        "files": sorted([rel, digest] for rel, digest in source_files.items()),
        "dependencies": dep_versions,
    }
    return VERSION_PREFIX + _sha256_str(_json_dumps_stable(payload))[:HASH_LENGTH]


def hash_sources(
    root: str | Path,
    source: Optional[SourceSpec],
    lister: FileLister = walk_files,
    *,
    excludes: Optional[List[str]] = None,
) -> Dict[str, str]:
    """
    Hash the files attributed to an action.

    Paths are matched and recorded relative to `source.path`. `lister` yields candidate
    files relative to `root` (filesystem walk or git). An action without a source has no files.

    Raises:
        VersionError when the source path is missing or a file can't be read.
    """
    if source is None:
        return {}

    root_p = Path(root).resolve()
    base = (root_p / source.path).resolve()
    if not base.exists():
        raise VersionError(f"Source path not found: {source.path}", {"root": str(root_p)})

    exclude_globs = list(DEFAULT_SOURCE_EXCLUDES) + list(excludes or []) + list(source.exclude)

    if base.is_file():
        candidates = [base.name]
        base = base.parent
    else:
        prefix = os.path.relpath(base, root_p).replace(os.sep, "/")
        candidates = []
        for rel in lister(root_p):
            if prefix == ".":
                candidates.append(rel)
            elif rel.startswith(prefix + "/"):
                candidates.append(rel[len(prefix) + 1:])

    out: Dict[str, str] = {}
    for rel in candidates:
        if source.include is not None and not _matches_any_glob(rel, list(source.include)):
            continue
        if _matches_any_glob(rel, exclude_globs):
            continue
        try:
            out[rel] = _hash_file_contents(base / rel)
        except OSError as err:
            raise VersionError(f"Unreadable source file: {rel}", {"error": err}) from err
    return out


class VersionProvider:
    """
    Lazily computes and memoizes versions for every action in a graph.

    A version is computed at most once per provider; dependencies are computed first.
    """

    def __init__(
        self,
        graph: ActionGraph,
        root: str | Path = ".",
        *,
        excludes: Optional[List[str]] = None,
        use_git: bool = False,
    ):
        self.graph = graph
        self.root = Path(root).resolve()
        self.excludes = list(excludes or [])
        self.use_git = use_git
        self._versions: Dict[str, str] = {}
        self._files: Optional[List[str]] = None

    def _list_files(self, root: Path) -> List[str]:
        if self._files is None:
            if self.use_git:
                try:
                    self._files = vcs.tracked_files(root)
                except (OSError, subprocess.CalledProcessError) as err:
                    raise VersionError("Could not list source files with git", {"root": str(root), "error": err}) from err
            else:
                self._files = walk_files(root)
            logger.debug("listed %d candidate source files under %s", len(self._files), root)
        return self._files

    def get_version(self, action: Action) -> str:
        cached = self._versions.get(action.key)
        if cached is not None:
            return cached

        # topological order, so direct dependencies are always computed first
        for item in self.graph.get_dependencies(action, recursive=True) + [action]:
            if item.key not in self._versions:
                self._versions[item.key] = self._compute(item)
        return self._versions[action.key]

    def _compute(self, action: Action) -> str:
        dep_versions = {dep.key: self._versions[dep.key] for dep in self.graph.get_dependencies(action)}
        files = hash_sources(self.root, action.source, self._list_files, excludes=self.excludes)
        return compute_version(action, files, dep_versions)

    def versions(self) -> Dict[str, str]:
        return {a.key: self.get_version(a) for a in self.graph.get_actions()}
