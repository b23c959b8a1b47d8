# graph.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .errors import GraphError
from .model import Action, ActionRef


class ActionGraph:
    """
    Immutable, validated dependency graph over actions.

    Edges point from a dependency to its dependents (dependency must run BEFORE dependent).
    Iteration order for every query is the graph's topological order, ties broken by action key,
    so callers that hash over dependency lists get a stable order.
    """

    def __init__(
        self,
        actions: Dict[str, Action],
        deps: Dict[str, List[str]],
        order: List[str],
    ):
        self._actions = actions
        self._deps = deps
        self._dependents: Dict[str, List[str]] = {key: [] for key in actions}
        for key, upstream in deps.items():
            for dep in upstream:
                self._dependents[dep].append(key)
        self._order = order
        self._position = {key: i for i, key in enumerate(order)}

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------

    @classmethod
    def build(cls, actions: Iterable[Action]) -> ActionGraph:
        """
        Validate and build the graph.

        Fails with GraphError on:
          - duplicate actions (same kind + name)
          - dependency references to unknown actions
          - cycles (the error names the cycle path)
        """
        actions = list(actions)
        keys = [a.key for a in actions]
        if len(set(keys)) != len(keys):
            dupes = sorted({k for k in keys if keys.count(k) > 1})
            raise GraphError(f"Duplicate actions found: {dupes}")

        by_key = {a.key: a for a in actions}
        deps: Dict[str, List[str]] = {}
        for action in actions:
            upstream: List[str] = []
            for ref in action.dependency_refs():
                if ref.key not in by_key:
                    raise GraphError(
                        f"{action.description()} depends on missing action '{ref.key}'",
                        {"known": sorted(by_key)},
                    )
                upstream.append(ref.key)
            deps[action.key] = upstream

        cycle = detect_cycle(deps)
        if cycle:
            raise GraphError(
                f"Dependency cycle detected: {' -> '.join(cycle)}",
                {"cycle": cycle},
            )

        return cls(by_key, deps, _topo_order(deps))

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    def __contains__(self, ref: object) -> bool:
        if isinstance(ref, (str, ActionRef)):
            return ActionRef.parse(ref).key in self._actions
        return False

    def __len__(self) -> int:
        return len(self._actions)

    def get(self, ref: "str | ActionRef") -> Action:
        key = ActionRef.parse(ref).key
        try:
            return self._actions[key]
        except KeyError:
            raise GraphError(f"Unknown action '{key}'", {"known": sorted(self._actions)}) from None

    def get_action(self, kind: str, name: str) -> Action:
        return self.get(ActionRef(kind, name))

    def get_actions(self, kinds: Optional[Sequence[str]] = None) -> List[Action]:
        """All actions in topological order."""
        return self._filter(self._order, kinds)

    def get_dependency_refs(self, action: Action) -> List[ActionRef]:
        return list(self.get(action.key).dependency_refs())

    def get_dependencies(
        self,
        action: Action,
        *,
        recursive: bool = False,
        kinds: Optional[Sequence[str]] = None,
    ) -> List[Action]:
        """Direct (or transitive) dependencies, deduplicated, in topological order."""
        return self._walk(action.key, self._deps, recursive, kinds)

    def get_dependents(
        self,
        action: Action,
        *,
        recursive: bool = False,
        kinds: Optional[Sequence[str]] = None,
    ) -> List[Action]:
        """Inverse of get_dependencies: who has to be revisited when `action` changes."""
        return self._walk(action.key, self._dependents, recursive, kinds)

    def levels(self) -> List[List[Action]]:
        """
        Topological "levels" (stages). Everything in one level can run in parallel.
        """
        indeg = {key: len(upstream) for key, upstream in self._deps.items()}
        q = deque(sorted(k for k, d in indeg.items() if d == 0))
        out: List[List[Action]] = []

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                key = q.popleft()
                level.append(key)
                for child in sorted(self._dependents[key]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            out.append([self._actions[k] for k in level])

        return out

    def find_cycle(self) -> Optional[List[str]]:
        return detect_cycle(self._deps)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _walk(
        self,
        start: str,
        edges: Dict[str, List[str]],
        recursive: bool,
        kinds: Optional[Sequence[str]],
    ) -> List[Action]:
        self.get(start)
        found: Set[str] = set()
        stack = list(edges[start])
        while stack:
            key = stack.pop()
            if key in found:
                continue
            found.add(key)
            if recursive:
                stack.extend(edges[key])
        return self._filter(sorted(found, key=self._position.__getitem__), kinds)

    def _filter(self, keys: Iterable[str], kinds: Optional[Sequence[str]]) -> List[Action]:
        wanted = {k.lower() for k in kinds} if kinds else None
        out = []
        for key in keys:
            action = self._actions[key]
            if wanted is None or action.kind.lower() in wanted:
                out.append(action)
        return out


def detect_cycle(deps: Dict[str, List[str]]) -> Optional[List[str]]:
    """
    DFS with an explicit stack. A back-edge to a node still on the path is a cycle.
    Returns the cycle path (first node repeated at the end), or None.
    """
    visited: Set[str] = set()

    for start in sorted(deps):
        if start in visited:
            continue
        visited.add(start)
        path = [start]
        on_path = {start}
        stack = [iter(deps.get(start, []))]
        while stack:
            for dep in stack[-1]:
                if dep in on_path:
                    return path[path.index(dep):] + [dep]
                if dep not in visited:
                    visited.add(dep)
                    path.append(dep)
                    on_path.add(dep)
                    stack.append(iter(deps.get(dep, [])))
                    break
            else:
                stack.pop()
                on_path.discard(path.pop())
    return None


def _topo_order(deps: Dict[str, List[str]]) -> List[str]:
    """Kahn's algorithm; the ready set is always consumed in key order."""
    indeg = {key: len(set(upstream)) for key, upstream in deps.items()}
    dependents: Dict[str, Set[str]] = {key: set() for key in deps}
    for key, upstream in deps.items():
        for dep in upstream:
            dependents[dep].add(key)

    ready = sorted(k for k, d in indeg.items() if d == 0)
    order: List[str] = []
    while ready:
        key = ready.pop(0)
        order.append(key)
        for child in dependents[key]:
            indeg[child] -= 1
            if indeg[child] == 0:
                ready.append(child)
        ready.sort()

    if len(order) != len(indeg):
        stuck = sorted(k for k, d in indeg.items() if d > 0)
        raise GraphError(f"Graph has a cycle. Stuck actions: {stuck}")
    return order
