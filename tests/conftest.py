# tests/conftest.py
"""
Shared fixtures.

- `fake`: a recording plugin for the `fake` action type. It never touches
  the filesystem or the network; per-action behaviour is set on the instance.
- `make_ctx`: builds an isolated EngineContext (in-memory results, own event bus)
  around a list of actions, with the fake plugin registered.
"""
from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any, Dict, List, Set, Tuple

import pytest

from devgraph.config import EngineConfig
from devgraph.events import EventBus
from devgraph.model import ACTION_KINDS, ActionStatus
from devgraph.router import HandlerParams, HandlerRegistry
from devgraph.runner import create_context

FAKE = "fake"

EXECUTE_VERBS = {
    "Build": ("build", "publish"),
    "Deploy": ("deploy", "delete"),
    "Run": ("run",),
    "Test": ("test",),
}


class FakePlugin:
    def __init__(self):
        self.calls: List[Tuple[str, str]] = []  # (verb, action key) in call order
        self.status: Dict[str, ActionStatus] = {}
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.fail: Set[str] = set()
        self.hang: Set[str] = set()
        self.delay: Dict[str, float] = {}
        self.results: Dict[str, ActionStatus] = {}  # override the whole execute result
        self.seen_dependency_results: Dict[str, Dict[str, Any]] = {}
        self.seen_specs: Dict[str, Dict[str, Any]] = {}
        self.seen_extra: Dict[str, Dict[str, Any]] = {}
        self.active: Counter = Counter()
        self.max_active: Counter = Counter()
        self.cancelled: List[str] = []

    def register(self, registry: HandlerRegistry) -> None:
        for kind in ACTION_KINDS:
            registry.register(kind, FAKE, "status", self.get_status)
            for verb in EXECUTE_VERBS[kind]:
                registry.register(kind, FAKE, verb, self.execute)

    def executed(self, verb: str | None = None) -> List[str]:
        return [key for v, key in self.calls if v != "status" and (verb is None or v == verb)]

    async def get_status(self, params: HandlerParams) -> ActionStatus:
        self.calls.append(("status", params.action.key))
        return self.status.get(params.action.key, ActionStatus(state="unknown"))

    async def execute(self, params: HandlerParams) -> ActionStatus:
        key = params.action.key
        task_key = f"{params.verb}.{key}"
        self.calls.append((params.verb, key))
        self.seen_dependency_results[task_key] = dict(params.dependency_results)
        self.seen_specs[task_key] = dict(params.action.spec)
        self.seen_extra[task_key] = dict(params.extra)

        self.active[params.verb] += 1
        self.max_active[params.verb] = max(self.max_active[params.verb], self.active[params.verb])
        try:
            if key in self.hang:
                await asyncio.Event().wait()
            await asyncio.sleep(self.delay.get(key, 0))
            if key in self.fail:
                raise RuntimeError(f"boom: {key}")
            params.emit_log(f"{params.verb} {key} done")
            if key in self.results:
                return self.results[key]
            detail = {"success": True} if params.action.kind in ("Run", "Test") else {"fresh": True}
            outputs = self.outputs.get(key, {"version": params.action.version})
            return ActionStatus(state="ready", detail=detail, outputs=outputs)
        except asyncio.CancelledError:
            self.cancelled.append(key)
            raise
        finally:
            self.active[params.verb] -= 1


@pytest.fixture
def fake() -> FakePlugin:
    return FakePlugin()


@pytest.fixture
def make_ctx(fake, tmp_path):
    def _make(actions, registry: HandlerRegistry | None = None, **config):
        if registry is None:
            registry = HandlerRegistry()
            fake.register(registry)
        config.setdefault("cache_dir", None)
        return create_context(
            actions,
            root=tmp_path,
            config=EngineConfig(**config),
            registry=registry,
            events=EventBus(),
        )

    return _make
