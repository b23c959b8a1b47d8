# router.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError, DevGraphError, OutputValidationError, TaskExecutionError
from .events import EventBus
from .graph import ActionGraph
from .model import ActionStatus, ResolvedAction, TaskResult

STATUS_VERB = "status"

Handler = Callable[["HandlerParams"], Awaitable[Any]]


@dataclass
class HandlerParams:
    """Everything a plugin handler gets for one call."""
    action: ResolvedAction
    verb: str
    log: logging.Logger
    events: EventBus
    root: Path = field(default_factory=Path.cwd)
    dependency_results: Dict[str, TaskResult] = field(default_factory=dict)
    output: List[str] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)
    artifacts_path: Optional[Path] = None  # run/test only: files left here are collected

    def emit_log(self, line: str) -> None:
        """Capture one line of handler output and stream it as a `log` event."""
        self.output.append(line)
        self.log.debug(line)
        self.events.emit_simple("log", self.action.key, verb=self.verb, line=line)


class HandlerRegistry:
    """
    Capability registry: (action kind, action type, verb) -> handler,
    plus an optional outputs schema per (kind, type).
    """

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], Dict[str, Handler]] = {}
        self._schemas: Dict[Tuple[str, str], Type[BaseModel]] = {}

    def register(
        self,
        kind: str,
        type: str,
        verb: str,
        handler: Handler,
        outputs_schema: Optional[Type[BaseModel]] = None,
    ) -> None:
        key = (kind.lower(), type)
        self._handlers.setdefault(key, {})[verb] = handler
        if outputs_schema is not None:
            self._schemas[key] = outputs_schema

    def handlers_for(self, kind: str, type: str) -> Optional[Dict[str, Handler]]:
        return self._handlers.get((kind.lower(), type))

    def schema_for(self, kind: str, type: str) -> Optional[Type[BaseModel]]:
        return self._schemas.get((kind.lower(), type))

    def types(self) -> List[Tuple[str, str]]:
        return sorted(self._handlers)


async def _default_status_handler(params: HandlerParams) -> ActionStatus:
    return ActionStatus(state="unknown", detail=None, outputs={})


class ActionRouter:
    """
    Dispatches resolved actions to plugin handlers.

    Handlers are bound once per (kind, type) when the router is created, so a
    project referencing an unknown action type fails before anything runs.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        graph: ActionGraph,
        events: EventBus,
        log: Optional[logging.Logger] = None,
    ):
        self.registry = registry
        self.events = events
        self.log = log or logging.getLogger(__name__)
        self._bound: Dict[Tuple[str, str], Dict[str, Handler]] = {}
        self._schemas: Dict[Tuple[str, str], Optional[Type[BaseModel]]] = {}

        for action in graph.get_actions():
            key = (action.kind, action.type)
            if key in self._bound:
                continue
            handlers = registry.handlers_for(action.kind, action.type)
            if handlers is None:
                known = sorted(t for k, t in registry.types() if k == action.kind.lower())
                raise ConfigurationError(
                    f"No plugin handles {action.kind} actions of type '{action.type}'",
                    {"action": action.key, "known_types": known},
                )
            self._bound[key] = dict(handlers)
            self._schemas[key] = registry.schema_for(action.kind, action.type)

    # ------------------------------------------------------------------
    # boundary operations
    # ------------------------------------------------------------------

    def has_handler(self, action: ResolvedAction, verb: str) -> bool:
        return verb in self._bound.get((action.kind, action.type), {})

    async def call_handler(self, params: HandlerParams) -> ActionStatus:
        """
        Call the handler for params.verb. Handler failures come back as DevGraphErrors
        that name the action and verb.
        """
        action = params.action
        handlers = self._bound.get((action.kind, action.type))
        if handlers is None:
            raise ConfigurationError(f"No plugin bound for {action.kind} type '{action.type}'")

        handler = handlers.get(params.verb)
        if handler is None:
            if params.verb != STATUS_VERB:
                raise ConfigurationError(
                    f"{action.description()} (type {action.type}) does not support '{params.verb}'",
                )
            handler = _default_status_handler

        try:
            return ActionStatus.from_value(await handler(params))
        except DevGraphError as err:
            err.details.setdefault("action", action.description())
            err.details.setdefault("verb", params.verb)
            raise
        except Exception as err:
            raise TaskExecutionError(
                f"{action.description()} failed to {params.verb}: {err}",
                {"action": action.key, "verb": params.verb, "cause": type(err).__name__},
            ) from err

    def validate_outputs(self, action: ResolvedAction, phase: str, outputs: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate runtime outputs against the declared schema for the action's (kind, type).
        Never coerces silently: any mismatch raises.
        """
        schema = self._schemas.get((action.kind, action.type))
        if schema is None:
            return dict(outputs)
        try:
            return schema.model_validate(outputs).model_dump()
        except ValidationError as err:
            raise OutputValidationError(
                f"Error validating runtime action outputs from {action.description()}: {err}",
                {"phase": phase},
            ) from err

    # ------------------------------------------------------------------
    # lifecycle wrappers
    # ------------------------------------------------------------------

    async def get_status(self, params: HandlerParams) -> ActionStatus:
        params.verb = STATUS_VERB
        status = await self.call_handler(params)
        status = self._validated(params.action, "status", status)
        self._emit(params.action, status.state, verb=STATUS_VERB)
        return status

    async def execute(self, params: HandlerParams) -> ActionStatus:
        action_uid = uuid.uuid4().hex
        self._emit(params.action, "running", verb=params.verb, action_uid=action_uid)
        try:
            status = await self.call_handler(params)
            status = self._validated(params.action, params.verb, status)
        except DevGraphError as err:
            self._emit(params.action, "failed", verb=params.verb, action_uid=action_uid, error=err.message)
            raise
        self._emit(params.action, status.state, verb=params.verb, action_uid=action_uid)
        return status

    async def publish(self, params: HandlerParams) -> ActionStatus:
        params.verb = "publish"
        return await self.execute(params)

    async def delete(self, params: HandlerParams) -> ActionStatus:
        params.verb = "delete"
        return await self.execute(params)

    def _validated(self, action: ResolvedAction, phase: str, status: ActionStatus) -> ActionStatus:
        if status.state != "ready":
            return status
        outputs = self.validate_outputs(action, phase, status.outputs)
        return ActionStatus(state=status.state, detail=status.detail, outputs=outputs)

    def _emit(self, action: ResolvedAction, state: str, **data: Any) -> None:
        self.events.emit_simple(
            "action.status",
            action.key,
            state=state,
            version=action.version,
            **data,
        )
