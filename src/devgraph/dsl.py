# src/devgraph/dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .model import Action, ActionRef, DependencyOutput, SourceSpec

Dep = Union[str, ActionRef]


# ---------------------------------------------------------------------
# References
# ---------------------------------------------------------------------

def output(ref: str, key: str) -> DependencyOutput:
    """
    Reference an output of another action inside a spec:

        deploy("web", image=output("build.web", "image_id"))

    The referenced action becomes a dependency automatically.
    """
    ActionRef.parse(ref)
    return DependencyOutput(ref=ref, key=key)


def static(ref: Dep) -> ActionRef:
    """A dependency that only feeds the version; it's never executed first."""
    parsed = ActionRef.parse(ref)
    return ActionRef(parsed.kind, parsed.name, needs_execution=False)


def _output_refs(value: Any) -> List[ActionRef]:
    if isinstance(value, DependencyOutput):
        return [ActionRef.parse(value.ref)]
    if isinstance(value, Mapping):
        return [r for v in value.values() for r in _output_refs(v)]
    if isinstance(value, (list, tuple)):
        return [r for v in value for r in _output_refs(v)]
    return []


# ---------------------------------------------------------------------
# Action helpers
# ---------------------------------------------------------------------

def _action(
    kind: str,
    name: str,
    type: str,
    *,
    spec: Optional[Dict[str, Any]],
    fields: Dict[str, Any],
    needs: Optional[Sequence[Dep]],
    build: Optional[str] = None,
    source: Optional[str] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    disabled: bool = False,
    timeout: Optional[float] = None,
) -> Action:
    spec_final = dict(spec or {})
    spec_final.update(fields)

    deps: Dict[str, ActionRef] = {}
    for ref in [ActionRef.parse(d) for d in (needs or [])] + _output_refs(spec_final):
        prev = deps.get(ref.key)
        # output references need the upstream executed, static() entries do not
        if prev is None or (ref.needs_execution and not prev.needs_execution):
            deps[ref.key] = ref

    src = None
    if source is not None or include is not None or exclude:
        src = SourceSpec(
            path=source or ".",
            include=tuple(include) if include is not None else None,
            exclude=tuple(exclude or ()),
        )

    return Action(
        kind=kind,
        name=name,
        type=type,
        spec=spec_final,
        dependencies=tuple(deps.values()),
        build=build,
        source=src,
        disabled=disabled,
        timeout=timeout,
    )


def build(
    name: str,
    type: str = "exec",
    *,
    spec: Optional[Dict[str, Any]] = None,
    needs: Optional[Sequence[Dep]] = None,
    source: Optional[str] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    disabled: bool = False,
    timeout: Optional[float] = None,
    **fields: Any,
) -> Action:
    """build("web", "container", source="web/", dockerfile="Dockerfile")"""
    return _action(
        "Build", name, type, spec=spec, fields=fields, needs=needs,
        source=source, include=include, exclude=exclude, disabled=disabled, timeout=timeout,
    )


def deploy(
    name: str,
    type: str = "exec",
    *,
    spec: Optional[Dict[str, Any]] = None,
    needs: Optional[Sequence[Dep]] = None,
    build: Optional[str] = None,
    source: Optional[str] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    disabled: bool = False,
    timeout: Optional[float] = None,
    **fields: Any,
) -> Action:
    return _action(
        "Deploy", name, type, spec=spec, fields=fields, needs=needs, build=build,
        source=source, include=include, exclude=exclude, disabled=disabled, timeout=timeout,
    )


def run(
    name: str,
    type: str = "exec",
    *,
    spec: Optional[Dict[str, Any]] = None,
    needs: Optional[Sequence[Dep]] = None,
    build: Optional[str] = None,
    source: Optional[str] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    disabled: bool = False,
    timeout: Optional[float] = None,
    **fields: Any,
) -> Action:
    return _action(
        "Run", name, type, spec=spec, fields=fields, needs=needs, build=build,
        source=source, include=include, exclude=exclude, disabled=disabled, timeout=timeout,
    )


def test(
    name: str,
    type: str = "exec",
    *,
    spec: Optional[Dict[str, Any]] = None,
    needs: Optional[Sequence[Dep]] = None,
    build: Optional[str] = None,
    source: Optional[str] = None,
    include: Optional[Sequence[str]] = None,
    exclude: Optional[Sequence[str]] = None,
    disabled: bool = False,
    timeout: Optional[float] = None,
    **fields: Any,
) -> Action:
    return _action(
        "Test", name, type, spec=spec, fields=fields, needs=needs, build=build,
        source=source, include=include, exclude=exclude, disabled=disabled, timeout=timeout,
    )


test.__test__ = False  # not a pytest test function


# ---------------------------------------------------------------------
# Project helper (single-file story)
# ---------------------------------------------------------------------

def project(*actions: Action) -> List[Action]:
    """
    Project definition helper. Users can write:

        from devgraph import project, build, deploy

        def actions():
            return project(
                build("api", command="make"),
                deploy("api", build="api", command="./deploy.sh"),
            )

    Or use ACTIONS directly:
        ACTIONS = project(build(...), deploy(...))
    """
    return list(actions)
