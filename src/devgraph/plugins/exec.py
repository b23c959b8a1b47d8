# plugins/exec.py
"""
`exec` action type: plain shell commands, for every action kind.

Spec fields:
  command          shell command for build/deploy/run/test
  status_command   optional; exit 0 means "ready" (build/deploy)
  cleanup_command  optional; used by delete (deploy)
  publish_command  optional; used by publish (build). The tag is in $DEVGRAPH_TAG
  cwd              working directory relative to the project root
  env              extra environment variables
  artifacts        run/test only: [{"source": glob, "target": dir}] copied from cwd into
                   the artifacts dir after the command. $DEVGRAPH_ARTIFACTS_PATH points there too
"""
from __future__ import annotations

import asyncio
import os
import shutil
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel

from ..errors import ConfigurationError, PluginError
from ..model import ActionStatus
from ..router import HandlerParams, HandlerRegistry

TYPE = "exec"
LOG_TAIL_LINES = 50

Command = Union[str, Sequence[str]]


class ExecOutputs(BaseModel):
    log: str = ""
    exit_code: int = 0


# ---------------------------------------------------------------------
# Execution primitive
# ---------------------------------------------------------------------

def _command_env(params: HandlerParams) -> Dict[str, str]:
    env = os.environ.copy()
    env.update({str(k): str(v) for k, v in (params.action.spec.get("env") or {}).items()})
    env["DEVGRAPH_ACTION"] = params.action.key
    env["DEVGRAPH_ACTION_VERSION"] = params.action.version
    if "tag" in params.extra:
        env["DEVGRAPH_TAG"] = str(params.extra["tag"])
    if params.artifacts_path is not None:
        env["DEVGRAPH_ARTIFACTS_PATH"] = str(params.artifacts_path)
    return env


def _cwd(params: HandlerParams) -> Path:
    cwd = (Path(params.root) / (params.action.spec.get("cwd") or ".")).resolve()
    if not cwd.exists():
        raise ConfigurationError(f"{params.action.description()} cwd not found: {cwd}")
    return cwd


async def run_command(
    command: Command,
    params: HandlerParams,
    *,
    env: Optional[Dict[str, str]] = None,
) -> Tuple[int, List[str]]:
    """
    Run a command, streaming every output line through params.emit_log.

    Returns (exit_code, lines). If the surrounding task is cancelled (including a
    timeout), the child process is killed before the cancellation propagates.
    """
    cwd = _cwd(params)
    env = env if env is not None else _command_env(params)

    if isinstance(command, str):
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    else:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

    lines: List[str] = []
    try:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            lines.append(line)
            params.emit_log(line)
        exit_code = await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            params.log.debug("killing pid %s", proc.pid)
            proc.kill()
            await proc.wait()
        raise
    return exit_code, lines


def _require(params: HandlerParams, field: str) -> Command:
    command = params.action.spec.get(field)
    if not command:
        raise ConfigurationError(f"{params.action.description()} needs `{field}` in its spec")
    return command


async def _run_checked(params: HandlerParams, field: str) -> ActionStatus:
    command = _require(params, field)
    exit_code, lines = await run_command(command, params)
    if exit_code != 0:
        raise PluginError(
            f"Command failed with exit code {exit_code}",
            {"command": command, "exit_code": exit_code, "log": "\n".join(lines[-LOG_TAIL_LINES:])},
        )
    return ActionStatus(state="ready", detail={"exit_code": 0}, outputs={"log": "\n".join(lines), "exit_code": 0})


def _collect_artifacts(params: HandlerParams) -> None:
    """Copy files matching each `artifacts` entry from the cwd into params.artifacts_path."""
    entries = params.action.spec.get("artifacts") or []
    if not entries or params.artifacts_path is None:
        return
    cwd = _cwd(params)
    for entry in entries:
        if not isinstance(entry, Mapping) or not entry.get("source"):
            raise ConfigurationError(
                f"{params.action.description()} artifacts entries need a `source` glob",
                {"entry": entry},
            )
        target = params.artifacts_path / (entry.get("target") or ".")
        for path in sorted(cwd.glob(entry["source"])):
            dest = target / path.name
            if path.is_dir():
                shutil.copytree(path, dest, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, dest)


# ---------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------

async def get_status(params: HandlerParams) -> ActionStatus:
    command = params.action.spec.get("status_command")
    if not command:
        return ActionStatus(state="unknown")
    exit_code, lines = await run_command(command, params)
    if exit_code == 0:
        return ActionStatus(state="ready", detail={"exit_code": 0}, outputs={"log": "\n".join(lines), "exit_code": 0})
    return ActionStatus(state="not-ready", detail={"exit_code": exit_code})


async def build(params: HandlerParams) -> ActionStatus:
    return await _run_checked(params, "command")


async def deploy(params: HandlerParams) -> ActionStatus:
    return await _run_checked(params, "command")


async def delete(params: HandlerParams) -> ActionStatus:
    if not params.action.spec.get("cleanup_command"):
        params.log.info("%s has no cleanup_command, nothing to delete", params.action.description())
        return ActionStatus(state="not-ready", detail={"deleted": False})
    await _run_checked(params, "cleanup_command")
    return ActionStatus(state="not-ready", detail={"deleted": True})


async def publish(params: HandlerParams) -> ActionStatus:
    if not params.action.spec.get("publish_command"):
        raise ConfigurationError(f"{params.action.description()} has no publish_command")
    status = await _run_checked(params, "publish_command")
    return ActionStatus(
        state="ready",
        detail={"published": True, "tag": params.extra.get("tag")},
        outputs=status.outputs,
    )


async def run(params: HandlerParams) -> ActionStatus:
    """Run/test: the exit code decides success, the log is always kept."""
    command = _require(params, "command")
    exit_code, lines = await run_command(command, params)
    _collect_artifacts(params)
    log = "\n".join(lines)
    success = exit_code == 0
    return ActionStatus(
        state="ready" if success else "failed",
        detail={"success": success, "exit_code": exit_code, "log": log},
        outputs={"log": log, "exit_code": exit_code},
    )


def register(registry: HandlerRegistry) -> None:
    registry.register("Build", TYPE, "status", get_status, ExecOutputs)
    registry.register("Build", TYPE, "build", build)
    registry.register("Build", TYPE, "publish", publish)
    registry.register("Deploy", TYPE, "status", get_status, ExecOutputs)
    registry.register("Deploy", TYPE, "deploy", deploy)
    registry.register("Deploy", TYPE, "delete", delete)
    registry.register("Run", TYPE, "run", run, ExecOutputs)
    registry.register("Test", TYPE, "test", run, ExecOutputs)
