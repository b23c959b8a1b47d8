# plugins/container.py
from __future__ import annotations

import shutil
from typing import List

from pydantic import BaseModel

from ..errors import ConfigurationError, PluginError
from ..model import ActionStatus
from ..router import HandlerParams, HandlerRegistry
from .exec import LOG_TAIL_LINES, run_command

TYPE = "container"

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
}


class ContainerBuildOutputs(BaseModel):
    image_name: str
    image_version: str
    local_image_id: str
    deployment_image_id: str


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _check_docker_available() -> None:
    """Check if Docker is available, raise helpful error if not."""
    if shutil.which("docker") is None:
        raise PluginError(
            "Docker is not available",
            {"hint": TOOL_HINTS["docker"]},
        )


def _outputs(params: HandlerParams) -> dict:
    spec = params.action.spec
    image = spec.get("image") or params.action.name
    local_id = f"{image}:{params.action.version}"
    registry = spec.get("registry")
    return {
        "image_name": image,
        "image_version": params.action.version,
        "local_image_id": local_id,
        "deployment_image_id": f"{registry.rstrip('/')}/{local_id}" if registry else local_id,
    }


async def _docker(params: HandlerParams, *args: str) -> List[str]:
    exit_code, lines = await run_command(["docker", *args], params)
    if exit_code != 0:
        raise PluginError(
            f"docker {args[0]} failed with exit code {exit_code}",
            {"exit_code": exit_code, "log": "\n".join(lines[-LOG_TAIL_LINES:])},
        )
    return lines


# ---------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------

async def get_status(params: HandlerParams) -> ActionStatus:
    _check_docker_available()
    outputs = _outputs(params)
    exit_code, _lines = await run_command(
        ["docker", "image", "inspect", "--format", "{{.Id}}", outputs["local_image_id"]],
        params,
    )
    if exit_code == 0:
        return ActionStatus(state="ready", detail={"fresh": False}, outputs=outputs)
    return ActionStatus(state="not-ready", detail=None, outputs=outputs)


async def build(params: HandlerParams) -> ActionStatus:
    _check_docker_available()
    spec = params.action.spec
    outputs = _outputs(params)

    cmd = ["build", "-t", outputs["local_image_id"]]
    if spec.get("dockerfile"):
        cmd.extend(["-f", str(spec["dockerfile"])])
    for key, value in sorted((spec.get("build_args") or {}).items()):
        cmd.extend(["--build-arg", f"{key}={value}"])
    if spec.get("target"):
        cmd.extend(["--target", str(spec["target"])])
    cmd.append(str(spec.get("context") or "."))

    await _docker(params, *cmd)
    return ActionStatus(state="ready", detail={"fresh": True}, outputs=outputs)


async def publish(params: HandlerParams) -> ActionStatus:
    _check_docker_available()
    outputs = _outputs(params)
    if not params.action.spec.get("registry") and "tag" not in params.extra:
        raise ConfigurationError(
            f"{params.action.description()} can't be published without a `registry` or a tag",
        )
    target = str(params.extra.get("tag") or outputs["deployment_image_id"])
    if target != outputs["local_image_id"]:
        await _docker(params, "tag", outputs["local_image_id"], target)
    await _docker(params, "push", target)
    return ActionStatus(state="ready", detail={"published": True, "tag": target}, outputs=outputs)


def register(registry: HandlerRegistry) -> None:
    registry.register("Build", TYPE, "status", get_status, ContainerBuildOutputs)
    registry.register("Build", TYPE, "build", build)
    registry.register("Build", TYPE, "publish", publish)

