from .dsl import build, deploy, output, project, run, static, test
from .model import Action, ActionRef, SourceSpec
from .runner import create_context, load_project, run_actions

__all__ = [
    "build",
    "deploy",
    "run",
    "test",
    "output",
    "static",
    "project",
    "Action",
    "ActionRef",
    "SourceSpec",
    "create_context",
    "load_project",
    "run_actions",
]
