# cli.py
from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import click

from . import vcs
from .config import EngineConfig
from .errors import DevGraphError
from .runner import DEFAULT_PROJECT_FILE, create_context, load_project, make_tasks
from .scheduler import GraphProcessor, GraphResults
from .ui.console import Console


def find_project_files() -> list[Path]:
    """Project files in the current directory: devgraph_project.py, then *_project.py."""
    current_dir = Path(".")
    default = current_dir / DEFAULT_PROJECT_FILE
    if default.exists():
        return [default]
    return sorted(current_dir.glob("*_project.py"))


def discover_project(project_arg: str | None, console: Console) -> Path:
    """
    Resolve the project file from the argument or by looking in the current directory.

    Raises:
        SystemExit: If no project (or more than one candidate) is found
    """
    if project_arg:
        path = Path(project_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Project file not found",
                f"Could not find project file: {project_arg}",
                suggestion=f"Create a project file or specify a different path:\n  devgraph build --project {DEFAULT_PROJECT_FILE}",
            )
            sys.exit(1)
        return path

    files = find_project_files()
    if not files:
        console.print_error(
            "No project file found",
            "Could not find any project files.",
            details=["Looked for:", f"  {DEFAULT_PROJECT_FILE}", "  *_project.py"],
            suggestion=f"Create {DEFAULT_PROJECT_FILE} or pass --project explicitly.",
        )
        sys.exit(1)
    if len(files) > 1:
        console.print_error(
            "Multiple project files found",
            "Found multiple project files. Please specify which one to use:",
            details=[str(f) for f in files],
            suggestion="Specify a project explicitly:\n  devgraph build --project my_project.py",
        )
        sys.exit(1)
    return files[0]


def _status_label(gr) -> str:
    if gr.error is not None:
        if gr.error.kind == "dependency":
            return "skipped (dependency failed)"
        if gr.error.kind == "cancelled":
            return "cancelled"
        return f"failed ({gr.error.kind})"
    if not gr.processed:
        return "up to date"
    return "success"


def _load_engine(ctx, project_file, *, concurrency=None, cache_dir=None, git_files=None):
    console: Console = ctx.obj["console"]
    path = discover_project(project_file, console)
    config: EngineConfig = ctx.obj["config"].with_overrides(max_concurrency=concurrency, use_git=git_files)
    if cache_dir is not None:
        config = replace(config, cache_dir=Path(cache_dir) if cache_dir else None)
    actions = load_project(path)
    return path, create_context(actions, root=path.parent, config=config)


async def process_interruptible(processor: GraphProcessor, tasks, console: Console) -> GraphResults:
    """
    Process tasks with Ctrl-C wired to processor.cancel(), so the partial results
    can still be reported. A second Ctrl-C interrupts for real.
    """
    loop = asyncio.get_running_loop()

    def _signal_handler(signum, frame):
        if processor.cancelled:
            raise KeyboardInterrupt
        console.print_info(f"\nReceived signal {signum}, cancelling running tasks...")
        loop.call_soon_threadsafe(processor.cancel)

    previous = signal.signal(signal.SIGINT, _signal_handler)
    try:
        return await processor.process_tasks(tasks)
    finally:
        signal.signal(signal.SIGINT, previous)


def _report(console: Console, results: GraphResults) -> None:
    console.print_results({gr.key: _status_label(gr) for gr in results})
    for gr in results.failures():
        if gr.error.kind != "cancelled":
            console.print_failure(gr.key, gr.error)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--logs", is_flag=True, default=False, help="Stream action output to the terminal")
@click.pass_context
def cli(ctx, debug, logs):
    """devgraph: dependency-aware build/deploy/test/run orchestrator."""
    console = Console(debug=debug, show_logs=logs)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["console"] = console
    try:
        config = EngineConfig.from_env()
    except DevGraphError as e:
        console.print_error("Invalid configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)
    ctx.obj["config"] = config

    logging.basicConfig(
        level=logging.DEBUG if debug else config.log_level,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _action_command(verb: str, help: str):
    @click.argument("names", nargs=-1)  # glob patterns
    @click.option("--project", "project_file", default=None, help=f"Project file (defaults to {DEFAULT_PROJECT_FILE})")
    @click.option("--force", is_flag=True, default=False, help="Skip the status check for the requested actions")
    @click.option("--force-build", is_flag=True, default=False, help="Also rebuild every Build dependency")
    @click.option("--concurrency", default=None, type=click.IntRange(min=1), help="Max tasks in flight")
    @click.option("--cache-dir", default=None, help="Result store directory ('' keeps results in memory)")
    @click.option("--git-files/--no-git-files", default=None, help="List version sources with git ls-files")
    @click.pass_context
    def command(ctx, names, project_file, force, force_build, concurrency, cache_dir, git_files, tag=None):
        console: Console = ctx.obj["console"]
        try:
            path, engine = _load_engine(
                ctx, project_file, concurrency=concurrency, cache_dir=cache_dir, git_files=git_files,
            )
            engine.events.add_listener(console.on_event)
            tasks = make_tasks(engine, verb, names, force=force, force_build=force_build, tag_template=tag)
            console.print_run_started(project=path.resolve().parent.name, command=verb, task_count=len(tasks))

            processor = GraphProcessor(engine)
            results = asyncio.run(process_interruptible(processor, tasks, console))
            _report(console, results)

            if results.cancelled:
                sys.exit(130)
            if results.failures():
                sys.exit(1)

        except KeyboardInterrupt:
            console.print_info("\nInterrupted by user")
            sys.exit(130)
        except DevGraphError as e:
            if ctx.obj["debug"]:
                console.print_exception(e)
            console.print_error(f"{verb} failed", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
            sys.exit(1)

    command.__name__ = verb
    return cli.command(name=verb, help=help)(command)


build = _action_command("build", "Build Build actions (and what they depend on).")
deploy = _action_command("deploy", "Deploy Deploy actions, building and deploying their dependencies first.")
run = _action_command("run", "Execute Run actions.")
test = _action_command("test", "Run Test actions.")
publish = click.option(
    "--tag", default=None, help="Tag template, e.g. 'registry/{name}:{hash}' ({name}, {version}, {hash})",
)(_action_command("publish", "Publish Build artifacts."))
delete = _action_command("delete", "Delete Deploy actions (dependents first).")


@cli.command()
@click.option("--project", "project_file", default=None, help=f"Project file (defaults to {DEFAULT_PROJECT_FILE})")
@click.pass_context
def graph(ctx, project_file):
    """Print the action graph as stages (everything in a stage can run in parallel)."""
    console: Console = ctx.obj["console"]
    try:
        _path, engine = _load_engine(ctx, project_file, cache_dir="")
    except DevGraphError as e:
        console.print_error("Invalid project", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)

    for i, level in enumerate(engine.graph.levels(), start=1):
        console.print_stage(i, [a.key for a in level])


@cli.command()
@click.option("--project", "project_file", default=None, help=f"Project file (defaults to {DEFAULT_PROJECT_FILE})")
@click.option("--git-files/--no-git-files", default=None, help="List version sources with git ls-files")
@click.pass_context
def versions(ctx, project_file, git_files):
    """Print the current version of every action."""
    console: Console = ctx.obj["console"]
    try:
        path, engine = _load_engine(ctx, project_file, cache_dir="", git_files=git_files)
        computed = engine.versions.versions()
    except DevGraphError as e:
        console.print_error("Could not compute versions", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)

    try:
        sha = vcs.head_sha(cwd=path.resolve().parent)
        dirty = vcs.is_dirty(cwd=path.resolve().parent)
        console.print_info(f"Commit: {sha[:12]}{' (dirty)' if dirty else ''}")
    except (subprocess.CalledProcessError, FileNotFoundError):
        console.print_debug("not a git checkout")

    console.print_header("VERSIONS")
    for key, version in computed.items():
        console.print_version(key, version)


if __name__ == "__main__":
    cli()
