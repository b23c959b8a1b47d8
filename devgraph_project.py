# devgraph_project.py
# Project for devgraph itself: check the package builds, run the test suite, lint.
from __future__ import annotations

from devgraph.dsl import build, project, run, test


def actions():
    return project(
        # Build - byte-compile the package; version follows src/ + pyproject.toml
        build(
            "package",
            source=".",
            include=["src/*", "pyproject.toml"],
            command="python -m compileall -q src",
        ),

        # Unit tests - need the package built first
        test(
            "unit",
            build="package",
            source=".",
            include=["src/*", "tests/*", "pyproject.toml"],
            command="python -m pytest -q",
            timeout=600,
        ),

        # Lint - optional, same sources as the package
        run(
            "lint",
            needs=["build.package"],
            source="src",
            command="ruff check src || echo 'ruff not available, skipping'",
            timeout=120,
        ),
    )
