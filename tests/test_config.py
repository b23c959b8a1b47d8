# tests/test_config.py
from pathlib import Path

import pytest

from devgraph.config import EngineConfig, parse_task_limits
from devgraph.errors import ConfigurationError


def test_defaults_from_empty_env():
    config = EngineConfig.from_env({})
    assert config.max_concurrency == 10
    assert config.task_limits == {}
    assert config.cache_dir == Path(".devgraph/cache")
    assert config.artifacts_dir == Path(".devgraph/artifacts")
    assert config.result_keep == 3
    assert config.event_log is None
    assert config.log_level == "INFO"
    assert config.use_git is False


def test_values_from_env():
    config = EngineConfig.from_env({
        "DEVGRAPH_MAX_CONCURRENCY": "4",
        "DEVGRAPH_TASK_LIMITS": "build=2, deploy=3",
        "DEVGRAPH_CACHE_DIR": "",
        "DEVGRAPH_ARTIFACTS_DIR": "/tmp/artifacts",
        "DEVGRAPH_RESULT_KEEP": "1",
        "DEVGRAPH_EVENT_LOG": "/tmp/events.jsonl",
        "DEVGRAPH_LOG_LEVEL": "debug",
        "DEVGRAPH_USE_GIT": "true",
    })
    assert config.max_concurrency == 4
    assert config.task_limits == {"build": 2, "deploy": 3}
    assert config.cache_dir is None
    assert config.artifacts_dir == Path("/tmp/artifacts")
    assert config.result_keep == 1
    assert config.event_log == Path("/tmp/events.jsonl")
    assert config.log_level == "DEBUG"
    assert config.use_git is True


@pytest.mark.parametrize("raw", ["build", "build=x", "build=0"])
def test_bad_task_limits(raw):
    with pytest.raises(ConfigurationError):
        parse_task_limits(raw)


def test_bad_integer():
    with pytest.raises(ConfigurationError, match="DEVGRAPH_MAX_CONCURRENCY"):
        EngineConfig.from_env({"DEVGRAPH_MAX_CONCURRENCY": "lots"})


def test_limit_precedence():
    config = EngineConfig(max_concurrency=8, task_limits={"deploy": 3})
    assert config.limit_for("deploy", 5) == 3
    assert config.limit_for("build", 5) == 5
    assert config.limit_for("run", None) == 8
    assert EngineConfig(max_concurrency=2).limit_for("build", 5) == 2


def test_overrides_ignore_none():
    config = EngineConfig(max_concurrency=8).with_overrides(max_concurrency=None, use_git=True)
    assert config.max_concurrency == 8
    assert config.use_git is True


@pytest.mark.parametrize(
    "kwargs",
    [{"max_concurrency": 0}, {"max_concurrency": -3}, {"result_keep": 0}, {"task_limits": {"build": 0}}],
)
def test_non_positive_limits_rejected(kwargs):
    with pytest.raises(ConfigurationError):
        EngineConfig(**kwargs)


def test_overrides_are_validated():
    with pytest.raises(ConfigurationError, match="max_concurrency"):
        EngineConfig().with_overrides(max_concurrency=0)
