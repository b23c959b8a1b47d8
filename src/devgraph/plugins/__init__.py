from __future__ import annotations

from ..router import HandlerRegistry
from . import container, exec


def default_registry() -> HandlerRegistry:
    """Registry with the built-in `exec` and `container` action types."""
    registry = HandlerRegistry()
    exec.register(registry)
    container.register(registry)
    return registry


__all__ = ["default_registry"]
