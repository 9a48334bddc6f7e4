"""Handler interface and registry keyed by task type."""

from __future__ import annotations

import importlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from task_engine.engine.errors import PermanentFailure, UnknownTaskType


class TaskHandler(Protocol):
    """Protocol implemented by task handlers.

    ``execute`` returns a result (JSON-serializable) or a ``TaskOutcome``.
    Raising ``TransientFailure`` or ``PermanentFailure`` selects the retry
    path explicitly; any other exception is classified.
    """

    def execute(self, payload: dict[str, Any]) -> Any:
        """Run one task with its payload."""


@dataclass(slots=True)
class FunctionHandler:
    """Adapter turning a plain callable into a handler."""

    func: Callable[[dict[str, Any]], Any]

    def execute(self, payload: dict[str, Any]) -> Any:
        return self.func(payload)


class HandlerRegistry:
    """Maps task type tags to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(
        self,
        task_type: str,
        handler: TaskHandler | Callable[[dict[str, Any]], Any],
    ) -> None:
        if not task_type.strip():
            raise ValueError("Task type must be a non-empty string.")
        if not hasattr(handler, "execute"):
            handler = FunctionHandler(handler)  # type: ignore[arg-type]
        self._handlers[task_type] = handler  # type: ignore[assignment]

    def get(self, task_type: str) -> TaskHandler:
        handler = self._handlers.get(task_type)
        if handler is None:
            raise UnknownTaskType(task_type)
        return handler

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def task_types(self) -> list[str]:
        return sorted(self._handlers)


def echo_handler(payload: dict[str, Any]) -> Any:
    return payload


def noop_handler(_: dict[str, Any]) -> None:
    return None


def sleep_handler(payload: dict[str, Any]) -> dict[str, float]:
    seconds = payload.get("seconds", 0)
    if not isinstance(seconds, int | float) or seconds < 0:
        raise PermanentFailure("invalid payload: seconds must be a non-negative number")
    time.sleep(float(seconds))
    return {"slept": float(seconds)}


def builtin_registry() -> HandlerRegistry:
    """Registry with the handlers available to local CLI runs."""

    registry = HandlerRegistry()
    registry.register("echo", echo_handler)
    registry.register("noop", noop_handler)
    registry.register("sleep", sleep_handler)
    return registry


def load_registry(target: str | None) -> HandlerRegistry:
    """Load a registry from ``module:factory``; ``None`` gives the builtins.

    The factory is called without arguments and must return a ``HandlerRegistry``.
    """

    if not target:
        return builtin_registry()
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Handler factory must look like 'module:factory', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None:
        raise ValueError(f"Handler factory {attr!r} not found in module {module_name!r}")
    registry = factory()
    if not isinstance(registry, HandlerRegistry):
        raise ValueError(f"Handler factory {target!r} did not return a HandlerRegistry")
    return registry
