from __future__ import annotations

import sys
import types
from typing import Any

import allure
import pytest

from task_engine.engine.errors import PermanentFailure, UnknownTaskType
from task_engine.engine.handlers import HandlerRegistry, builtin_registry, load_registry

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Worker Pool"),
]


class _UppercaseHandler:
    def execute(self, payload: dict[str, Any]) -> str:
        return str(payload["text"]).upper()


def test_registry_accepts_handler_objects_and_callables() -> None:
    registry = HandlerRegistry()
    registry.register("upper", _UppercaseHandler())
    registry.register("length", lambda payload: len(payload["text"]))

    assert registry.get("upper").execute({"text": "abc"}) == "ABC"
    assert registry.get("length").execute({"text": "abc"}) == 3
    assert "upper" in registry
    assert registry.task_types() == ["length", "upper"]


def test_registry_rejects_unknown_and_blank_types() -> None:
    registry = HandlerRegistry()

    with pytest.raises(UnknownTaskType, match="resize"):
        registry.get("resize")
    with pytest.raises(ValueError, match="non-empty"):
        registry.register(" ", lambda payload: payload)


def test_builtin_handlers() -> None:
    registry = builtin_registry()

    assert registry.task_types() == ["echo", "noop", "sleep"]
    assert registry.get("echo").execute({"a": 1}) == {"a": 1}
    assert registry.get("noop").execute({"a": 1}) is None
    assert registry.get("sleep").execute({"seconds": 0}) == {"slept": 0.0}
    with pytest.raises(PermanentFailure, match="invalid payload"):
        registry.get("sleep").execute({"seconds": "soon"})


def test_load_registry_defaults_to_builtins() -> None:
    assert load_registry(None).task_types() == ["echo", "noop", "sleep"]


def test_load_registry_from_module_factory(monkeypatch: pytest.MonkeyPatch) -> None:
    module = types.ModuleType("billing_handlers")

    def build() -> HandlerRegistry:
        registry = HandlerRegistry()
        registry.register("charge", lambda payload: {"charged": payload["amount"]})
        return registry

    module.build = build  # type: ignore[attr-defined]
    module.not_a_registry = lambda: object()  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "billing_handlers", module)

    registry = load_registry("billing_handlers:build")

    assert registry.get("charge").execute({"amount": 5}) == {"charged": 5}
    with pytest.raises(ValueError, match="did not return a HandlerRegistry"):
        load_registry("billing_handlers:not_a_registry")
    with pytest.raises(ValueError, match="not found"):
        load_registry("billing_handlers:missing")
    with pytest.raises(ValueError, match="module:factory"):
        load_registry("billing_handlers")
