# tests/test_task_registry.py

from __future__ import annotations

import pytest

from zenopsis.tasks.task_errors import HandlerNotFoundError
from zenopsis.tasks.task_registry import HandlerRegistry


def _noop(payload: dict) -> None:
    return None


def test_register_and_get() -> None:
    reg = HandlerRegistry()
    reg.register("delete_message", _noop)

    assert reg.get("delete_message") is _noop
    assert "delete_message" in reg
    assert reg.types() == ["delete_message"]


def test_missing_handler_raises_typed_error() -> None:
    reg = HandlerRegistry()
    with pytest.raises(HandlerNotFoundError) as exc:
        reg.get("nope")
    assert exc.value.task_type == "nope"


def test_frozen_registry_rejects_registration() -> None:
    reg = HandlerRegistry()
    reg.register("a", _noop)
    reg.freeze()

    with pytest.raises(RuntimeError):
        reg.register("b", _noop)
    assert reg.types() == ["a"]
    with pytest.raises(TypeError):
        reg.as_mapping()["b"] = _noop  # type: ignore[index]


def test_register_validates_input() -> None:
    reg = HandlerRegistry()
    with pytest.raises(ValueError):
        reg.register("  ", _noop)
    with pytest.raises(TypeError):
        reg.register("a", "not callable")  # type: ignore[arg-type]
