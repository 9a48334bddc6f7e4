from __future__ import annotations

import allure

from task_engine.engine.errors import PermanentFailure, TransientFailure, UnknownTaskType
from task_engine.engine.failure_classifier import classify_handler_exception, describe_exception
from task_engine.engine.models import FailureClass

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Retry Manager"),
]


def test_explicit_transient_failure_is_retryable() -> None:
    classified = classify_handler_exception(TransientFailure("upstream 503"))
    assert classified.retryable is True
    assert classified.failure_class == FailureClass.HANDLER_TRANSIENT
    assert classified.matched_rule == "explicit"


def test_explicit_permanent_failure_wins_over_transient_message() -> None:
    classified = classify_handler_exception(PermanentFailure("rate limit exceeded"))
    assert classified.retryable is False
    assert classified.failure_class == FailureClass.HANDLER_PERMANENT


def test_unknown_task_type_is_permanent() -> None:
    classified = classify_handler_exception(UnknownTaskType("resize"))
    assert classified.retryable is False
    assert classified.failure_class == FailureClass.UNKNOWN_TASK_TYPE


def test_timeout_error_maps_to_timeout_class() -> None:
    classified = classify_handler_exception(TimeoutError("read timed out"))
    assert classified.retryable is True
    assert classified.failure_class == FailureClass.TIMEOUT


def test_message_pattern_beats_exception_type() -> None:
    classified = classify_handler_exception(RuntimeError("HTTP 429 too many requests"))
    assert classified.retryable is True
    assert classified.matched_rule == "transient_pattern"
    assert classified.matched_pattern == "too many requests"

    classified = classify_handler_exception(OSError("permission denied: /data"))
    assert classified.retryable is False
    assert classified.matched_pattern == "permission denied"


def test_bad_input_exception_types_are_permanent() -> None:
    classified = classify_handler_exception(KeyError("recipient"))
    assert classified.retryable is False
    assert classified.reason_code == "handler_bad_input"


def test_io_errors_are_transient() -> None:
    classified = classify_handler_exception(ConnectionRefusedError("refused"))
    assert classified.retryable is True
    assert classified.reason_code == "handler_io_error"


def test_unrecognized_exception_falls_back_to_transient() -> None:
    classified = classify_handler_exception(RuntimeError("something odd"))
    assert classified.retryable is True
    assert classified.matched_rule == "fallback_transient"


def test_describe_exception_includes_type_name() -> None:
    assert describe_exception(ValueError("bad amount")) == "ValueError: bad amount"
    assert describe_exception(RuntimeError()) == "RuntimeError"
