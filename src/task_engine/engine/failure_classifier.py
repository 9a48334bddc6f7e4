"""Deterministic classification of handler exceptions for the retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from task_engine.engine.errors import PermanentFailure, TransientFailure, UnknownTaskType
from task_engine.engine.models import FailureClass

_TRANSIENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    OSError,
)
_PERMANENT_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    KeyError,
    LookupError,
    NotImplementedError,
)
_PERMANENT_PATTERNS: tuple[str, ...] = (
    "invalid payload",
    "malformed",
    "not supported",
    "unauthorized",
    "forbidden",
    "permission denied",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "too many requests",
    "rate limit",
    "try again later",
    "timed out",
)


@dataclass(slots=True)
class HandlerFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None


def classify_handler_exception(error: BaseException) -> HandlerFailureClassification:
    """Classify an exception raised by a handler into a retry class.

    Explicit ``TransientFailure``/``PermanentFailure`` win. Then message
    patterns, then exception types. Anything unrecognized is retried.
    """

    if isinstance(error, UnknownTaskType):
        return _permanent(FailureClass.UNKNOWN_TASK_TYPE, "unknown_task_type", "explicit")
    if isinstance(error, PermanentFailure):
        return _permanent(FailureClass.HANDLER_PERMANENT, "handler_permanent", "explicit")
    if isinstance(error, TransientFailure):
        return _transient(FailureClass.HANDLER_TRANSIENT, "handler_transient", "explicit")
    if isinstance(error, TimeoutError):
        return _transient(FailureClass.TIMEOUT, "handler_timeout", "exception_type")

    haystack = str(error).lower()
    pattern = _first_match(haystack, _PERMANENT_PATTERNS)
    if pattern is not None:
        return _permanent(
            FailureClass.HANDLER_PERMANENT,
            "handler_permanent_message",
            "permanent_pattern",
            pattern,
        )
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return _transient(
            FailureClass.HANDLER_TRANSIENT,
            "handler_transient_message",
            "transient_pattern",
            pattern,
        )

    if isinstance(error, _TRANSIENT_EXCEPTION_TYPES):
        return _transient(FailureClass.HANDLER_TRANSIENT, "handler_io_error", "exception_type")
    if isinstance(error, _PERMANENT_EXCEPTION_TYPES):
        return _permanent(
            FailureClass.HANDLER_PERMANENT,
            "handler_bad_input",
            "exception_type",
        )

    return _transient(FailureClass.HANDLER_TRANSIENT, "handler_unexpected", "fallback_transient")


def describe_exception(error: BaseException) -> str:
    message = str(error).strip()
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"


def _permanent(
    failure_class: FailureClass,
    reason_code: str,
    matched_rule: str,
    matched_pattern: str | None = None,
) -> HandlerFailureClassification:
    return HandlerFailureClassification(
        failure_class=failure_class,
        retryable=False,
        reason_code=reason_code,
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _transient(
    failure_class: FailureClass,
    reason_code: str,
    matched_rule: str,
    matched_pattern: str | None = None,
) -> HandlerFailureClassification:
    return HandlerFailureClassification(
        failure_class=failure_class,
        retryable=True,
        reason_code=reason_code,
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
