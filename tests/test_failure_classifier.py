from __future__ import annotations

import allure

from agent_dispatch.dispatch.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_command_failure,
    classify_exception,
)
from agent_dispatch.dispatch.models import FailureClass
from agent_dispatch.errors import StorageUnavailable

pytestmark = [
    allure.epic("Worker Runtime"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_auth_over_transient_exit_code() -> None:
    classified = classify_command_failure(
        command_name="terraform",
        exit_code=137,
        stdout="",
        stderr="Error: 403 Forbidden while reading state",
        transient_exit_codes=(137, 143),
    )
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.matched_pattern == "forbidden"
    assert classified.retryable is False


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_command_failure(
        command_name="gh",
        exit_code=1,
        stdout="",
        stderr="HTTP 429 too many requests, please retry",
        transient_exit_codes=(137, 143),
    )
    assert classified.failure_class == FailureClass.EXECUTOR_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.reason_code == "gh_rate_limit_transient"
    assert classified.retryable is True


def test_classifier_uses_transient_exit_code_without_pattern() -> None:
    classified = classify_command_failure(
        command_name="runner",
        exit_code=143,
        stdout="",
        stderr="",
        transient_exit_codes=(137, 143),
    )
    assert classified.failure_class == FailureClass.EXECUTOR_TRANSIENT
    assert classified.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_command_failure(
        command_name="runner",
        exit_code=2,
        stdout="",
        stderr="Error: resource address is invalid",
        transient_exit_codes=(137, 143),
    )
    assert classified.failure_class == FailureClass.EXECUTOR_NON_RETRYABLE
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "executor_non_retryable",
        "reason_code": "runner_non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }


def test_exception_types_and_messages_are_classified() -> None:
    assert classify_exception(ConnectionError("reset")).retryable is True
    assert classify_exception(StorageUnavailable("locked")).retryable is True
    assert classify_exception(RuntimeError("upstream temporarily unavailable")).retryable is True
    assert (
        classify_exception(PermissionError("access denied")).failure_class
        == FailureClass.ACCESS_OR_AUTH
    )
    classified = classify_exception(ValueError("bad input"))
    assert classified.failure_class == FailureClass.EXECUTOR_NON_RETRYABLE
    assert classified.reason_code == "exception_ValueError"
