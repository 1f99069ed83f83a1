"""Deterministic failure classification for the redelivery policy."""

from __future__ import annotations

from dataclasses import dataclass

from agent_dispatch.dispatch.models import FailureClass
from agent_dispatch.errors import StorageUnavailable

FAILURE_CLASSIFIER_VERSION = 1

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "access denied",
    "invalid credentials",
    "expired token",
    "authentication",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "throttl",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "state lock",
    "timed out",
)
_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    ConnectionError,
    StorageUnavailable,
)

RETRYABLE_CLASSES: frozenset[FailureClass] = frozenset(
    {FailureClass.TIMEOUT, FailureClass.EXECUTOR_TRANSIENT},
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for lifecycle events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_command_failure(
    *,
    command_name: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    """Classify a non-zero, non-timeout command exit."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=f"{command_name}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.EXECUTOR_TRANSIENT,
            reason_code=f"{command_name}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return FailureClassification(
            failure_class=FailureClass.EXECUTOR_TRANSIENT,
            reason_code=f"{command_name}_executor_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.EXECUTOR_NON_RETRYABLE,
        reason_code=f"{command_name}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an exception raised out of an executor."""

    name = type(error).__name__
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return FailureClassification(
            failure_class=FailureClass.EXECUTOR_TRANSIENT,
            reason_code=f"exception_{name}",
            matched_rule="transient_exception_type",
            matched_pattern=None,
        )

    message = str(error).lower()
    pattern = _first_match(message, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=f"exception_{name}",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )
    pattern = _first_match(message, _RATE_LIMIT_TRANSIENT_PATTERNS + _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.EXECUTOR_TRANSIENT,
            reason_code=f"exception_{name}",
            matched_rule="transient_message",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.EXECUTOR_NON_RETRYABLE,
        reason_code=f"exception_{name}",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
