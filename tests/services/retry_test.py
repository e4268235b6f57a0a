import pytest

from services.retry import call_with_retry


class _Retryable(Exception):
    pass


def _flaky(failures: list[Exception]):
    attempts: list[int] = []

    def operation(attempt: int) -> str:
        attempts.append(attempt)
        if failures:
            raise failures.pop(0)
        return "ok"

    return operation, attempts


def test_returns_after_retryable_failure() -> None:
    operation, attempts = _flaky([_Retryable()])
    retried: list[int] = []

    result = call_with_retry(
        operation,
        attempts=2,
        should_retry=lambda exc: isinstance(exc, _Retryable),
        on_retry=lambda attempt, exc: retried.append(attempt),
    )

    assert result == "ok"
    assert attempts == [1, 2]
    assert retried == [1]


def test_reraises_when_budget_is_spent() -> None:
    operation, attempts = _flaky([_Retryable(), _Retryable(), _Retryable()])

    with pytest.raises(_Retryable):
        call_with_retry(operation, attempts=2, should_retry=lambda exc: isinstance(exc, _Retryable))

    assert attempts == [1, 2]


def test_does_not_retry_other_errors() -> None:
    operation, attempts = _flaky([RuntimeError("boom")])

    with pytest.raises(RuntimeError):
        call_with_retry(operation, attempts=5, should_retry=lambda exc: isinstance(exc, _Retryable))

    assert attempts == [1]


def test_rejects_empty_budget() -> None:
    with pytest.raises(ValueError):
        call_with_retry(lambda attempt: None, attempts=0, should_retry=lambda exc: True)
