#tests\test_retry_policy.py

"""Apply retry policy."""

import pytest

from deploy_engine.core.errors import ApplyTimeoutError
from deploy_engine.executor.retry_policy import FailureKind, RetryPolicy
from deploy_engine.orchestrator.collaborators import ApplyOutcome


class TestClassify:
    """Only timeouts are retryable."""

    def test_structured_outcome_wins_over_message(self):
        policy = RetryPolicy()

        assert policy.classify(ApplyOutcome(False, "timeout in logs", timed_out=False)) == FailureKind.OTHER
        assert policy.classify(ApplyOutcome(False, "exit 1", timed_out=True)) == FailureKind.TIMEOUT

    def test_exceptions(self):
        policy = RetryPolicy()

        assert policy.classify(ApplyTimeoutError("slow")) == FailureKind.TIMEOUT
        assert policy.classify(TimeoutError()) == FailureKind.TIMEOUT
        assert policy.classify(RuntimeError("no such image")) == FailureKind.OTHER

    @pytest.mark.parametrize("message", [
        "operation timed out",
        "context deadline exceeded",
        "connect ETIMEDOUT 10.0.0.1:443",
    ])
    def test_timeout_messages(self, message):
        assert RetryPolicy().classify(message) == FailureKind.TIMEOUT

    def test_empty_failure_is_other(self):
        assert RetryPolicy().classify(None) == FailureKind.OTHER


class TestRetryDecision:
    def test_timeout_retried_once(self):
        policy = RetryPolicy()

        assert policy.should_retry(FailureKind.TIMEOUT, attempt=1)
        assert not policy.should_retry(FailureKind.TIMEOUT, attempt=2)

    def test_other_never_retried(self):
        assert not RetryPolicy(max_retries=3).should_retry(FailureKind.OTHER, attempt=1)

    def test_zero_retries(self):
        assert not RetryPolicy(max_retries=0).should_retry(FailureKind.TIMEOUT, attempt=1)

    def test_next_timeout_strictly_larger(self):
        policy = RetryPolicy(timeout_factor=1.5)

        assert policy.next_timeout(600) == 900.0
        assert policy.next_timeout(1) == 2.0
        assert policy.next_timeout(0) == 1.0

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": -1},
        {"timeout_factor": 1.0},
        {"timeout_factor": 0.5},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
